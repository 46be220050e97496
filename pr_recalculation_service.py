import datetime
import logging
import threading
import weakref
from contextlib import ExitStack, contextmanager
from typing import Iterable, List, Optional, Tuple

from db import ExerciseRepository, LiftLogRepository
from exceptions import CascadeLimitError
from models import (
    TRIGGER_BACKFILL,
    TRIGGER_CREATED,
    TRIGGER_DELETED,
    TRIGGER_UPDATED,
    PRClassification,
    TriggerEvent,
)
from pr_audit_service import PRAuditService
from pr_detection_service import PRDetectionService
from pr_ledger_service import PRLedgerService
from settings_schema import PRSettings

logger = logging.getLogger(__name__)

SortKey = Tuple[datetime.datetime, int]


class PRRecalculationService:
    """Recompute PR status for a timeline after a lift log changes.

    A pass reclassifies every lift log from the earliest affected position to
    the end of the (user, exercise) timeline, reconciles the ledger and
    appends one audit record per reclassified lift log. The whole pass runs
    in one transaction and passes on the same timeline are serialised.
    """

    # Entries disappear once no caller holds the lock.
    _locks: "weakref.WeakValueDictionary[Tuple[int, int], threading.RLock]" = (
        weakref.WeakValueDictionary()
    )
    _locks_guard = threading.Lock()

    def __init__(
        self,
        lift_logs: LiftLogRepository,
        exercises: ExerciseRepository,
        detector: PRDetectionService,
        ledger: PRLedgerService,
        audit: PRAuditService,
        settings: PRSettings | None = None,
    ) -> None:
        self.lift_logs = lift_logs
        self.exercises = exercises
        self.detector = detector
        self.ledger = ledger
        self.audit = audit
        self.settings = settings or detector.settings

    @classmethod
    def _lock_for(cls, user_id: int, exercise_id: int) -> threading.RLock:
        with cls._locks_guard:
            lock = cls._locks.get((user_id, exercise_id))
            if lock is None:
                lock = threading.RLock()
                cls._locks[(user_id, exercise_id)] = lock
            return lock

    @contextmanager
    def locked(self, timelines: Iterable[Tuple[int, int]]):
        """Hold the locks of every (user, exercise) in ``timelines``, in key order."""
        with ExitStack() as stack:
            for user_id, exercise_id in sorted(set(timelines)):
                stack.enter_context(self._lock_for(user_id, exercise_id))
            yield

    def _serialised(self, stack: ExitStack, timelines) -> None:
        stack.enter_context(self.locked(timelines))
        stack.enter_context(self.lift_logs.transaction())

    def recalculate(self, trigger: TriggerEvent) -> List[PRClassification]:
        """Apply ``trigger`` and return the classifications of the primary timeline."""
        deleted = trigger.kind == TRIGGER_DELETED
        log = self.lift_logs.fetch(trigger.lift_log_id, include_deleted=deleted)
        if deleted and not log.is_deleted:
            raise ValueError("lift log is not deleted")
        old_exercise = trigger.previous_exercise_id
        if old_exercise == log.exercise_id:
            old_exercise = None

        timelines = [(log.user_id, log.exercise_id)]
        if old_exercise is not None:
            timelines.append((log.user_id, old_exercise))

        position = (log.logged_at, log.id)
        previous_position = position
        if trigger.previous_logged_at is not None:
            previous_position = (trigger.previous_logged_at, log.id)

        # lift logs the trigger's lift log now precedes but did not before
        overtaken: Optional[Tuple[SortKey, Optional[SortKey]]] = None
        if trigger.kind == TRIGGER_CREATED or old_exercise is not None:
            overtaken = (position, None)
        elif trigger.kind == TRIGGER_UPDATED and previous_position > position:
            overtaken = (position, previous_position)

        with ExitStack() as stack:
            self._serialised(stack, timelines)
            try:
                if old_exercise is not None:
                    self.exercises.fetch(old_exercise)
                    self._recalculate_timeline(
                        log.user_id,
                        old_exercise,
                        previous_position,
                        trigger.kind,
                        trigger_id=log.id,
                        removed_id=log.id,
                    )
                    start = position
                else:
                    start = min(position, previous_position)
                return self._recalculate_timeline(
                    log.user_id,
                    log.exercise_id,
                    start,
                    trigger.kind,
                    trigger_id=log.id,
                    removed_id=log.id if deleted else None,
                    overtaken=overtaken,
                )
            except Exception:
                logger.exception(
                    "recalculation for lift log %s (%s) rolled back", log.id, trigger.kind
                )
                raise

    def recalculate_all(
        self, user_id: int, exercise_id: int, trigger_event: str = TRIGGER_BACKFILL
    ) -> List[PRClassification]:
        """Rebuild the ledger of a whole timeline from its first lift log."""
        with ExitStack() as stack:
            self._serialised(stack, [(user_id, exercise_id)])
            return self._recalculate_timeline(user_id, exercise_id, None, trigger_event)

    def _recalculate_timeline(
        self,
        user_id: int,
        exercise_id: int,
        start: Optional[SortKey],
        trigger_event: str,
        trigger_id: Optional[int] = None,
        removed_id: Optional[int] = None,
        overtaken: Optional[Tuple[SortKey, Optional[SortKey]]] = None,
    ) -> List[PRClassification]:
        exercise = self.exercises.fetch(exercise_id)
        history = self.lift_logs.fetch_history(user_id, exercise_id)

        if not self.detector.is_eligible(exercise):
            if removed_id is not None:
                self.ledger.remove_for_lift_log(removed_id)
            for log in history:
                self.ledger.remove_for_lift_log(log.id)
            logger.debug(
                "exercise %s (%s) does not track records", exercise_id, exercise.exercise_type
            )
            return []

        if start is None:
            prefix, affected = [], history
        else:
            prefix = [log for log in history if log.sort_key < start]
            affected = [log for log in history if log.sort_key >= start]

        limit = self.settings.max_cascade_entries
        if len(affected) > limit:
            logger.warning(
                "cascade for user %s exercise %s touches %d lift logs (limit %d)",
                user_id,
                exercise_id,
                len(affected),
                limit,
            )
            raise CascadeLimitError(len(affected), limit)

        if removed_id is not None:
            self.ledger.remove_for_lift_log(removed_id)

        holders = self.ledger.seed_holders(user_id, exercise_id, [log.id for log in prefix])
        prior = self.detector.prior_bests_for(prefix)
        results = []
        for log in affected:
            metrics = self.detector.calculate_metrics(log.sets)
            classification = self.detector.classify(log.id, metrics, prior)
            cascade = trigger_id is not None and log.id != trigger_id
            held = self.ledger.apply(
                log, classification, holders, overtaken=_between(log.sort_key, overtaken)
            )
            self.audit.record(
                log,
                classification,
                trigger_event,
                is_cascade=cascade,
                retained=[r.key for r in held if r.superseded_by_id is not None],
            )
            prior.add(log.id, metrics)
            results.append(classification)

        self.ledger.verify_chains(user_id, exercise_id)
        logger.info(
            "recalculated %d of %d lift logs for user %s exercise %s (%s)",
            len(affected),
            len(history),
            user_id,
            exercise_id,
            trigger_event,
        )
        return results

    def recalculate_historical(
        self,
        user_id: Optional[int] = None,
        exercise_id: Optional[int] = None,
        dry_run: bool = False,
    ) -> dict:
        """Rebuild every timeline that has lift logs, optionally filtered.

        With ``dry_run`` nothing is written and the result reports how many
        lift logs would be flagged as PRs.
        """
        summary = {"timelines": 0, "processed": 0, "errors": 0, "pr_lift_logs": 0, "failed": []}
        for uid, eid in self.lift_logs.user_exercise_pairs(user_id, exercise_id):
            summary["timelines"] += 1
            try:
                if dry_run:
                    results = self._preview(uid, eid)
                else:
                    results = self.recalculate_all(uid, eid)
            except (ValueError, RuntimeError) as e:
                logger.error("historical recalculation failed for user %s exercise %s: %s", uid, eid, e)
                summary["errors"] += 1
                summary["failed"].append({"user_id": uid, "exercise_id": eid, "error": str(e)})
                continue
            summary["processed"] += len(results)
            summary["pr_lift_logs"] += sum(1 for r in results if r.is_pr)
        logger.info(
            "historical recalculation%s: %d lift logs in %d timelines, %d errors",
            " (dry run)" if dry_run else "",
            summary["processed"],
            summary["timelines"],
            summary["errors"],
        )
        return summary

    def _preview(self, user_id: int, exercise_id: int) -> List[PRClassification]:
        exercise = self.exercises.fetch(exercise_id)
        if not self.detector.is_eligible(exercise):
            return []
        prior = self.detector.new_prior_bests()
        results = []
        for log in self.lift_logs.fetch_history(user_id, exercise_id):
            metrics = self.detector.calculate_metrics(log.sets)
            results.append(self.detector.classify(log.id, metrics, prior))
            prior.add(log.id, metrics)
        return results


def _between(key: SortKey, bounds: Optional[Tuple[SortKey, Optional[SortKey]]]) -> bool:
    if bounds is None:
        return False
    low, high = bounds
    return low < key and (high is None or key < high)
