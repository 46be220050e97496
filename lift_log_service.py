import datetime
import logging
from contextlib import contextmanager
from typing import Iterable, List, Optional, Tuple

from db import ExerciseRepository, LiftLogRepository
from models import LiftLog, LiftSet, PRClassification, TriggerEvent
from pr_detection_service import PRDetectionService
from pr_recalculation_service import PRRecalculationService

logger = logging.getLogger(__name__)


class LiftLogService:
    """Write path for lift logs.

    Every mutation is validated first, then stored, then followed by a
    synchronous recalculation of the affected timeline.
    """

    def __init__(
        self,
        lift_logs: LiftLogRepository,
        exercises: ExerciseRepository,
        recalculator: PRRecalculationService,
    ) -> None:
        self.lift_logs = lift_logs
        self.exercises = exercises
        self.recalculator = recalculator

    @staticmethod
    def _sets(sets: Iterable) -> List[LiftSet]:
        out = []
        for s in sets:
            if isinstance(s, LiftSet):
                out.append(s)
            elif isinstance(s, dict):
                out.append(LiftSet(float(s["weight"]), s["reps"], s.get("band_color")))
            else:
                weight, reps = s
                out.append(LiftSet(float(weight), reps))
        return PRDetectionService.validate_sets(out)

    def create(
        self,
        user_id: int,
        exercise_id: int,
        sets: Iterable,
        logged_at: Optional[datetime.datetime] = None,
        comments: Optional[str] = None,
    ) -> Tuple[LiftLog, List[PRClassification]]:
        lift_sets = self._sets(sets)
        self.exercises.fetch(exercise_id)
        logged_at = logged_at or datetime.datetime.now()
        with self.recalculator.locked([(user_id, exercise_id)]), self.lift_logs.transaction():
            log_id = self.lift_logs.create(user_id, exercise_id, logged_at, lift_sets, comments)
            results = self.recalculator.recalculate(TriggerEvent.created(log_id))
        logger.info("lift log %s created for user %s exercise %s", log_id, user_id, exercise_id)
        return self.lift_logs.fetch(log_id), results

    @contextmanager
    def _locked(self, lift_log_id: int, exercise_id: Optional[int] = None):
        """Lock the timelines of a lift log and yield it as stored under the locks.

        If the lift log moved to another exercise between the first read and
        taking the locks, the locks of its new timeline are taken instead.
        """
        current = self.lift_logs.fetch(lift_log_id)
        while True:
            timelines = [(current.user_id, current.exercise_id)]
            if exercise_id is not None:
                timelines.append((current.user_id, exercise_id))
            with self.recalculator.locked(timelines), self.lift_logs.transaction():
                stored = self.lift_logs.fetch(lift_log_id)
                if stored.exercise_id == current.exercise_id:
                    yield stored
                    return
            current = stored

    def update(
        self,
        lift_log_id: int,
        sets: Optional[Iterable] = None,
        logged_at: Optional[datetime.datetime] = None,
        exercise_id: Optional[int] = None,
        comments: Optional[str] = None,
    ) -> Tuple[LiftLog, List[PRClassification]]:
        """Change a lift log; omitted fields keep their stored values."""
        lift_sets = self._sets(sets) if sets is not None else None
        if exercise_id is not None:
            self.exercises.fetch(exercise_id)
        with self._locked(lift_log_id, exercise_id) as current:
            trigger = TriggerEvent.updated(
                lift_log_id,
                previous_logged_at=current.logged_at,
                previous_exercise_id=current.exercise_id,
            )
            self.lift_logs.update(
                lift_log_id,
                exercise_id if exercise_id is not None else current.exercise_id,
                logged_at or current.logged_at,
                lift_sets if lift_sets is not None else list(current.sets),
                comments if comments is not None else current.comments,
            )
            results = self.recalculator.recalculate(trigger)
        logger.info("lift log %s updated", lift_log_id)
        return self.lift_logs.fetch(lift_log_id), results

    def delete(self, lift_log_id: int) -> List[PRClassification]:
        with self._locked(lift_log_id):
            self.lift_logs.soft_delete(lift_log_id)
            results = self.recalculator.recalculate(TriggerEvent.deleted(lift_log_id))
        logger.info("lift log %s deleted", lift_log_id)
        return results
