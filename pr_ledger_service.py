import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List

from db import LiftLogRepository, PersonalRecordRepository
from exceptions import InconsistentLedgerError
from models import LiftLog, PersonalRecord, PRClassification, RecordKey, key_label

logger = logging.getLogger(__name__)

Holders = Dict[RecordKey, PersonalRecord]


class PRLedgerService:
    """Keep the personal record ledger in step with classifications.

    Each lift log owns at most one row per record key. A row links to the
    row that held its key just before it (``previous_pr_id``) and keeps a
    copy of that row's value, so the chain of a key reads oldest to newest.

    When a lift log placed earlier in time beats a lift log that already
    holds a key, the later lift log keeps its row as history: the row is
    marked with ``superseded_by_id`` and the lift log stays flagged as a PR.
    """

    def __init__(
        self, records: PersonalRecordRepository, lift_logs: LiftLogRepository
    ) -> None:
        self.records = records
        self.lift_logs = lift_logs

    @staticmethod
    def _current(rows: List[PersonalRecord]) -> List[PersonalRecord]:
        linked = {r.previous_pr_id for r in rows if r.previous_pr_id is not None}
        return [r for r in rows if r.id not in linked and r.superseded_by_id is None]

    def seed_holders(
        self, user_id: int, exercise_id: int, lift_log_ids: Iterable[int]
    ) -> Holders:
        """Return the current row of each key among the rows of ``lift_log_ids``."""
        ids = set(lift_log_ids)
        rows = [
            r for r in self.records.fetch_for_exercise(user_id, exercise_id)
            if r.lift_log_id in ids
        ]
        holders: Holders = {}
        duplicates: Dict[RecordKey, List[int]] = defaultdict(list)
        for row in self._current(rows):
            if row.key in holders:
                duplicates[row.key].append(row.id)
            else:
                holders[row.key] = row
        if duplicates:
            key, extra = next(iter(duplicates.items()))
            raise InconsistentLedgerError(
                user_id, exercise_id, key_label(key), [holders[key].id, *extra]
            )
        return holders

    def apply(
        self,
        lift_log: LiftLog,
        classification: PRClassification,
        holders: Holders,
        overtaken: bool = False,
    ) -> List[PersonalRecord]:
        """Reconcile the rows of ``lift_log`` with ``classification``.

        ``holders`` maps each key to the row holding it immediately before
        this lift log and is advanced in place to include this lift log's
        awards. An existing row whose key is now blocked by an earlier
        holder is kept as history when ``overtaken`` (another lift log was
        just placed before this one) or when it is already history, as long
        as its lift log's exercise, timestamp and value are unchanged.
        """
        awards = {award.key: award for award in classification.awards}
        rejections = {rejection.key: rejection for rejection in classification.rejections}
        kept: Dict[RecordKey, PersonalRecord] = {}
        retained: List[PersonalRecord] = []
        for row in self.records.fetch_for_lift_log(lift_log.id):
            award = awards.get(row.key)
            rejection = rejections.get(row.key)
            holder = holders.get(row.key)
            expected_previous = holder.id if holder is not None else None
            unchanged = (
                row.key not in kept
                and row.exercise_id == lift_log.exercise_id
                and row.achieved_at == lift_log.logged_at
            )
            if (
                award is not None
                and unchanged
                and row.value == award.value
                and row.previous_pr_id == expected_previous
            ):
                kept[row.key] = self._mark(row, None)
                continue
            if (
                (overtaken or row.superseded_by_id is not None)
                and award is None
                and rejection is not None
                and holder is not None
                and unchanged
                and row.value == rejection.value
            ):
                kept[row.key] = self._mark(row, holder.id)
                retained.append(kept[row.key])
                continue
            self.records.delete(row.id)

        held: List[PersonalRecord] = []
        for key, award in awards.items():
            row = kept.get(key)
            if row is None:
                holder = holders.get(key)
                row_id = self.records.add(
                    lift_log.user_id,
                    lift_log.exercise_id,
                    lift_log.id,
                    award.pr_type,
                    award.value,
                    lift_log.logged_at,
                    rep_count=award.rep_count,
                    weight=award.weight,
                    previous_pr_id=holder.id if holder is not None else None,
                    previous_value=holder.value if holder is not None else None,
                )
                row = PersonalRecord(
                    id=row_id,
                    user_id=lift_log.user_id,
                    exercise_id=lift_log.exercise_id,
                    lift_log_id=lift_log.id,
                    pr_type=award.pr_type,
                    value=award.value,
                    rep_count=award.rep_count,
                    weight=award.weight,
                    previous_pr_id=holder.id if holder is not None else None,
                    previous_value=holder.value if holder is not None else None,
                    achieved_at=lift_log.logged_at,
                )
            holders[key] = row
            held.append(row)

        if retained:
            logger.debug(
                "lift log %s keeps %d superseded records: %s",
                lift_log.id,
                len(retained),
                sorted(key_label(r.key) for r in retained),
            )
        count = len(held) + len(retained)
        self.lift_logs.set_pr_flags(lift_log.id, count > 0, count)
        return held + retained

    def _mark(self, row: PersonalRecord, superseded_by_id) -> PersonalRecord:
        if row.superseded_by_id == superseded_by_id:
            return row
        self.records.set_superseded_by(row.id, superseded_by_id)
        return replace(row, superseded_by_id=superseded_by_id)

    def remove_for_lift_log(self, lift_log_id: int) -> int:
        """Delete every row owned by a lift log and clear its cache fields."""
        rows = self.records.fetch_for_lift_log(lift_log_id)
        for row in rows:
            self.records.delete(row.id)
        self.lift_logs.set_pr_flags(lift_log_id, False, 0)
        if rows:
            logger.debug("removed %d records of lift log %s", len(rows), lift_log_id)
        return len(rows)

    def verify_chains(self, user_id: int, exercise_id: int) -> None:
        """Raise ``InconsistentLedgerError`` if a key has more than one current row."""
        rows = self.records.fetch_for_exercise(user_id, exercise_id)
        current: Dict[RecordKey, List[int]] = defaultdict(list)
        for row in self._current(rows):
            current[row.key].append(row.id)
        for key, ids in sorted(current.items(), key=lambda item: key_label(item[0])):
            if len(ids) > 1:
                raise InconsistentLedgerError(user_id, exercise_id, key_label(key), ids)
