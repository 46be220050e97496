import datetime
import gc
import os
import sys
import unittest
from unittest import mock

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig
from exceptions import CascadeLimitError, InconsistentLedgerError, MalformedEntryError
from models import HYPERTROPHY, ONE_RM, REP_SPECIFIC, VOLUME, LiftSet, TriggerEvent
from pr_recalculation_service import PRRecalculationService
from rest_api import PRAPI


def day(n: int) -> datetime.datetime:
    return datetime.datetime(2024, 1, n, 9, 0)


class RecalculationTestCase(unittest.TestCase):
    db_path = "test_pr_recalc.db"
    yaml_path = "test_pr_recalc.yaml"
    settings: dict = {}

    def setUp(self) -> None:
        self._cleanup()
        if self.settings:
            YamlConfig(self.yaml_path).save(self.settings)
        self.api = PRAPI(db_path=self.db_path, yaml_path=self.yaml_path)
        self.service = self.api.lift_log_service
        self.bench = self.api.exercises.add("Bench Press", "barbell")

    def tearDown(self) -> None:
        self._cleanup()

    def _cleanup(self) -> None:
        for path in [self.db_path, self.yaml_path]:
            if os.path.exists(path):
                os.remove(path)

    def log(self, weight, reps, when, exercise_id=None, user_id=1) -> int:
        entry, _ = self.service.create(
            user_id, exercise_id or self.bench, [LiftSet(weight, reps)], when
        )
        return entry.id

    def current(self, pr_type, exercise_id=None, **key):
        rows = self.api.records.current_records(
            1, exercise_id or self.bench, pr_type, key.get("rep_count")
        )
        return [r.lift_log_id for r in rows]

    def flags(self, lift_log_id):
        entry = self.api.lift_logs.fetch(lift_log_id)
        return entry.is_pr, entry.pr_count


class ScenarioTestCase(RecalculationTestCase):
    def test_scenario_a_progression(self) -> None:
        first = self.log(100, 5, day(1))
        self.assertEqual(self.flags(first), (True, 3))
        second = self.log(110, 5, day(2))
        self.assertEqual(self.flags(second), (True, 3))
        self.assertEqual(self.current(ONE_RM), [second])
        self.assertEqual(self.current(VOLUME), [second])
        self.assertEqual(self.current(REP_SPECIFIC, rep_count=5), [second])
        volume_chain = self.api.records.chain(1, self.bench, VOLUME)
        self.assertEqual([r.value for r in volume_chain], [500.0, 550.0])
        self.assertEqual(volume_chain[1].previous_pr_id, volume_chain[0].id)
        self.assertEqual(volume_chain[1].previous_value, 500.0)

    def test_scenario_b_rep_specific_only(self) -> None:
        self.log(200, 3, day(1))
        second = self.log(185, 5, day(2))
        kinds = {r.pr_type for r in self.api.records.fetch_for_lift_log(second)}
        self.assertIn(REP_SPECIFIC, kinds)
        self.assertNotIn(ONE_RM, kinds)

    def test_scenario_c_backdated_heavier_entry(self) -> None:
        later = self.log(300, 5, day(15))
        earlier = self.log(315, 5, day(10))
        self.assertEqual(self.current(ONE_RM), [earlier])
        self.assertEqual(self.flags(earlier), (True, 3))
        # the lighter lift keeps the records it set, as history
        self.assertEqual(self.flags(later), (True, 3))
        taken_by = {r.pr_type: r.id for r in self.api.records.fetch_for_lift_log(earlier)}
        history = self.api.records.fetch_for_lift_log(later)
        self.assertEqual({r.pr_type: r.superseded_by_id for r in history}, taken_by)
        chain = self.api.records.chain(1, self.bench, ONE_RM)
        self.assertEqual([r.lift_log_id for r in chain], [later, earlier])
        self.api.ledger.verify_chains(1, self.bench)
        audit = self.api.audit.for_lift_log(later)
        self.assertEqual([a.trigger_event for a in audit], ["created", "created"])
        self.assertEqual([a.is_cascade for a in audit], [False, True])
        self.assertEqual(
            audit[1].calculation_snapshot["retained_records"],
            ["one_rm", "rep_specific:5", "volume"],
        )
        self.assertEqual(audit[1].pr_types_detected, ())

    def test_scenario_c_is_stable_under_recalculation(self) -> None:
        later = self.log(300, 5, day(15))
        self.log(315, 5, day(10))
        before = self.api.records.fetch_for_exercise(1, self.bench)
        self.api.recalculator.recalculate_all(1, self.bench)
        self.assertEqual(self.api.records.fetch_for_exercise(1, self.bench), before)
        self.service.update(later, comments="felt heavy")
        self.assertEqual(self.flags(later), (True, 3))
        self.assertEqual(self.api.records.fetch_for_exercise(1, self.bench), before)

    def test_deleting_backdated_holder_restores_history(self) -> None:
        later = self.log(300, 5, day(15))
        earlier = self.log(315, 5, day(10))
        self.service.delete(earlier)
        self.assertEqual(self.current(ONE_RM), [later])
        rows = self.api.records.fetch_for_lift_log(later)
        self.assertEqual([r.superseded_by_id for r in rows], [None, None, None])
        self.assertEqual(self.flags(later), (True, 3))
        self.assertEqual(len(self.api.records.chain(1, self.bench, ONE_RM)), 1)

    def test_scenario_d_delete_restores_previous_holder(self) -> None:
        first = self.log(100, 5, day(1))
        second = self.log(110, 5, day(2))
        self.service.delete(second)
        self.assertEqual(self.current(ONE_RM), [first])
        self.assertEqual(self.current(VOLUME), [first])
        self.assertEqual(self.api.records.fetch_for_lift_log(second), [])
        self.assertEqual(self.flags(first), (True, 3))

    def test_scenario_e_volume_tolerance(self) -> None:
        self.log(150, 10, day(1))
        second = self.log(150.005, 10, day(2))
        self.assertEqual(self.flags(second), (False, 0))
        self.assertEqual(len(self.api.records.chain(1, self.bench, VOLUME)), 1)


class CascadeTestCase(RecalculationTestCase):
    def test_delete_middle_entry_relinks_chain(self) -> None:
        first = self.log(100, 5, day(1))
        second = self.log(110, 5, day(2))
        third = self.log(120, 5, day(3))
        chain = self.api.records.chain(1, self.bench, ONE_RM)
        self.assertEqual([r.lift_log_id for r in chain], [first, second, third])

        self.service.delete(second)
        chain = self.api.records.chain(1, self.bench, ONE_RM)
        self.assertEqual([r.lift_log_id for r in chain], [first, third])
        self.assertEqual(chain[1].previous_pr_id, chain[0].id)
        self.assertAlmostEqual(chain[1].previous_value, 100 * (1 + 0.0333 * 5))

    def test_deleting_blocker_promotes_later_entry(self) -> None:
        self.log(100, 5, day(1))
        blocker = self.log(130, 5, day(2))
        later = self.log(120, 5, day(3))
        self.assertEqual(self.flags(later), (False, 0))
        self.service.delete(blocker)
        self.assertEqual(self.current(ONE_RM), [later])
        self.assertTrue(self.flags(later)[0])
        cascade = self.api.audit.for_lift_log(later)[-1]
        self.assertEqual(cascade.trigger_event, "deleted")
        self.assertTrue(cascade.is_cascade)
        self.assertIn(ONE_RM, cascade.pr_types_detected)

    def test_update_demotes_entry(self) -> None:
        first = self.log(100, 5, day(1))
        second = self.log(110, 5, day(2))
        self.service.update(second, sets=[LiftSet(90, 5)])
        self.assertEqual(self.flags(second), (False, 0))
        self.assertEqual(self.current(ONE_RM), [first])
        self.assertEqual(len(self.api.records.chain(1, self.bench, ONE_RM)), 1)

    def test_update_moving_entry_earlier(self) -> None:
        first = self.log(100, 5, day(2))
        second = self.log(110, 5, day(3))
        third = self.log(120, 5, day(4))
        self.service.update(third, logged_at=day(1))
        self.assertEqual(self.current(ONE_RM), [third])
        self.assertEqual(self.flags(first), (True, 3))
        self.assertEqual(self.flags(second), (True, 3))
        chain = self.api.records.chain(1, self.bench, ONE_RM)
        self.assertEqual([r.lift_log_id for r in chain], [first, second, third])
        self.assertEqual(chain[-1].achieved_at, day(1))
        self.assertIsNone(chain[-1].previous_pr_id)

    def test_raising_earlier_entry_in_place_demotes_later(self) -> None:
        first = self.log(100, 5, day(1))
        second = self.log(110, 5, day(2))
        self.service.update(first, sets=[LiftSet(120, 5)])
        self.assertEqual(self.flags(second), (False, 0))
        self.assertEqual(self.api.records.fetch_for_lift_log(second), [])
        self.assertEqual(self.current(ONE_RM), [first])

    def test_update_lowering_entry_drops_its_history(self) -> None:
        later = self.log(300, 5, day(15))
        self.log(315, 5, day(10))
        self.service.update(later, sets=[LiftSet(250, 5)])
        self.assertEqual(self.flags(later), (False, 0))
        self.assertEqual(self.api.records.fetch_for_lift_log(later), [])

    def test_near_equal_weights_share_hypertrophy_chain(self) -> None:
        self.log(100, 5, day(1))
        second = self.log(100.05, 6, day(2))
        third = self.log(100.05, 7, day(3))
        rows = self.api.records.current_records(1, self.bench, HYPERTROPHY)
        self.assertEqual([(r.lift_log_id, r.weight) for r in rows], [(third, 100.0)])
        chain = self.api.records.chain(1, self.bench, HYPERTROPHY, weight=100.0)
        self.assertEqual([r.lift_log_id for r in chain], [second, third])
        self.assertEqual(chain[1].previous_pr_id, chain[0].id)
        self.assertEqual(chain[1].previous_value, 6.0)

    def test_update_reads_lift_log_under_lock(self) -> None:
        squat = self.api.exercises.add("Squat", "barbell")
        entry = self.log(100, 5, day(1))
        stale = self.api.lift_logs.fetch(entry)
        # moved by another writer after this update first read it
        self.api.lift_logs.update(entry, squat, day(1), [LiftSet(100, 5)])
        real_fetch = self.api.lift_logs.fetch
        calls = []

        def fetch(lift_log_id, include_deleted=False):
            calls.append(lift_log_id)
            if len(calls) == 1:
                return stale
            return real_fetch(lift_log_id, include_deleted)

        recalculator = self.api.recalculator
        with mock.patch.object(self.api.lift_logs, "fetch", side_effect=fetch), mock.patch.object(
            recalculator, "recalculate", wraps=recalculator.recalculate
        ) as recalculate:
            self.service.update(entry, sets=[LiftSet(105, 5)])
        trigger = recalculate.call_args[0][0]
        self.assertEqual(trigger.previous_exercise_id, squat)
        self.assertEqual(self.current(ONE_RM, exercise_id=squat), [entry])

    def test_timeline_locks_are_released(self) -> None:
        key = (7, 7)
        with self.api.recalculator.locked([key]):
            self.assertIn(key, PRRecalculationService._locks)
        gc.collect()
        self.assertNotIn(key, PRRecalculationService._locks)

    def test_update_moving_entry_later(self) -> None:
        first = self.log(120, 5, day(1))
        second = self.log(100, 5, day(2))
        third = self.log(110, 5, day(3))
        self.service.update(first, logged_at=day(5))
        # 100 -> 110 -> 120 is now a rising sequence
        chain = self.api.records.chain(1, self.bench, ONE_RM)
        self.assertEqual([r.lift_log_id for r in chain], [second, third, first])

    def test_update_changing_exercise(self) -> None:
        squat = self.api.exercises.add("Squat", "barbell")
        first = self.log(100, 5, day(1))
        moved = self.log(110, 5, day(2))
        heavy_squat = self.log(200, 5, day(3), exercise_id=squat)
        self.service.update(moved, exercise_id=squat)

        self.assertEqual(self.current(ONE_RM), [first])
        self.assertEqual(self.api.records.chain(1, self.bench, ONE_RM)[-1].lift_log_id, first)
        chain = self.api.records.chain(1, squat, ONE_RM)
        self.assertEqual([r.lift_log_id for r in chain], [moved, heavy_squat])
        for record in self.api.records.fetch_for_lift_log(moved):
            self.assertEqual(record.exercise_id, squat)

    def test_recalculation_is_idempotent(self) -> None:
        for n, weight in enumerate([100, 95, 110, 110, 105], start=1):
            self.log(weight, 5, day(n))
        before = self.api.records.fetch_for_exercise(1, self.bench)
        flags_before = [self.flags(e.id) for e in self.api.lift_logs.fetch_history(1, self.bench)]
        self.api.recalculator.recalculate_all(1, self.bench)
        self.api.recalculator.recalculate_all(1, self.bench)
        self.assertEqual(self.api.records.fetch_for_exercise(1, self.bench), before)
        flags_after = [self.flags(e.id) for e in self.api.lift_logs.fetch_history(1, self.bench)]
        self.assertEqual(flags_after, flags_before)

    def test_at_most_one_current_row_per_key(self) -> None:
        plan = [(100, 5), (90, 8), (105, 3), (90, 10), (110, 5), (90, 12)]
        ids = [self.log(w, r, day(n)) for n, (w, r) in enumerate(plan, start=1)]
        self.service.update(ids[4], logged_at=day(20))
        self.service.delete(ids[1])
        self.api.ledger.verify_chains(1, self.bench)
        keys = [r.key for r in self.api.records.current_records(1, self.bench)]
        self.assertEqual(len(keys), len(set(keys)))
        self.assertIn((HYPERTROPHY, None, 90.0), keys)

    def test_recalculate_requires_deleted_entry_for_delete_trigger(self) -> None:
        first = self.log(100, 5, day(1))
        with self.assertRaises(ValueError):
            self.api.recalculator.recalculate(TriggerEvent.deleted(first))


class IneligibleExerciseTestCase(RecalculationTestCase):
    def test_bodyweight_entries_never_pr(self) -> None:
        pull_up = self.api.exercises.add("Pull Up", "bodyweight")
        entry = self.log(0, 10, day(1), exercise_id=pull_up)
        self.assertEqual(self.flags(entry), (False, 0))
        self.assertEqual(self.api.records.fetch_for_exercise(1, pull_up), [])
        self.assertEqual(self.api.audit.for_lift_log(entry), [])
        result = self.api.detector.classify_lift_log(entry)
        self.assertFalse(result.eligible)
        self.assertFalse(result.is_pr)

    def test_moving_to_ineligible_exercise_clears_records(self) -> None:
        band = self.api.exercises.add("Band Row", "banded_resistance")
        entry = self.log(100, 5, day(1))
        self.service.update(entry, exercise_id=band)
        self.assertEqual(self.api.records.fetch_for_lift_log(entry), [])
        self.assertEqual(self.flags(entry), (False, 0))


class ReadOnlyClassificationTestCase(RecalculationTestCase):
    def test_classify_lift_log_writes_nothing(self) -> None:
        self.log(100, 5, day(1))
        second = self.log(95, 5, day(2))
        audits = self.api.detection_logs.count()
        records = self.api.records.fetch_for_exercise(1, self.bench)
        result = self.api.detector.classify_lift_log(second)
        self.assertFalse(result.is_pr)
        self.assertEqual(result.previous_logs_count, 1)
        self.assertEqual(self.api.detection_logs.count(), audits)
        self.assertEqual(self.api.records.fetch_for_exercise(1, self.bench), records)

    def test_unknown_lift_log(self) -> None:
        with self.assertRaises(ValueError):
            self.api.detector.classify_lift_log(999)


class AuditTestCase(RecalculationTestCase):
    def test_snapshot_contents(self) -> None:
        self.log(200, 3, day(1))
        second = self.log(185, 5, day(2))
        (entry,) = self.api.audit.for_lift_log(second)
        snap = entry.calculation_snapshot
        self.assertEqual(entry.trigger_event, "created")
        self.assertFalse(entry.is_cascade)
        self.assertEqual(snap["current_lift"]["id"], second)
        self.assertEqual(snap["current_lift"]["metrics"]["total_volume"], 925.0)
        self.assertEqual(snap["previous_logs_count"], 1)
        self.assertEqual(snap["previous_bests"]["one_rm"]["lift_log_id"], 1)
        self.assertIn("rep_specific:5", snap["pr_reasons"])
        self.assertEqual(snap["why_not_pr"]["one_rm"]["blocking_lift_log_id"], 1)
        self.assertEqual(sorted(entry.pr_types_detected), [REP_SPECIFIC, VOLUME])

    def test_for_exercise(self) -> None:
        self.log(100, 5, day(1))
        self.log(110, 5, day(2), user_id=2)
        self.assertEqual(len(self.api.audit.for_exercise(self.bench)), 2)
        self.assertEqual(len(self.api.audit.for_exercise(self.bench, user_id=2)), 1)

    def test_unknown_trigger_rejected(self) -> None:
        with self.assertRaises(ValueError):
            TriggerEvent("imported", 1)


class ErrorHandlingTestCase(RecalculationTestCase):
    settings = {"max_cascade_entries": 2}

    def test_cascade_limit_rolls_back_write(self) -> None:
        self.log(100, 5, day(2))
        self.log(110, 5, day(3))
        audits = self.api.detection_logs.count()
        with self.assertRaises(CascadeLimitError):
            self.log(90, 5, day(1))
        self.assertEqual(len(self.api.lift_logs.fetch_history(1, self.bench)), 2)
        self.assertEqual(self.api.detection_logs.count(), audits)

    def test_malformed_entry_is_not_stored(self) -> None:
        with self.assertRaises(MalformedEntryError):
            self.service.create(1, self.bench, [], day(1))
        with self.assertRaises(MalformedEntryError):
            self.service.create(1, self.bench, [LiftSet(100, 0)], day(1))
        with self.assertRaises(MalformedEntryError):
            self.service.create(1, self.bench, [LiftSet(float("nan"), 5)], day(1))
        with self.assertRaises(MalformedEntryError):
            self.service.create(1, self.bench, [{"weight": "inf", "reps": 5}], day(1))
        self.assertEqual(self.api.lift_logs.fetch_history(1, self.bench), [])

    def test_inconsistent_ledger_aborts(self) -> None:
        first = self.log(100, 5, day(1))
        self.api.records.add(1, self.bench, first, ONE_RM, 999.0, day(1))
        with self.assertRaises(InconsistentLedgerError):
            self.log(120, 5, day(2))
        self.assertEqual(len(self.api.lift_logs.fetch_history(1, self.bench)), 1)
        with self.assertRaises(InconsistentLedgerError):
            self.api.ledger.verify_chains(1, self.bench)

    def test_historical_recalculation_reports_errors(self) -> None:
        self.log(100, 5, day(1))
        self.log(110, 5, day(2))
        self.log(120, 5, day(3))
        squat = self.api.exercises.add("Squat")
        self.log(150, 5, day(1), exercise_id=squat)
        summary = self.api.recalculator.recalculate_historical()
        self.assertEqual(summary["timelines"], 2)
        # bench has three lift logs and a limit of two
        self.assertEqual(summary["errors"], 1)
        self.assertEqual(summary["failed"][0]["exercise_id"], self.bench)
        self.assertEqual(summary["processed"], 1)


class HistoricalTestCase(RecalculationTestCase):
    def _seed_without_records(self) -> list:
        ids = []
        for n, weight in enumerate([100, 110, 105], start=1):
            ids.append(self.api.lift_logs.create(1, self.bench, day(n), [LiftSet(weight, 5)]))
        return ids

    def test_dry_run_writes_nothing(self) -> None:
        self._seed_without_records()
        summary = self.api.recalculator.recalculate_historical(dry_run=True)
        self.assertEqual(summary["processed"], 3)
        self.assertEqual(summary["pr_lift_logs"], 2)
        self.assertEqual(self.api.records.fetch_for_exercise(1, self.bench), [])
        self.assertEqual(self.api.detection_logs.count(), 0)

    def test_backfill_builds_ledger(self) -> None:
        ids = self._seed_without_records()
        summary = self.api.recalculator.recalculate_historical(user_id=1, exercise_id=self.bench)
        self.assertEqual(summary["errors"], 0)
        self.assertEqual(self.current(ONE_RM), [ids[1]])
        audits = self.api.audit.for_exercise(self.bench)
        self.assertEqual({a.trigger_event for a in audits}, {"backfill"})
        self.assertFalse(any(a.is_cascade for a in audits))


if __name__ == "__main__":
    unittest.main()
