import datetime
from typing import Iterable, List, Optional

from db import PRDetectionLogRepository
from models import (
    TRIGGER_KINDS,
    LiftLog,
    PRClassification,
    PRDetectionLog,
    RecordKey,
    key_label,
)


class PRAuditService:
    """Append-only audit trail of PR classifications."""

    def __init__(self, detection_logs: PRDetectionLogRepository) -> None:
        self.detection_logs = detection_logs

    @staticmethod
    def build_snapshot(
        lift_log: LiftLog,
        classification: PRClassification,
        retained: Iterable[RecordKey] = (),
    ) -> dict:
        metrics = classification.metrics.to_dict() if classification.metrics else {}
        return {
            "current_lift": {
                "id": lift_log.id,
                "logged_at": lift_log.logged_at.isoformat(),
                "metrics": metrics,
            },
            "previous_logs_count": classification.previous_logs_count,
            "previous_bests": classification.previous_bests,
            "pr_reasons": {key_label(a.key): a.reason for a in classification.awards},
            "why_not_pr": {
                key_label(r.key): {
                    "reason": r.reason,
                    "value": r.value,
                    "best_value": r.best_value,
                    "blocking_lift_log_id": r.blocking_lift_log_id,
                }
                for r in classification.rejections
            },
            "retained_records": sorted(key_label(key) for key in retained),
        }

    def record(
        self,
        lift_log: LiftLog,
        classification: PRClassification,
        trigger_event: str,
        is_cascade: bool = False,
        detected_at: Optional[datetime.datetime] = None,
        retained: Iterable[RecordKey] = (),
    ) -> int:
        """Append one audit record; ``retained`` lists keys kept as history."""
        if trigger_event not in TRIGGER_KINDS:
            raise ValueError(f"unknown trigger event: {trigger_event}")
        return self.detection_logs.add(
            lift_log.id,
            lift_log.user_id,
            lift_log.exercise_id,
            trigger_event,
            sorted(classification.categories),
            self.build_snapshot(lift_log, classification, retained),
            is_cascade=is_cascade,
            detected_at=detected_at,
        )

    def for_lift_log(self, lift_log_id: int) -> List[PRDetectionLog]:
        return self.detection_logs.fetch_for_lift_log(lift_log_id)

    def for_exercise(
        self, exercise_id: int, user_id: Optional[int] = None
    ) -> List[PRDetectionLog]:
        return self.detection_logs.fetch_for_exercise(exercise_id, user_id)
