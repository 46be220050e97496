import datetime
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

ONE_RM = "one_rm"
VOLUME = "volume"
REP_SPECIFIC = "rep_specific"
HYPERTROPHY = "hypertrophy"
PR_TYPES = (ONE_RM, VOLUME, REP_SPECIFIC, HYPERTROPHY)

TRIGGER_CREATED = "created"
TRIGGER_UPDATED = "updated"
TRIGGER_DELETED = "deleted"
TRIGGER_BACKFILL = "backfill"
TRIGGER_KINDS = (TRIGGER_CREATED, TRIGGER_UPDATED, TRIGGER_DELETED, TRIGGER_BACKFILL)

# (pr_type, rep_count, weight) identifies one supersession chain per user+exercise.
RecordKey = Tuple[str, Optional[int], Optional[float]]


def record_key(
    pr_type: str, rep_count: Optional[int] = None, weight: Optional[float] = None
) -> RecordKey:
    if pr_type == REP_SPECIFIC:
        return (pr_type, int(rep_count) if rep_count is not None else None, None)
    if pr_type == HYPERTROPHY:
        return (pr_type, None, float(weight) if weight is not None else None)
    return (pr_type, None, None)


def key_label(key: RecordKey) -> str:
    """Return a stable text label such as ``rep_specific:5``."""
    pr_type, rep_count, weight = key
    if rep_count is not None:
        return f"{pr_type}:{rep_count}"
    if weight is not None:
        return f"{pr_type}:{weight:g}"
    return pr_type


@dataclass(frozen=True)
class Exercise:
    id: int
    name: str
    exercise_type: str
    user_id: Optional[int] = None


@dataclass(frozen=True)
class LiftSet:
    weight: float
    reps: int
    band_color: Optional[str] = None


@dataclass(frozen=True)
class LiftLog:
    """Snapshot of one lift log and its sets."""

    id: int
    user_id: int
    exercise_id: int
    logged_at: datetime.datetime
    sets: Tuple[LiftSet, ...] = ()
    comments: Optional[str] = None
    is_pr: bool = False
    pr_count: int = 0
    deleted_at: Optional[datetime.datetime] = None

    @property
    def sort_key(self) -> Tuple[datetime.datetime, int]:
        return (self.logged_at, self.id)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class LiftMetrics:
    best_estimated_max: float = 0.0
    total_volume: float = 0.0
    best_weight_per_rep: Dict[int, float] = field(default_factory=dict)
    best_reps_per_weight: Dict[float, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "best_1rm": round(self.best_estimated_max, 4),
            "total_volume": round(self.total_volume, 4),
            "best_weight_per_rep": {
                str(reps): weight for reps, weight in sorted(self.best_weight_per_rep.items())
            },
            "best_reps_per_weight": {
                f"{weight:g}": reps
                for weight, reps in sorted(self.best_reps_per_weight.items())
            },
        }


@dataclass(frozen=True)
class PRAward:
    pr_type: str
    value: float
    rep_count: Optional[int] = None
    weight: Optional[float] = None
    previous_value: Optional[float] = None
    previous_lift_log_id: Optional[int] = None
    reason: str = ""

    @property
    def key(self) -> RecordKey:
        return record_key(self.pr_type, self.rep_count, self.weight)


@dataclass(frozen=True)
class PRRejection:
    """A category that was considered but not awarded."""

    pr_type: str
    value: float
    best_value: float
    blocking_lift_log_id: Optional[int]
    rep_count: Optional[int] = None
    weight: Optional[float] = None
    reason: str = ""

    @property
    def key(self) -> RecordKey:
        return record_key(self.pr_type, self.rep_count, self.weight)


@dataclass(frozen=True)
class PRClassification:
    lift_log_id: Optional[int]
    eligible: bool
    metrics: Optional[LiftMetrics] = None
    awards: Tuple[PRAward, ...] = ()
    rejections: Tuple[PRRejection, ...] = ()
    previous_logs_count: int = 0
    previous_bests: Dict[str, dict] = field(default_factory=dict)

    @property
    def categories(self) -> set:
        return {award.pr_type for award in self.awards}

    @property
    def is_pr(self) -> bool:
        return bool(self.awards)

    @property
    def pr_count(self) -> int:
        return len(self.awards)

    @property
    def per_category_reason(self) -> Dict[str, str]:
        reasons = {key_label(r.key): r.reason for r in self.rejections}
        reasons.update({key_label(a.key): a.reason for a in self.awards})
        return reasons


@dataclass(frozen=True)
class TriggerEvent:
    """Explicit request to recalculate after a lift log mutation."""

    kind: str
    lift_log_id: int
    previous_logged_at: Optional[datetime.datetime] = None
    previous_exercise_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in TRIGGER_KINDS:
            raise ValueError(f"unknown trigger kind: {self.kind}")

    @classmethod
    def created(cls, lift_log_id: int) -> "TriggerEvent":
        return cls(TRIGGER_CREATED, lift_log_id)

    @classmethod
    def updated(
        cls,
        lift_log_id: int,
        previous_logged_at: Optional[datetime.datetime] = None,
        previous_exercise_id: Optional[int] = None,
    ) -> "TriggerEvent":
        return cls(TRIGGER_UPDATED, lift_log_id, previous_logged_at, previous_exercise_id)

    @classmethod
    def deleted(cls, lift_log_id: int) -> "TriggerEvent":
        return cls(TRIGGER_DELETED, lift_log_id)


@dataclass(frozen=True)
class PersonalRecord:
    id: int
    user_id: int
    exercise_id: int
    lift_log_id: int
    pr_type: str
    value: float
    rep_count: Optional[int] = None
    weight: Optional[float] = None
    previous_pr_id: Optional[int] = None
    previous_value: Optional[float] = None
    achieved_at: Optional[datetime.datetime] = None
    superseded_by_id: Optional[int] = None

    @property
    def key(self) -> RecordKey:
        return record_key(self.pr_type, self.rep_count, self.weight)


@dataclass(frozen=True)
class PRDetectionLog:
    id: int
    lift_log_id: int
    user_id: int
    exercise_id: int
    trigger_event: str
    is_cascade: bool
    pr_types_detected: Tuple[str, ...]
    calculation_snapshot: dict
    detected_at: datetime.datetime
