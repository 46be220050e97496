import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

from algorithms import MathTools
from db import ExerciseRepository, LiftLogRepository
from exceptions import MalformedEntryError
from exercise_types import supports_pr_tracking
from models import (
    HYPERTROPHY,
    ONE_RM,
    REP_SPECIFIC,
    VOLUME,
    Exercise,
    LiftLog,
    LiftMetrics,
    LiftSet,
    PRAward,
    PRClassification,
    PRRejection,
)
from settings_schema import PRSettings

logger = logging.getLogger(__name__)

Best = Tuple[float, int]


class PriorBests:
    """Running best values over the lift logs seen so far on one timeline.

    Each category keeps the highest raw value seen; the tolerance is applied
    when classifying, not here. An exact tie keeps the earlier holder, so a
    blocking reference names the first lift log that reached the highest
    value. Hypertrophy weights within tolerance of each other share the
    first such weight seen as their key.
    """

    def __init__(self, tolerance: float = 0.1) -> None:
        self.tolerance = tolerance
        self.count = 0
        self.one_rm: Optional[Best] = None
        self.volume: Optional[Best] = None
        self.rep_weights: Dict[int, Best] = {}
        self.weight_reps: Dict[float, Tuple[int, int]] = {}

    def add(self, lift_log_id: int, metrics: LiftMetrics) -> None:
        self.count += 1
        if self.one_rm is None or metrics.best_estimated_max > self.one_rm[0]:
            self.one_rm = (metrics.best_estimated_max, lift_log_id)
        if self.volume is None or metrics.total_volume > self.volume[0]:
            self.volume = (metrics.total_volume, lift_log_id)
        for reps, weight in metrics.best_weight_per_rep.items():
            best = self.rep_weights.get(reps)
            if best is None or weight > best[0]:
                self.rep_weights[reps] = (weight, lift_log_id)
        for weight, reps in sorted(metrics.best_reps_per_weight.items()):
            seen = self.weight_for(weight)
            best = self.weight_reps.get(seen)
            if best is None or reps > best[0]:
                self.weight_reps[seen] = (reps, lift_log_id)

    def weight_for(self, weight: float) -> float:
        """Return the first weight seen within tolerance of ``weight``, else ``weight``."""
        for seen in self.weight_reps:
            if MathTools.within(seen, weight, self.tolerance):
                return seen
        return weight

    def reps_at(self, weight: float) -> Optional[Tuple[int, int, float]]:
        """Return ``(reps, lift_log_id, weight)`` for the best prior set at ``weight``."""
        seen = self.weight_for(weight)
        best = self.weight_reps.get(seen)
        if best is None:
            return None
        return best[0], best[1], seen

    def snapshot(self) -> dict:
        out: dict = {}
        if self.one_rm is not None:
            out[ONE_RM] = {"value": self.one_rm[0], "lift_log_id": self.one_rm[1]}
        if self.volume is not None:
            out[VOLUME] = {"value": self.volume[0], "lift_log_id": self.volume[1]}
        if self.rep_weights:
            out[REP_SPECIFIC] = {
                str(reps): {"value": w, "lift_log_id": log_id}
                for reps, (w, log_id) in sorted(self.rep_weights.items())
            }
        if self.weight_reps:
            out[HYPERTROPHY] = {
                f"{weight:g}": {"value": reps, "lift_log_id": log_id}
                for weight, (reps, log_id) in sorted(self.weight_reps.items())
            }
        return out


class PRDetectionService:
    """Extract comparable metrics from lift logs and classify personal records."""

    def __init__(
        self,
        lift_logs: LiftLogRepository | None = None,
        exercises: ExerciseRepository | None = None,
        settings: PRSettings | None = None,
    ) -> None:
        self.lift_logs = lift_logs
        self.exercises = exercises
        self.settings = settings or PRSettings()

    @property
    def tolerance(self) -> float:
        return self.settings.pr_tolerance

    def is_eligible(self, exercise: Exercise) -> bool:
        return supports_pr_tracking(
            exercise.exercise_type, self.settings.ineligible_exercise_types
        )

    @staticmethod
    def validate_sets(sets: Iterable[LiftSet]) -> List[LiftSet]:
        sets = list(sets)
        if not sets:
            raise MalformedEntryError("lift log must contain at least one set")
        for lift_set in sets:
            reps, weight = lift_set.reps, lift_set.weight
            if not math.isfinite(reps) or int(reps) != reps or reps < 1:
                raise MalformedEntryError("reps must be a positive integer")
            if not math.isfinite(weight) or weight < 0:
                raise MalformedEntryError("weight must be a finite, non-negative number")
        return sets

    def calculate_metrics(self, sets: Iterable[LiftSet]) -> LiftMetrics:
        sets = self.validate_sets(sets)
        coeff = self.settings.epley_coefficient
        low, high = self.settings.rep_range_min, self.settings.rep_range_max
        best_max = max(MathTools.epley_1rm(s.weight, s.reps, coeff) for s in sets)
        volume = MathTools.volume((s.reps, s.weight) for s in sets)
        per_rep: Dict[int, float] = {}
        per_weight: Dict[float, int] = {}
        for s in sets:
            if low <= s.reps <= high:
                per_rep[s.reps] = max(per_rep.get(s.reps, 0.0), float(s.weight))
            if s.weight > 0:
                weight = float(s.weight)
                per_weight[weight] = max(per_weight.get(weight, 0), int(s.reps))
        return LiftMetrics(best_max, volume, per_rep, per_weight)

    def new_prior_bests(self) -> PriorBests:
        return PriorBests(self.tolerance)

    def classify(
        self, lift_log_id: Optional[int], metrics: LiftMetrics, prior: PriorBests
    ) -> PRClassification:
        """Decide which categories ``metrics`` satisfies against ``prior``."""
        awards: List[PRAward] = []
        rejections: List[PRRejection] = []
        tol = self.tolerance

        for pr_type, value, best in (
            (ONE_RM, metrics.best_estimated_max, prior.one_rm),
            (VOLUME, metrics.total_volume, prior.volume),
        ):
            if prior.count == 0 or best is None:
                awards.append(PRAward(pr_type, value, reason=f"First recorded {pr_type}"))
            elif MathTools.exceeds(value, best[0], tol):
                awards.append(
                    PRAward(
                        pr_type,
                        value,
                        previous_value=best[0],
                        previous_lift_log_id=best[1],
                        reason=_award_reason(pr_type, value, best[0], best[1]),
                    )
                )
            else:
                rejections.append(
                    PRRejection(
                        pr_type,
                        value,
                        best[0],
                        best[1],
                        reason=_rejection_reason(pr_type, value, best[0], best[1]),
                    )
                )

        for reps, weight in sorted(metrics.best_weight_per_rep.items()):
            best = prior.rep_weights.get(reps)
            if best is None:
                awards.append(
                    PRAward(
                        REP_SPECIFIC,
                        weight,
                        rep_count=reps,
                        reason=f"First recorded {reps}-rep max",
                    )
                )
            elif MathTools.exceeds(weight, best[0], tol):
                awards.append(
                    PRAward(
                        REP_SPECIFIC,
                        weight,
                        rep_count=reps,
                        previous_value=best[0],
                        previous_lift_log_id=best[1],
                        reason=_award_reason(REP_SPECIFIC, weight, best[0], best[1], reps=reps),
                    )
                )
            else:
                rejections.append(
                    PRRejection(
                        REP_SPECIFIC,
                        weight,
                        best[0],
                        best[1],
                        rep_count=reps,
                        reason=_rejection_reason(REP_SPECIFIC, weight, best[0], best[1], reps=reps),
                    )
                )

        # one comparison per prior weight, using this lift log's best set near it
        near: Dict[float, Tuple[int, float]] = {}
        for weight, reps in sorted(metrics.best_reps_per_weight.items()):
            seen = prior.weight_for(weight)
            if seen in prior.weight_reps and (seen not in near or reps > near[seen][0]):
                near[seen] = (reps, weight)

        for seen, (reps, weight) in sorted(near.items()):
            best_reps, log_id, _ = prior.reps_at(seen)
            if reps > best_reps:
                awards.append(
                    PRAward(
                        HYPERTROPHY,
                        float(reps),
                        weight=seen,
                        previous_value=float(best_reps),
                        previous_lift_log_id=log_id,
                        reason=_award_reason(HYPERTROPHY, reps, best_reps, log_id, weight=weight),
                    )
                )
            else:
                rejections.append(
                    PRRejection(
                        HYPERTROPHY,
                        float(reps),
                        float(best_reps),
                        log_id,
                        weight=seen,
                        reason=_rejection_reason(HYPERTROPHY, reps, best_reps, log_id, weight=weight),
                    )
                )

        return PRClassification(
            lift_log_id=lift_log_id,
            eligible=True,
            metrics=metrics,
            awards=tuple(awards),
            rejections=tuple(rejections),
            previous_logs_count=prior.count,
            previous_bests=prior.snapshot(),
        )

    def prior_bests_for(self, history: Iterable[LiftLog]) -> PriorBests:
        prior = self.new_prior_bests()
        for log in history:
            prior.add(log.id, self.calculate_metrics(log.sets))
        return prior

    def classify_lift_log(self, lift_log: LiftLog | int) -> PRClassification:
        """Classify a stored lift log against its timeline without writing anything."""
        if self.lift_logs is None or self.exercises is None:
            raise RuntimeError("classify_lift_log requires lift log and exercise repositories")
        if isinstance(lift_log, int):
            lift_log = self.lift_logs.fetch(lift_log)
        exercise = self.exercises.fetch(lift_log.exercise_id)
        if not self.is_eligible(exercise):
            return PRClassification(lift_log_id=lift_log.id, eligible=False)
        metrics = self.calculate_metrics(lift_log.sets)
        history = self.lift_logs.fetch_history(lift_log.user_id, lift_log.exercise_id)
        earlier = [log for log in history if log.sort_key < lift_log.sort_key]
        result = self.classify(lift_log.id, metrics, self.prior_bests_for(earlier))
        logger.debug(
            "classified lift log %s: %s", lift_log.id, sorted(result.categories)
        )
        return result


def _award_reason(
    pr_type: str,
    value: float,
    previous: float,
    previous_id: int,
    reps: Optional[int] = None,
    weight: Optional[float] = None,
) -> str:
    if pr_type == ONE_RM:
        return f"New 1RM: {value:.1f} lbs (previous: {previous:.1f} lbs from lift #{previous_id})"
    if pr_type == VOLUME:
        return f"New volume: {value:.0f} lbs (previous: {previous:.0f} lbs from lift #{previous_id})"
    if pr_type == REP_SPECIFIC:
        return (
            f"New {reps}-rep max: {value:.1f} lbs "
            f"(previous: {previous:.1f} lbs from lift #{previous_id})"
        )
    return (
        f"New best at {weight:.1f} lbs: {int(value)} reps "
        f"(previous: {int(previous)} reps from lift #{previous_id})"
    )


def _rejection_reason(
    pr_type: str,
    value: float,
    previous: float,
    previous_id: int,
    reps: Optional[int] = None,
    weight: Optional[float] = None,
) -> str:
    if pr_type == ONE_RM:
        return (
            f"Current 1RM ({value:.1f} lbs) did not exceed previous best "
            f"({previous:.1f} lbs from lift #{previous_id})"
        )
    if pr_type == VOLUME:
        return (
            f"Current volume ({value:.0f} lbs) did not exceed previous best "
            f"({previous:.0f} lbs from lift #{previous_id})"
        )
    if pr_type == REP_SPECIFIC:
        return (
            f"Best {reps}-rep weight ({value:.1f} lbs) did not exceed previous best "
            f"({previous:.1f} lbs from lift #{previous_id})"
        )
    return (
        f"{int(value)} reps at {weight:.1f} lbs did not exceed previous best "
        f"({int(previous)} reps from lift #{previous_id})"
    )
