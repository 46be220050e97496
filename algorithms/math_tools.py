from typing import Iterable, Tuple


class MathTools:
    """Provides the numeric helpers used when ranking lift logs."""

    EPL_COEFF: float = 0.0333

    @classmethod
    def epley_1rm(
        cls, weight: float, reps: int, coefficient: float | None = None
    ) -> float:
        """Return the estimated one-rep max using the Epley formula.

        A single rep is returned unchanged so that true singles are never
        inflated by the extrapolation.
        """
        if reps < 0:
            raise ValueError("reps must be non-negative")
        if weight < 0:
            raise ValueError("weight must be non-negative")
        if reps == 1:
            return float(weight)
        coeff = cls.EPL_COEFF if coefficient is None else coefficient
        return weight * (1 + coeff * reps)

    @staticmethod
    def volume(sets: Iterable[Tuple[int, float]]) -> float:
        """Compute training volume as the sum of reps times weight."""
        vol = 0.0
        for reps, weight in sets:
            vol += reps * weight
        return vol

    @staticmethod
    def exceeds(value: float, reference: float, tolerance: float) -> bool:
        """Return ``True`` when ``value`` beats ``reference`` by more than ``tolerance``."""
        return value - reference > tolerance

    @staticmethod
    def within(a: float, b: float, tolerance: float) -> bool:
        """Return ``True`` when ``a`` and ``b`` are equal within ``tolerance``."""
        return abs(a - b) <= tolerance
