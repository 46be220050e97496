from typing import Iterable, Optional

REGULAR = "regular"
BARBELL = "barbell"
BODYWEIGHT = "bodyweight"
BANDED_RESISTANCE = "banded_resistance"
BANDED_ASSISTANCE = "banded_assistance"

EXERCISE_TYPES = frozenset(
    {REGULAR, BARBELL, BODYWEIGHT, BANDED_RESISTANCE, BANDED_ASSISTANCE}
)
DEFAULT_TYPE = REGULAR

# Legacy names still found in older rows.
_ALIASES = {
    "weighted": REGULAR,
    "banded": BANDED_RESISTANCE,
    "resistance_band": BANDED_RESISTANCE,
    "assistance_band": BANDED_ASSISTANCE,
}

# No mandatory external load, so there is nothing to rank.
INELIGIBLE_TYPES = frozenset({BODYWEIGHT, BANDED_RESISTANCE, BANDED_ASSISTANCE})


def normalize_exercise_type(exercise_type: Optional[str]) -> str:
    """Return the canonical category for ``exercise_type``.

    Unknown or empty values fall back to :data:`DEFAULT_TYPE`.
    """
    if not exercise_type:
        return DEFAULT_TYPE
    key = exercise_type.strip().lower()
    key = _ALIASES.get(key, key)
    if key not in EXERCISE_TYPES:
        return DEFAULT_TYPE
    return key


def supports_pr_tracking(
    exercise_type: Optional[str], ineligible: Optional[Iterable[str]] = None
) -> bool:
    """Return whether PRs are tracked for exercises of ``exercise_type``."""
    if ineligible is None:
        blocked = INELIGIBLE_TYPES
    else:
        names = (t.strip().lower() for t in ineligible if t)
        blocked = {_ALIASES.get(name, name) for name in names}
    return normalize_exercise_type(exercise_type) not in blocked
