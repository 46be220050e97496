from typing import List

from pydantic import BaseModel, Field, ValidationError, model_validator

from exercise_types import INELIGIBLE_TYPES


class PRSettings(BaseModel):
    pr_tolerance: float = Field(0.1, ge=0)
    rep_range_min: int = Field(1, ge=1)
    rep_range_max: int = Field(10, ge=1)
    max_cascade_entries: int = Field(5000, ge=1)
    epley_coefficient: float = Field(0.0333, gt=0)
    ineligible_exercise_types: List[str] = Field(
        default_factory=lambda: sorted(INELIGIBLE_TYPES)
    )
    db_path: str = "workout.db"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_rep_range(self) -> "PRSettings":
        if self.rep_range_min > self.rep_range_max:
            raise ValueError("rep_range_min must not exceed rep_range_max")
        return self


def validate_settings(data: dict) -> PRSettings:
    try:
        return PRSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
