class MalformedEntryError(ValueError):
    """Raised when a lift log cannot be classified (no sets, bad reps or weight)."""


class InconsistentLedgerError(RuntimeError):
    """Raised when a record chain has more than one current row."""

    def __init__(self, user_id: int, exercise_id: int, key_label: str, row_ids) -> None:
        self.user_id = user_id
        self.exercise_id = exercise_id
        self.key_label = key_label
        self.row_ids = tuple(row_ids)
        super().__init__(
            f"{len(self.row_ids)} current records for {key_label} "
            f"(user {user_id}, exercise {exercise_id}): {list(self.row_ids)}"
        )


class CascadeLimitError(RuntimeError):
    """Raised when a recalculation would touch more lift logs than allowed."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"cascade of {size} lift logs exceeds limit of {limit}")
