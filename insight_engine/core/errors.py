"""Exception types raised by the insight pipeline."""


class InsightEngineError(Exception):
    """Base class for pipeline errors."""


class EmptyInputError(InsightEngineError, ValueError):
    """Raised when text to embed or compare is empty."""


class DimensionMismatchError(InsightEngineError, ValueError):
    """Raised when two vectors (or a vector and the configured size) differ in length."""

    def __init__(self, expected: int, actual: int, message: str | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"Vector dimension mismatch: expected {expected}, got {actual}")


class UpstreamError(InsightEngineError):
    """Raised when an embedding or LLM call returns nothing usable."""


class NotFoundError(InsightEngineError, LookupError):
    """Raised when an id does not resolve to a row."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class PersistenceError(InsightEngineError):
    """Raised when a write to the database fails."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)

    @property
    def is_unique_violation(self) -> bool:
        """True for Postgres unique_violation (duplicate key)."""
        return self.code == "23505"


class InsufficientTrainingDataError(InsightEngineError, ValueError):
    """Raised when there are too few labeled pairs to start a fine-tuning job."""

    def __init__(self, positive: int, negative: int, required: int):
        self.positive = positive
        self.negative = negative
        self.required = required
        super().__init__(
            f"Need at least {required} positive and {required} negative examples, "
            f"found {positive} positive and {negative} negative"
        )
