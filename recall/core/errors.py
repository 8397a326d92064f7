"""
Exception taxonomy for the record store, vector index and ingestion pipeline.

Absence is not an error: ``get`` returns ``None`` and ``delete`` returns
``False`` for unknown ids.
"""


class RecallError(Exception):
    """Base class for all recall errors."""
    pass


class ValidationError(RecallError):
    """A record, batch, query or configuration failed validation."""
    pass


class DimensionMismatch(ValidationError):
    """A vector does not have the dimension the index was built with."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}")


class EmbeddingUnavailable(RecallError):
    """The embedding provider failed to produce a vector."""
    pass


class StorageIOError(RecallError):
    """The persistence layer failed; previously committed records are intact."""
    pass


class BatchAtomicityViolation(RecallError):
    """A failed batch could not be rolled back to the last committed state."""
    pass
