"""Exception types raised by the cognitive-memory pipeline."""


class BrainError(Exception):
    """Base class for pipeline errors."""


class TransientStoreError(BrainError):
    """A backing store or provider (Redis, ChromaDB, embedding model) is unreachable."""


class ConfigurationError(BrainError, ValueError):
    """A configuration value is missing or invalid."""


class EmbeddingDimensionError(BrainError, ValueError):
    """An embedding vector does not match the configured dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")
