"""Custom exceptions for the health-record RAG pipeline."""


class HealthRagError(Exception):
    """Base exception for all pipeline errors.

    ``processed_chunks`` is set when the error aborts an embedding job and
    tells how many chunks were persisted before it.
    """

    processed_chunks: int | None = None


class ParseError(HealthRagError):
    """
    Error reading an exported health file.

    Raised when:
    - Input is empty or whitespace-only
    - Input is not well-formed XML/JSON/CSV
    - The expected root/collection anchor is missing
    """
    pass


class ValidationError(HealthRagError):
    """
    Error validating a record, a chunk, or an embedding.

    Raised when:
    - A record is missing a required field
    - Chunk text exceeds the token budget
    - An embedding has the wrong dimension
    - Two vectors of different length are compared
    """

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class ProviderError(HealthRagError):
    """
    Error calling the external embedding or chat provider.

    Raised when:
    - Provider is unreachable or times out
    - Provider rejects the request (auth, rate limit, bad input)
    - Provider returns an unexpected response shape
    """

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class PersistenceError(HealthRagError):
    """
    Error writing to or deleting from the vector or blob store.

    ``document_id`` names the affected embedding document (or blob key).
    """

    def __init__(self, message: str, document_id: str | None = None):
        super().__init__(message)
        self.document_id = document_id


class ConfigError(HealthRagError):
    """Required configuration value is missing or invalid."""
    pass
