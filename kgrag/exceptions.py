"""
Error taxonomy for the retrieval core.

Services raise these; the controller layer turns them into error payloads.
"""


class KnowledgeGraphError(Exception):
    """Base class for every error raised by the retrieval core."""

    error_type = "KnowledgeGraphError"


class InvalidArgumentError(KnowledgeGraphError, ValueError):
    """Malformed request: rejected before any store is touched."""

    error_type = "InvalidArgument"


class NotFoundError(KnowledgeGraphError, LookupError):
    """An entity label or relationship id does not exist."""

    error_type = "NotFound"


class StoreUnavailableError(KnowledgeGraphError):
    """A similarity or graph backend failed or timed out."""

    error_type = "StoreUnavailable"


class RerankError(KnowledgeGraphError):
    """The external reranker failed. Never surfaced to callers."""

    error_type = "RerankFailure"


class ConflictError(KnowledgeGraphError):
    """A write conflicts with existing or concurrently changing data."""

    error_type = "Conflict"


class MergeConflictError(ConflictError):
    error_type = "MergeConflict"


class EntityExistsError(ConflictError):
    error_type = "EntityExists"


class ConcurrentWriteError(ConflictError):
    """The store kept changing underneath an optimistic commit."""

    error_type = "ConcurrentWrite"
