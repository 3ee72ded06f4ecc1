"""Exception taxonomy for the match-and-notify pipeline.

Transient errors are retried automatically (backoff path). Permanent errors
are never retried automatically: the pair is skipped or the notification is
dead-lettered and waits for an operator.
"""
from __future__ import annotations


class MatchflowError(Exception):
    """Base class for every error raised by matchflow."""


class ConfigError(MatchflowError):
    pass


class TransientError(MatchflowError):
    """Failure expected to heal on its own (network, timeout, throttling)."""


class PermanentError(MatchflowError):
    """Failure that retrying will not fix."""


# --- ranker ---------------------------------------------------------------

class DimensionMismatch(PermanentError, ValueError):
    def __init__(self, left: int, right: int) -> None:
        super().__init__(f"vector lengths differ: {left} != {right}")
        self.left = left
        self.right = right


class ZeroVector(PermanentError, ValueError):
    def __init__(self, message: str = "cosine similarity undefined for a zero-magnitude vector") -> None:
        super().__init__(message)


# --- embedding provider ---------------------------------------------------

class ProviderUnavailable(TransientError):
    pass


class ProviderTimeout(TransientError):
    pass


class EntityNotFound(PermanentError, LookupError):
    """The catalog has no text to embed for this entity."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"no text available for {entity_type} {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class EmbeddingUnavailable(TransientError):
    """Raised by the evaluator when an embedding could not be obtained."""

    def __init__(self, entity_type: str, entity_id: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"no embedding for {entity_type} {entity_id}{detail}")
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.cause = cause


# --- rendering / delivery -------------------------------------------------

class TemplateNotFound(PermanentError, LookupError):
    pass


class PayloadValidationError(PermanentError, ValueError):
    pass


class TransportError(TransientError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeliveryRejected(PermanentError):
    """The provider refused the message (bad recipient, auth, payload)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# --- queue / scheduler ----------------------------------------------------

class DuplicateJob(MatchflowError):
    def __init__(self, dedup_key: str) -> None:
        super().__init__(f"notification already queued for {dedup_key}")
        self.dedup_key = dedup_key


class JobNotFound(MatchflowError, LookupError):
    pass


class CronJobNotFound(MatchflowError, LookupError):
    pass
