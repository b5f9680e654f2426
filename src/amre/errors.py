"""Error taxonomy shared by every AMRE component.

Only :class:`TransientProviderError` is ever retried, and only inside the
embedding adapter.  :class:`ConstraintViolation` is a skip signal rather
than a failure, and :class:`DataIntegrityWarning` is logged and never
raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AmreError(Exception):
    """Base class for all AMRE errors."""


class TransientProviderError(AmreError):
    """Rate limit, timeout or 5xx from the embedding provider.

    Attributes:
        status_code: HTTP status of the failed response, if any.
        retry_after: Provider-suggested delay in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(
            f"{message}{f' (status={status_code})' if status_code else ''}"
        )


class PermanentInputError(AmreError):
    """Empty, oversized or otherwise malformed input text."""


class ProviderError(AmreError):
    """Non-retryable provider failure (bad credentials, bad response shape)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(
            f"{message}{f' (status={status_code})' if status_code else ''}"
        )


class ConstraintViolation(AmreError):
    """A uniqueness claim lost the race.  Callers treat this as a skip."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Already claimed: {key}")


class DataIntegrityWarning(UserWarning):
    """A weak back-reference points at a source that no longer exists."""


class EmbeddingErrorCode(str, Enum):
    RATE_LIMITED = "rate_limited"
    INVALID_INPUT = "invalid_input"
    PROVIDER_ERROR = "provider_error"


@dataclass(frozen=True)
class EmbeddingFailure:
    """Per-item sentinel returned in place of a vector."""

    code: EmbeddingErrorCode
    message: str = ""

    def __bool__(self) -> bool:
        return False
