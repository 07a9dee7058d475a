"""Data models for SubAlign."""

from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Mapping, Optional, Tuple

from .request_cache import compute_fingerprint

BYTES_PER_SAMPLE = 2 # 16-bit mono PCM


@dataclass(frozen=True)
class Span:
    """A bounded audio segment chosen for independent transcription."""
    sequence_index: int
    sample_start: int
    sample_end: int
    sample_rate: int
    forced_cut: bool = False

    @property
    def start(self) -> Fraction:
        return Fraction(self.sample_start, self.sample_rate)

    @property
    def end(self) -> Fraction:
        return Fraction(self.sample_end, self.sample_rate)

    @property
    def duration(self) -> Fraction:
        return self.end - self.start

    @property
    def byte_range(self) -> Tuple[int, int]:
        return self.sample_start * BYTES_PER_SAMPLE, self.sample_end * BYTES_PER_SAMPLE


@dataclass(frozen=True)
class Request:
    """
    One externally-callable unit of work.

    `data` and `params` are everything that determines the backend's answer;
    the fingerprint is derived from them and nothing else.
    """
    sequence_index: int
    data: bytes
    params: Mapping[str, Any] = field(default_factory=dict)
    span: Optional[Span] = None

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.data, self.params)


class RequestOutcome:
    """Base class for the result of driving one request to a terminal state."""

    is_success = False
    is_retryable = False

    @property
    def is_terminal_failure(self) -> bool:
        return not self.is_success and not self.is_retryable


@dataclass(frozen=True)
class Success(RequestOutcome):
    payload: Any
    from_cache: bool = False

    is_success = True


@dataclass(frozen=True)
class RetryableFailure(RequestOutcome):
    """Transient failure: timeouts, rate limits, dropped connections."""
    reason: str

    is_retryable = True


@dataclass(frozen=True)
class FatalFailure(RequestOutcome):
    reason: str


@dataclass(frozen=True)
class ExhaustedRetries(RequestOutcome):
    """Every allowed attempt ended in a RetryableFailure."""
    reason: str
    attempts: int


@dataclass(frozen=True)
class Cancelled(RequestOutcome):
    """The batch was cancelled before this request was dispatched."""
    reason: str = "cancelled before dispatch"
