"""Drives batches of transcription/translation requests through a bounded worker pool."""

import enum
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from tqdm import tqdm

from .models import (
    Cancelled,
    ExhaustedRetries,
    FatalFailure,
    Request,
    RequestOutcome,
    RetryableFailure,
    Success,
)
from .request_cache import RequestCache

logger = logging.getLogger(__name__)


class RequestBackend(ABC):
    """
    Abstract base class for external transcription/translation services.

    Implementations are called from several worker threads at once and must
    classify their own failures: rate limits and other transient conditions
    as RetryableFailure, bad input as FatalFailure.
    """

    name: str = "backend"

    @abstractmethod
    def call(self, data: bytes, params: Mapping[str, Any]) -> RequestOutcome:
        """
        Performs one request.

        Args:
            data: The request body (audio bytes or UTF-8 text).
            params: Everything else that determines the answer.

        Returns:
            Success with a JSON-serializable, non-None payload, RetryableFailure
            or FatalFailure.
        """
        pass


class SpanState(enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    RETRY_WAIT = "retry_wait"
    CACHE_HIT = "cache_hit"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    SpanState.CACHE_HIT, SpanState.SUCCEEDED, SpanState.FAILED,
    SpanState.EXHAUSTED, SpanState.CANCELLED,
})


@dataclass
class SpanJob:
    """Scheduler-owned state for one request."""
    request: Request
    fingerprint: str
    state: SpanState = SpanState.PENDING
    attempts: int = 0
    next_eligible: float = 0.0
    deadline: Optional[float] = None
    last_reason: str = ""
    outcome: Optional[RequestOutcome] = None
    fresh_call: bool = False

    @property
    def sequence_index(self) -> int:
        return self.request.sequence_index


@dataclass
class _AttemptResult:
    outcome: RequestOutcome
    from_cache: bool
    called_backend: bool


@dataclass
class BatchResult:
    """Per-request outcomes of one batch, ordered by sequence_index."""
    outcomes: List[RequestOutcome]
    sequence_indices: List[int]
    fresh_calls: Set[int] = field(default_factory=set)
    cache_hits: Set[int] = field(default_factory=set)
    cancelled: bool = False

    def __iter__(self):
        return iter(zip(self.sequence_indices, self.outcomes))

    def __len__(self) -> int:
        return len(self.outcomes)

    def outcome_for(self, sequence_index: int) -> RequestOutcome:
        return self.outcomes[self.sequence_indices.index(sequence_index)]

    @property
    def succeeded(self) -> bool:
        return all(outcome.is_success for outcome in self.outcomes)

    @property
    def succeeded_indices(self) -> List[int]:
        return [i for i, o in self if o.is_success]

    @property
    def failed_indices(self) -> List[int]:
        return [i for i, o in self if not o.is_success]

    @property
    def successful_payloads(self) -> Dict[int, Any]:
        return {i: o.payload for i, o in self if o.is_success}

    def summary(self) -> str:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            name = type(outcome).__name__
            counts[name] = counts.get(name, 0) + 1
        parts = ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        return (
            f"{len(self.outcomes)} requests ({parts}); "
            f"{len(self.fresh_calls)} backend call(s), {len(self.cache_hits)} cache hit(s)"
        )


class Orchestrator:
    """
    Fans requests out to a backend with bounded concurrency and caching.

    Each request moves through an explicit state machine owned by the
    scheduler loop in run():

        PENDING -> CACHE_HIT
        PENDING -> DISPATCHED -> SUCCEEDED | FAILED | EXHAUSTED
                   DISPATCHED -> RETRY_WAIT -> DISPATCHED ...
        PENDING | RETRY_WAIT -> CANCELLED   (after cancel())

    Workers only ever see the request they were handed; the cache is the one
    piece of state they share. A failure on one request never stops the
    others, and every success is written to the cache before it is reported,
    so re-running a partially failed batch only pays for what failed.
    """

    def __init__(
        self,
        backend: RequestBackend,
        cache: RequestCache,
        workers: int = 4,
        max_attempts: int = 4,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        request_timeout: Optional[float] = None,
        show_progress: bool = False,
    ):
        if workers <= 0:
            raise ValueError("workers must be positive")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self.backend = backend
        self.cache = cache
        self.workers = workers
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.request_timeout = request_timeout
        self.show_progress = show_progress
        self._cancel = threading.Event()

    @classmethod
    def from_config(cls, backend: RequestBackend, cache: RequestCache, config: dict) -> "Orchestrator":
        return cls(
            backend=backend,
            cache=cache,
            workers=config.get('workers', 4),
            max_attempts=config.get('max_attempts', 4),
            backoff_base=config.get('backoff_base_seconds', 1.0),
            backoff_max=config.get('backoff_max_seconds', 30.0),
            request_timeout=config.get('request_timeout_seconds') or None,
            show_progress=config.get('show_progress', False),
        )

    def cancel(self) -> None:
        """
        Stops dispatching new requests; in-flight requests finish and are cached.

        Cancellation applies to the running batch, or to the next one if none
        is running. It is cleared when that batch returns, so the same
        Orchestrator can resume() it afterwards.
        """
        logger.warning(f"Cancellation requested for {self.backend.name} batch.")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def backoff_delay(self, attempts: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** max(0, attempts - 1)))

    def _attempt(self, job_request: Request, fingerprint: str, check_cache: bool) -> _AttemptResult:
        """Runs on a worker thread: cache lookup, then backend call on a miss."""
        if check_cache:
            payload = self.cache.lookup(fingerprint)
            if payload is not None:
                return _AttemptResult(Success(payload, from_cache=True), True, False)

        try:
            outcome = self.backend.call(job_request.data, job_request.params)
        except (TimeoutError, ConnectionError) as e:
            outcome = RetryableFailure(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(
                f"{self.backend.name} raised on request {job_request.sequence_index}: {e}",
                exc_info=True,
            )
            outcome = FatalFailure(f"{type(e).__name__}: {e}")

        if not isinstance(outcome, (Success, RetryableFailure, FatalFailure)):
            outcome = FatalFailure(f"backend returned {type(outcome).__name__}, not a RequestOutcome")
        elif isinstance(outcome, Success) and outcome.payload is None:
            outcome = FatalFailure("backend returned an empty (None) payload")

        if isinstance(outcome, Success):
            if not self.cache.store(fingerprint, outcome.payload):
                logger.warning(f"Result for request {job_request.sequence_index} could not be cached.")
        return _AttemptResult(outcome, False, True)

    def run(self, requests: Iterable[Request]) -> BatchResult:
        """
        Drives every request to a terminal outcome.

        Returns:
            A BatchResult whose outcomes are sorted by sequence_index, whatever
            order the requests completed in.

        Raises:
            ValueError: If two requests share a sequence_index.
        """
        jobs: Dict[int, SpanJob] = {}
        for request in requests:
            if request.sequence_index in jobs:
                raise ValueError(f"Duplicate sequence_index {request.sequence_index}")
            jobs[request.sequence_index] = SpanJob(request=request, fingerprint=request.fingerprint)

        order = sorted(jobs)
        total = len(order)
        logger.info(f"Dispatching {total} {self.backend.name} request(s) with {self.workers} worker(s).")
        started = time.monotonic()

        in_flight: Dict[Future, SpanJob] = {}
        # Futures whose deadline passed: still occupying a worker until they return
        abandoned: Dict[Future, SpanJob] = {}
        progress = tqdm(total=total, unit="req", desc=self.backend.name, disable=not self.show_progress)

        def finish(job: SpanJob, state: SpanState, outcome: RequestOutcome) -> None:
            job.state = state
            job.outcome = outcome
            progress.update(1)

        def handle(job: SpanJob, result: _AttemptResult) -> None:
            outcome = result.outcome
            if result.called_backend:
                job.fresh_call = True
            if isinstance(outcome, Success):
                finish(job, SpanState.CACHE_HIT if result.from_cache else SpanState.SUCCEEDED, outcome)
            elif isinstance(outcome, RetryableFailure):
                retry(job, outcome.reason)
            else:
                logger.error(f"Request {job.sequence_index} failed: {outcome.reason}")
                finish(job, SpanState.FAILED, outcome)

        def retry(job: SpanJob, reason: str) -> None:
            job.last_reason = reason
            if job.attempts >= self.max_attempts:
                logger.error(
                    f"Request {job.sequence_index} exhausted {job.attempts} attempt(s): {reason}"
                )
                finish(job, SpanState.EXHAUSTED, ExhaustedRetries(reason, job.attempts))
                return
            delay = self.backoff_delay(job.attempts)
            logger.warning(
                f"Request {job.sequence_index} attempt {job.attempts}/{self.max_attempts} "
                f"failed ({reason}); retrying in {delay:.2f}s."
            )
            job.state = SpanState.RETRY_WAIT
            job.next_eligible = time.monotonic() + delay

        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="subalign-worker")
        try:
            while True:
                now = time.monotonic()

                if not self._cancel.is_set():
                    for index in order:
                        if len(in_flight) + len(abandoned) >= self.workers:
                            break
                        job = jobs[index]
                        if job.state is SpanState.PENDING or (
                            job.state is SpanState.RETRY_WAIT and job.next_eligible <= now
                        ):
                            # Retries look in the cache too: a timed-out call may have finished late
                            job.state = SpanState.DISPATCHED
                            job.attempts += 1
                            job.deadline = now + self.request_timeout if self.request_timeout else None
                            future = pool.submit(self._attempt, job.request, job.fingerprint, True)
                            in_flight[future] = job
                else:
                    for index in order:
                        job = jobs[index]
                        if job.state in (SpanState.PENDING, SpanState.RETRY_WAIT):
                            reason = "cancelled before dispatch"
                            if job.last_reason:
                                reason = f"cancelled while waiting to retry ({job.last_reason})"
                            finish(job, SpanState.CANCELLED, Cancelled(reason))

                if not in_flight and all(jobs[i].state in TERMINAL_STATES for i in order):
                    break

                slots_free = len(in_flight) + len(abandoned) < self.workers
                wait_for = self._next_wakeup(jobs, in_flight, now, include_retries=slots_free)
                pending_futures = set(in_flight) | set(abandoned)
                if pending_futures:
                    done, _ = wait(pending_futures, timeout=wait_for, return_when=FIRST_COMPLETED)
                else:
                    done = set()
                    self._cancel.wait(wait_for if wait_for is not None else 0.05)

                for future in done:
                    if future in abandoned:
                        self._log_late_result(abandoned.pop(future), future)
                        continue
                    job = in_flight.pop(future)
                    handle(job, self._result_of(job, future))

                now = time.monotonic()
                for future, job in list(in_flight.items()):
                    if job.deadline is not None and now >= job.deadline:
                        del in_flight[future]
                        abandoned[future] = job
                        job.fresh_call = True
                        retry(job, f"timeout after {self.request_timeout:.1f}s")
        finally:
            was_cancelled = self._cancel.is_set()
            self._cancel.clear()
            progress.close()
            # Overdue calls cannot be interrupted; they keep running and still
            # cache a late success, but the batch does not wait for them.
            pool.shutdown(wait=not abandoned)

        outcomes = [jobs[i].outcome for i in order]
        result = BatchResult(
            outcomes=outcomes,
            sequence_indices=order,
            fresh_calls={i for i in order if jobs[i].fresh_call},
            cache_hits={i for i in order if jobs[i].state is SpanState.CACHE_HIT},
            cancelled=was_cancelled,
        )
        elapsed = time.monotonic() - started
        log = logger.info if result.succeeded else logger.warning
        log(f"{self.backend.name} batch finished in {elapsed:.2f}s: {result.summary()}")
        return result

    def resume(self, previous: BatchResult, requests: Sequence[Request]) -> BatchResult:
        """
        Re-runs only the requests that did not succeed in `previous`.

        Earlier successes are carried over as-is; the returned BatchResult
        covers every request in `requests`.
        """
        carried = previous.successful_payloads
        retry_requests = [r for r in requests if r.sequence_index not in carried]
        logger.info(
            f"Resuming batch: {len(carried)} already succeeded, re-running {len(retry_requests)}."
        )
        rerun = self.run(retry_requests)
        rerun_map = dict(rerun)
        order = sorted(r.sequence_index for r in requests)
        outcomes = [
            rerun_map[i] if i in rerun_map else previous.outcome_for(i)
            for i in order
        ]
        return BatchResult(
            outcomes=outcomes,
            sequence_indices=order,
            fresh_calls=set(rerun.fresh_calls),
            cache_hits=set(rerun.cache_hits),
            cancelled=rerun.cancelled,
        )

    def _next_wakeup(self, jobs: Dict[int, SpanJob], in_flight: Dict[Future, SpanJob],
                     now: float, include_retries: bool = True) -> Optional[float]:
        times = []
        if include_retries:
            times.extend(j.next_eligible for j in jobs.values() if j.state is SpanState.RETRY_WAIT)
        times.extend(j.deadline for j in in_flight.values() if j.deadline is not None)
        if not times:
            return None
        return max(0.0, min(times) - now)

    def _result_of(self, job: SpanJob, future: Future) -> _AttemptResult:
        try:
            return future.result()
        except Exception as e:
            # _attempt catches backend errors; this is a cache or scheduler bug
            logger.error(f"Worker crashed on request {job.sequence_index}: {e}", exc_info=True)
            return _AttemptResult(FatalFailure(f"worker error: {e}"), False, False)

    def _log_late_result(self, job: SpanJob, future: Future) -> None:
        try:
            result = future.result()
        except Exception as e:
            logger.debug(f"Timed-out request {job.sequence_index} ended with error: {e}")
            return
        if isinstance(result.outcome, Success):
            logger.info(f"Timed-out request {job.sequence_index} finished late; result cached.")
