from __future__ import annotations

import threading
import time
from collections import Counter
from pathlib import Path

import pytest

from subalign.models import (
    Cancelled,
    ExhaustedRetries,
    FatalFailure,
    Request,
    RetryableFailure,
    Success,
)
from subalign.orchestrator import Orchestrator, RequestBackend
from subalign.request_cache import RequestCache


class FakeBackend(RequestBackend):
    """Answers b"span-N" with {"text": "result-N"}, with scripted failures."""

    name = "fake"

    def __init__(self, fatal=(), retryable=None, raises=None, delays=None, on_call=None):
        self.fatal = set(fatal)
        self.retryable = dict(retryable or {})  # index -> failures before success
        self.raises = dict(raises or {})  # index -> exception to raise
        self.delays = dict(delays or {})  # index -> seconds, first attempt only unless negative
        self.on_call = on_call
        self.calls = Counter()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def call(self, data, params):
        index = int(data.decode("utf-8").split("-")[1])
        with self._lock:
            self.calls[index] += 1
            attempt = self.calls[index]
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call is not None:
                self.on_call(index)
            delay = self.delays.get(index, 0.0)
            if delay < 0:
                time.sleep(-delay)
            elif delay and attempt == 1:
                time.sleep(delay)
            if index in self.raises:
                raise self.raises[index]
            if index in self.fatal:
                return FatalFailure(f"bad span {index}")
            if attempt <= self.retryable.get(index, 0):
                return RetryableFailure("rate limited")
            return Success({"text": f"result-{index}"})
        finally:
            with self._lock:
                self.active -= 1


def _requests(count: int) -> list[Request]:
    return [Request(i, f"span-{i}".encode("utf-8"), {"model": "fake"}) for i in range(count)]


def _orchestrator(backend: RequestBackend, cache: RequestCache, **kwargs) -> Orchestrator:
    kwargs.setdefault("workers", 4)
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_base", 0.0)
    return Orchestrator(backend, cache, **kwargs)


def test_one_fatal_span_does_not_stop_the_others(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend(fatal={3})
    requests = _requests(10)

    result = _orchestrator(backend, cache).run(requests)

    assert result.sequence_indices == list(range(10))
    assert result.failed_indices == [3]
    assert isinstance(result.outcome_for(3), FatalFailure)
    assert len(result.succeeded_indices) == 9
    assert not result.succeeded
    assert len(cache) == 9
    for request in requests:
        stored = cache.lookup(request.fingerprint)
        if request.sequence_index == 3:
            assert stored is None
        else:
            assert stored == {"text": f"result-{request.sequence_index}"}
    assert backend.calls[3] == 1


def test_rerun_only_calls_backend_for_failed_spans(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    requests = _requests(10)
    first = _orchestrator(FakeBackend(fatal={3, 7}), cache).run(requests)
    assert first.failed_indices == [3, 7]

    backend = FakeBackend()
    second = _orchestrator(backend, cache).run(requests)

    assert set(backend.calls) == {3, 7}
    assert second.fresh_calls == {3, 7}
    assert second.cache_hits == set(range(10)) - {3, 7}
    assert second.succeeded
    assert all(outcome.from_cache for i, outcome in second if i not in (3, 7))


def test_resume_carries_over_previous_successes(tmp_path: Path) -> None:
    requests = _requests(6)
    first = _orchestrator(FakeBackend(fatal={2}), RequestCache(str(tmp_path / "a"))).run(requests)

    backend = FakeBackend()
    # A fresh, empty cache proves successes come from the previous result
    resumed = _orchestrator(backend, RequestCache(str(tmp_path / "b"))).resume(first, requests)

    assert set(backend.calls) == {2}
    assert resumed.succeeded
    assert resumed.sequence_indices == list(range(6))
    assert resumed.successful_payloads[2] == {"text": "result-2"}


def test_retryable_failure_is_retried_until_success(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend(retryable={2: 2})

    result = _orchestrator(backend, cache, max_attempts=3).run(_requests(4))

    assert result.succeeded
    assert backend.calls[2] == 3
    assert result.outcome_for(2).payload == {"text": "result-2"}


def test_retries_are_bounded(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend(retryable={1: 10})

    result = _orchestrator(backend, cache, max_attempts=3).run(_requests(3))

    outcome = result.outcome_for(1)
    assert isinstance(outcome, ExhaustedRetries)
    assert outcome.attempts == 3
    assert outcome.is_terminal_failure
    assert backend.calls[1] == 3
    assert len(cache) == 2


def test_backend_exceptions_are_classified(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend(raises={0: ConnectionError("reset"), 1: ValueError("bad audio")})

    result = _orchestrator(backend, cache, max_attempts=2).run(_requests(3))

    assert isinstance(result.outcome_for(0), ExhaustedRetries)
    assert backend.calls[0] == 2
    assert isinstance(result.outcome_for(1), FatalFailure)
    assert backend.calls[1] == 1
    assert result.outcome_for(2).is_success


def test_outcomes_are_ordered_by_sequence_index(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    # Earlier spans take longer, so completions arrive in reverse order
    backend = FakeBackend(delays={i: -(0.02 * (6 - i)) for i in range(6)})
    requests = list(reversed(_requests(6)))

    result = _orchestrator(backend, cache, workers=6).run(requests)

    assert result.sequence_indices == list(range(6))
    assert [o.payload["text"] for o in result.outcomes] == [f"result-{i}" for i in range(6)]


def test_concurrency_never_exceeds_worker_count(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend(delays={i: -0.03 for i in range(10)})

    result = _orchestrator(backend, cache, workers=3).run(_requests(10))

    assert result.succeeded
    assert 1 <= backend.max_active <= 3


def test_timed_out_call_is_retried(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend(delays={0: 0.5})

    result = _orchestrator(backend, cache, workers=2, max_attempts=2, request_timeout=0.1).run(_requests(1))

    assert result.outcome_for(0).is_success
    assert backend.calls[0] >= 2
    assert 0 in result.fresh_calls


def test_cancel_stops_dispatch_and_keeps_finished_results(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    holder = {}
    backend = FakeBackend(on_call=lambda index: holder["orchestrator"].cancel())
    orchestrator = _orchestrator(backend, cache, workers=1)
    holder["orchestrator"] = orchestrator

    result = orchestrator.run(_requests(5))

    assert result.cancelled
    assert result.outcome_for(0).is_success
    assert all(isinstance(result.outcome_for(i), Cancelled) for i in range(1, 5))
    assert set(backend.calls) == {0}
    assert len(cache) == 1


def test_cancelled_batch_can_be_resumed(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    backend = FakeBackend()
    orchestrator = _orchestrator(backend, cache)
    requests = _requests(3)

    orchestrator.cancel()
    first = orchestrator.run(requests)
    resumed = orchestrator.resume(first, requests)

    assert first.cancelled
    assert all(isinstance(outcome, Cancelled) for _, outcome in first)
    assert not resumed.cancelled
    assert resumed.succeeded
    assert set(backend.calls) == {0, 1, 2}


def test_none_payload_is_a_fatal_failure(tmp_path: Path) -> None:
    class NoneBackend(RequestBackend):
        def __init__(self):
            self.calls = 0

        def call(self, data, params):
            self.calls += 1
            return Success(None)

    cache = RequestCache(str(tmp_path / "cache"))
    backend = NoneBackend()
    orchestrator = _orchestrator(backend, cache)

    result = orchestrator.run(_requests(1))

    assert isinstance(result.outcome_for(0), FatalFailure)
    assert backend.calls == 1
    assert len(cache) == 0


def test_duplicate_sequence_index_is_rejected(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))
    requests = [Request(0, b"span-0"), Request(0, b"span-1")]

    with pytest.raises(ValueError):
        _orchestrator(FakeBackend(), cache).run(requests)


def test_empty_batch(tmp_path: Path) -> None:
    cache = RequestCache(str(tmp_path / "cache"))

    result = _orchestrator(FakeBackend(), cache).run([])

    assert len(result) == 0
    assert result.succeeded


def test_backoff_delay_is_capped(tmp_path: Path) -> None:
    orchestrator = Orchestrator(FakeBackend(), RequestCache(str(tmp_path)), backoff_base=1.0, backoff_max=5.0)

    assert [orchestrator.backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
