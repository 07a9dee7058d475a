from __future__ import annotations

import logging
import random
from fractions import Fraction

import pytest

from subalign.exceptions import ConfigurationError
from subalign.segmenter import Segmenter, SegmenterConfig, find_silence_runs, slice_pcm

# 1 sample per millisecond and 10ms frames keep the arithmetic readable
RATE = 1000
FRAME = 10


def _frames(total_samples: int, silent_ranges=()) -> list[tuple[int, bool]]:
    """VAD flags with silence over the given [start, end) sample ranges."""
    flags = []
    for index in range(total_samples // FRAME):
        sample = index * FRAME
        silent = any(lo <= sample < hi for lo, hi in silent_ranges)
        flags.append((index, not silent))
    return flags


def _plan(total: int, silent_ranges=(), **config):
    segmenter = Segmenter(SegmenterConfig(**config))
    return segmenter.plan(total, RATE, _frames(total, silent_ranges), FRAME)


def _assert_covers(spans, total: int) -> None:
    assert spans[0].sample_start == 0
    assert spans[-1].sample_end == total
    for prev, cur in zip(spans, spans[1:]):
        assert prev.sample_end == cur.sample_start
    assert [s.sequence_index for s in spans] == list(range(len(spans)))
    assert all(s.sample_end > s.sample_start for s in spans)


def test_splits_at_silence_midpoint() -> None:
    plan = _plan(20000, [(8000, 8500)], min_silence_ms=300, min_span_ms=5000, max_span_ms=15000)

    spans = plan.spans()

    assert [(s.sample_start, s.sample_end) for s in spans] == [(0, 8250), (8250, 20000)]
    assert not any(s.forced_cut for s in spans)


def test_short_tail_is_not_split_off() -> None:
    plan = _plan(20000, [(18000, 18500)], min_span_ms=5000, max_span_ms=30000)

    assert [(s.sample_start, s.sample_end) for s in plan] == [(0, 20000)]


def test_lookback_uses_short_silence_before_forcing_a_cut() -> None:
    plan = _plan(20000, [(13000, 13100)], min_silence_ms=300, min_span_ms=5000,
                 max_span_ms=15000, lookback_ms=3000)

    spans = plan.spans()

    assert spans[0].sample_end == 13050
    assert not spans[0].forced_cut
    _assert_covers(spans, 20000)


def test_forced_cut_is_flagged_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    plan = _plan(40000, max_span_ms=15000, lookback_ms=2000)

    with caplog.at_level(logging.WARNING, logger="subalign.segmenter"):
        spans = plan.spans()

    assert [(s.sample_start, s.sample_end) for s in spans] == [(0, 15000), (15000, 30000), (30000, 40000)]
    assert [s.forced_cut for s in spans] == [True, True, False]
    assert plan.forced_cuts == 2
    assert "Segmentation degraded" in caplog.text


def test_missing_vad_frames_count_as_speech() -> None:
    plan = Segmenter(SegmenterConfig(max_span_ms=10000, lookback_ms=1000)).plan(25000, RATE, [], FRAME)

    assert [s.forced_cut for s in plan] == [True, True, False]


@pytest.mark.parametrize("seed", range(8))
def test_spans_cover_the_whole_stream(seed: int) -> None:
    rng = random.Random(seed)
    total = rng.randint(1, 120000)
    min_span = rng.randint(0, 8000)
    max_span = rng.randint(max(min_span, 1), 30000)
    silences = []
    for _ in range(rng.randint(0, 30)):
        start = rng.randint(0, total)
        silences.append((start, start + rng.randint(10, 1500)))

    plan = _plan(total, silences, min_silence_ms=rng.randint(0, 800), min_span_ms=min_span,
                 max_span_ms=max_span, lookback_ms=rng.randint(0, 6000))
    spans = plan.spans()

    _assert_covers(spans, total)
    assert all(s.sample_end - s.sample_start <= max_span for s in spans)
    assert sum(s.duration for s in spans) == Fraction(total, RATE)


def test_plan_is_restartable() -> None:
    plan = _plan(50000, [(9000, 9600), (21000, 21400)], max_span_ms=15000)

    assert list(plan) == list(plan)
    assert len(plan) == len(plan.spans())


def test_empty_stream_has_no_spans() -> None:
    assert _plan(0).spans() == []


def test_span_times_are_exact() -> None:
    segmenter = Segmenter(SegmenterConfig(min_span_ms=0, max_span_ms=1000, lookback_ms=0))
    plan = segmenter.plan(48000, 48000, [], 480)

    span = plan.spans()[0]
    assert span.start == 0
    assert span.end == Fraction(1)
    assert span.byte_range == (0, 96000)


def test_slices_reassemble_the_pcm() -> None:
    pcm = bytes(range(256)) * 250  # 64000 bytes, 32000 samples
    plan = Segmenter(SegmenterConfig(max_span_ms=7000, lookback_ms=0)).plan_pcm(pcm, RATE, [], FRAME)

    assert b"".join(slice_pcm(pcm, span) for span in plan) == pcm


def test_silence_runs_merge_consecutive_frames() -> None:
    frames = [(0, True), (1, False), (2, False), (3, True), (5, False)]

    runs = find_silence_runs(frames, 10, 55)

    assert [(r.sample_start, r.sample_end) for r in runs] == [(10, 30), (50, 55)]


def test_invalid_config() -> None:
    with pytest.raises(ConfigurationError):
        SegmenterConfig(min_span_ms=20000, max_span_ms=10000)
    with pytest.raises(ConfigurationError):
        SegmenterConfig(max_span_ms=0)


def test_config_from_seconds() -> None:
    config = SegmenterConfig.from_config({'min_span_seconds': 2.5, 'max_span_seconds': 12, 'lookback_seconds': 1})

    assert (config.min_span_ms, config.max_span_ms, config.lookback_ms) == (2500, 12000, 1000)
