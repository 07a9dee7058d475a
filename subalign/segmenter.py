"""Splits an audio stream into transcription-sized spans at silence boundaries."""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

from .exceptions import ConfigurationError
from .models import BYTES_PER_SAMPLE, Span

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmenterConfig:
    """
    Span length limits, all in milliseconds.

    Attributes:
        min_silence_ms: Shortest silence run that counts as a split point.
        min_span_ms: A span is not ended at a silence before this length.
        max_span_ms: Hard upper bound on span length.
        lookback_ms: When max_span_ms is reached without a qualifying split
            point, how far back to search for any silence at all.
    """
    min_silence_ms: int = 300
    min_span_ms: int = 5000
    max_span_ms: int = 30000
    lookback_ms: int = 5000

    def __post_init__(self):
        if self.max_span_ms <= 0:
            raise ConfigurationError("max_span_ms must be positive")
        if self.min_span_ms < 0 or self.min_silence_ms < 0 or self.lookback_ms < 0:
            raise ConfigurationError("segmenter durations cannot be negative")
        if self.min_span_ms > self.max_span_ms:
            raise ConfigurationError(
                f"min_span_ms ({self.min_span_ms}) cannot exceed max_span_ms ({self.max_span_ms})"
            )

    @classmethod
    def from_config(cls, config: dict) -> "SegmenterConfig":
        return cls(
            min_silence_ms=int(config.get('min_silence_ms', 300)),
            min_span_ms=int(round(config.get('min_span_seconds', 5.0) * 1000)),
            max_span_ms=int(round(config.get('max_span_seconds', 30.0) * 1000)),
            lookback_ms=int(round(config.get('lookback_seconds', 5.0) * 1000)),
        )


@dataclass(frozen=True)
class SilenceRun:
    """A run of consecutive non-speech frames, as a half-open sample range."""
    sample_start: int
    sample_end: int

    @property
    def length(self) -> int:
        return self.sample_end - self.sample_start

    @property
    def midpoint(self) -> int:
        return (self.sample_start + self.sample_end) // 2


def find_silence_runs(
    vad_frames: Iterable[Tuple[int, bool]],
    frame_samples: int,
    total_samples: int,
) -> List[SilenceRun]:
    """
    Collapses frame-level speech flags into silence runs.

    Frames missing from `vad_frames` are treated as speech, so gaps in the
    voice-activity signal never produce a split point.
    """
    if frame_samples <= 0:
        raise ConfigurationError("frame_samples must be positive")
    silent = sorted({index for index, is_speech in vad_frames if not is_speech and index >= 0})
    runs: List[SilenceRun] = []
    run_first: Optional[int] = None
    run_last: Optional[int] = None
    for index in silent:
        if run_last is not None and index == run_last + 1:
            run_last = index
            continue
        if run_first is not None:
            runs.append(_make_run(run_first, run_last, frame_samples, total_samples))
        run_first = run_last = index
    if run_first is not None:
        runs.append(_make_run(run_first, run_last, frame_samples, total_samples))
    return [run for run in runs if run.length > 0]


def _make_run(first: int, last: int, frame_samples: int, total_samples: int) -> SilenceRun:
    start = min(first * frame_samples, total_samples)
    end = min((last + 1) * frame_samples, total_samples)
    return SilenceRun(start, end)


class SpanPlan:
    """
    The spans for one audio stream, derived on demand.

    Iterating re-runs the split from the stored immutable inputs, so the same
    plan can be walked any number of times and always yields the same spans.
    The spans are contiguous: each starts where the previous one ended, the
    first starts at sample 0 and the last ends at `total_samples`.
    """

    def __init__(self, total_samples: int, sample_rate: int, silence_runs: Iterable[SilenceRun],
                 config: SegmenterConfig):
        if total_samples < 0:
            raise ValueError("total_samples cannot be negative")
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.total_samples = total_samples
        self.sample_rate = sample_rate
        self.config = config
        self.silence_runs: Tuple[SilenceRun, ...] = tuple(sorted(silence_runs, key=lambda r: r.sample_start))

    def _samples(self, ms: int) -> int:
        return ms * self.sample_rate // 1000

    def __iter__(self) -> Iterator[Span]:
        total = self.total_samples
        min_span = self._samples(self.config.min_span_ms)
        max_span = max(1, self._samples(self.config.max_span_ms))
        lookback = self._samples(self.config.lookback_ms)
        min_silence = self._samples(self.config.min_silence_ms)
        qualifying = [r for r in self.silence_runs if r.length >= min_silence]

        cursor = 0
        index = 0
        while cursor < total:
            limit = cursor + max_span
            end, forced = self._next_boundary(cursor, limit, min_span, lookback, qualifying)
            yield Span(
                sequence_index=index,
                sample_start=cursor,
                sample_end=end,
                sample_rate=self.sample_rate,
                forced_cut=forced,
            )
            cursor = end
            index += 1

    def _next_boundary(self, cursor: int, limit: int, min_span: int, lookback: int,
                       qualifying: List[SilenceRun]) -> Tuple[int, bool]:
        total = self.total_samples
        for run in qualifying:
            point = run.midpoint
            if point < cursor + min_span or point <= cursor:
                continue
            if point > limit or point >= total:
                break
            if total <= limit and total - point < min_span:
                # Splitting here would leave a stub; the rest fits in one span
                break
            return point, False

        if total <= limit:
            return total, False

        window_start = max(cursor + 1, limit - lookback)
        candidates = [
            run for run in self.silence_runs
            if window_start <= run.midpoint <= limit
        ]
        if candidates:
            best = max(candidates, key=lambda r: (r.length, r.midpoint))
            return best.midpoint, False

        logger.warning(
            f"Segmentation degraded: no silence within {self.config.lookback_ms}ms before "
            f"{limit / self.sample_rate:.3f}s; forcing a hard cut."
        )
        return limit, True

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def spans(self) -> List[Span]:
        return list(self)

    @property
    def forced_cuts(self) -> int:
        return sum(1 for span in self if span.forced_cut)


class Segmenter:
    """Builds SpanPlans from voice-activity flags."""

    def __init__(self, config: Optional[SegmenterConfig] = None):
        self.config = config or SegmenterConfig()

    def plan(
        self,
        total_samples: int,
        sample_rate: int,
        vad_frames: Iterable[Tuple[int, bool]],
        frame_samples: int,
    ) -> SpanPlan:
        """
        Plans spans for an audio stream.

        Args:
            total_samples: Length of the mono stream in samples.
            sample_rate: Samples per second.
            vad_frames: (frame_index, is_speech) pairs from the voice-activity detector.
            frame_samples: Samples per VAD frame.

        Returns:
            A restartable SpanPlan covering [0, total_samples).
        """
        runs = find_silence_runs(vad_frames, frame_samples, total_samples)
        logger.debug(f"Found {len(runs)} silence runs over {total_samples} samples")
        return SpanPlan(total_samples, sample_rate, runs, self.config)

    def plan_pcm(self, pcm: bytes, sample_rate: int, vad_frames: Iterable[Tuple[int, bool]],
                 frame_samples: int) -> SpanPlan:
        """Same as plan(), taking the length from 16-bit mono PCM bytes."""
        return self.plan(len(pcm) // BYTES_PER_SAMPLE, sample_rate, vad_frames, frame_samples)


def slice_pcm(pcm: bytes, span: Span) -> bytes:
    """Returns the 16-bit mono PCM bytes covered by `span`."""
    start, end = span.byte_range
    return pcm[start:end]
