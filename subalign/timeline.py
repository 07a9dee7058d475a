"""In-memory subtitle timeline: ordered, time-stamped cues."""

import bisect
import enum
import logging
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, List, Sequence, Tuple

from .exceptions import MalformedTimeline

logger = logging.getLogger(__name__)

DEFAULT_MIN_DURATION_MS = 500


class DegeneratePolicy(enum.Enum):
    """What normalize() does with a cue left with zero or negative duration."""
    EXPAND = "expand"
    DROP = "drop"

    @classmethod
    def from_config(cls, value) -> "DegeneratePolicy":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


@dataclass(frozen=True)
class Cue:
    """A single timestamped subtitle entry. Times are integer milliseconds."""
    start_ms: int
    end_ms: int
    lines: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.lines, tuple):
            object.__setattr__(self, "lines", tuple(self.lines))
        if self.start_ms < 0:
            raise MalformedTimeline(f"Cue starts before zero: {self.start_ms}ms")
        if self.end_ms < self.start_ms:
            raise MalformedTimeline(
                f"Cue ends before it starts: {self.start_ms}ms -> {self.end_ms}ms"
            )

    @classmethod
    def from_text(cls, start_ms: int, end_ms: int, text: str) -> "Cue":
        return cls(start_ms, end_ms, tuple(text.split("\n")))

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def is_blank(self) -> bool:
        return all(not line.strip() for line in self.lines)

    @property
    def is_degenerate(self) -> bool:
        return self.end_ms <= self.start_ms

    def overlap_ms(self, other: "Cue") -> int:
        return max(0, min(self.end_ms, other.end_ms) - max(self.start_ms, other.start_ms))

    def midpoint_ms(self) -> float:
        return (self.start_ms + self.end_ms) / 2


def _clean_lines(lines: Sequence[str]) -> Tuple[str, ...]:
    cleaned = tuple(line.strip() for line in lines)
    return tuple(line for line in cleaned if line)


class Timeline:
    """
    An ordered collection of cues representing one subtitle track.

    Cues are kept sorted by start time; cues with equal starts keep the order
    in which they were given. A Timeline never changes after construction:
    insert_cue() and normalize() return new instances, which keeps earlier
    snapshots valid for diffing and for re-iteration.
    """

    def __init__(self, cues: Iterable[Cue] = ()):
        cues = list(cues)
        for cue in cues:
            if not isinstance(cue, Cue):
                raise TypeError(f"Timeline accepts Cue objects, got {type(cue).__name__}")
        # sorted() is stable, so equal starts keep input order
        self._cues: Tuple[Cue, ...] = tuple(sorted(cues, key=lambda c: c.start_ms))
        self._starts: List[int] = [c.start_ms for c in self._cues]

    def __iter__(self) -> Iterator[Cue]:
        return iter(self._cues)

    def iter(self) -> Iterator[Cue]:
        """Returns a fresh iterator over the cues in time order."""
        return iter(self._cues)

    def __len__(self) -> int:
        return len(self._cues)

    def __getitem__(self, index):
        return self._cues[index]

    def __bool__(self) -> bool:
        return bool(self._cues)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Timeline):
            return NotImplemented
        return self._cues == other._cues

    def __hash__(self):
        return hash(self._cues)

    def __repr__(self) -> str:
        return f"Timeline({len(self._cues)} cues)"

    @property
    def cues(self) -> Tuple[Cue, ...]:
        return self._cues

    @property
    def start_ms(self) -> int:
        return self._cues[0].start_ms if self._cues else 0

    @property
    def end_ms(self) -> int:
        return max((c.end_ms for c in self._cues), default=0)

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def insert_cue(self, cue: Cue) -> "Timeline":
        """Returns a new timeline with `cue` placed after all cues starting no later than it."""
        if not isinstance(cue, Cue):
            raise TypeError(f"Timeline accepts Cue objects, got {type(cue).__name__}")
        position = bisect.bisect_right(self._starts, cue.start_ms)
        cues = list(self._cues)
        cues.insert(position, cue)
        return Timeline(cues)

    def shifted(self, offset_ms: int) -> "Timeline":
        """Moves every cue by `offset_ms`; fails rather than produce negative times."""
        if self._cues and self._cues[0].start_ms + offset_ms < 0:
            raise MalformedTimeline(f"Shifting by {offset_ms}ms would move cues before zero")
        return Timeline(
            replace(c, start_ms=c.start_ms + offset_ms, end_ms=c.end_ms + offset_ms)
            for c in self._cues
        )

    def is_normalized(self) -> bool:
        previous_end = None
        for cue in self._cues:
            if cue.is_degenerate:
                return False
            if previous_end is not None and cue.start_ms < previous_end:
                return False
            if cue.lines != _clean_lines(cue.lines):
                return False
            previous_end = cue.end_ms
        return True

    def normalize(
        self,
        policy: DegeneratePolicy = DegeneratePolicy.EXPAND,
        min_duration_ms: int = DEFAULT_MIN_DURATION_MS,
    ) -> "Timeline":
        """
        Repairs overlaps and degenerate cues, returning a new timeline.

        Cues are walked in start order. The earliest cue wins an overlap: a
        later cue's start is pushed forward to the end of the cue before it.
        A cue whose duration is then zero or negative is either expanded to
        `min_duration_ms` or dropped, depending on `policy`. Text lines are
        stripped and empty lines removed; a cue with no text left is kept as
        an intentional blank.

        The result satisfies `start < end` for every cue and
        `cues[i].end <= cues[i+1].start`, and normalizing it again returns an
        equal timeline.
        """
        policy = DegeneratePolicy.from_config(policy)
        if min_duration_ms <= 0:
            raise ValueError("min_duration_ms must be positive")

        repaired: List[Cue] = []
        previous_end = 0
        dropped = 0
        for cue in self._cues:
            start = max(cue.start_ms, previous_end) if repaired else cue.start_ms
            end = cue.end_ms
            if end <= start:
                if policy is DegeneratePolicy.DROP:
                    dropped += 1
                    continue
                end = start + min_duration_ms
            repaired.append(Cue(start, end, _clean_lines(cue.lines)))
            previous_end = end

        if dropped:
            logger.debug(f"normalize dropped {dropped} degenerate cue(s)")
        return Timeline(repaired)
