"""Aligns and combines subtitle timelines."""

import difflib
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import AlignmentFailure
from .timeline import DEFAULT_MIN_DURATION_MS, Cue, DegeneratePolicy, Timeline

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class _Token:
    norm: str
    start_ms: float
    end_ms: float


def _normalize_word(word: str) -> str:
    return unicodedata.normalize("NFKC", word).casefold()


def _words(text: str) -> List[str]:
    words = _WORD_RE.findall(text)
    if not words and text.strip():
        # Scripts without word separators still align character by character
        words = [ch for ch in text if not ch.isspace()]
    return words


def _timed_tokens(recognized: Timeline) -> List[_Token]:
    """Spreads each recognized cue's time over its words, weighted by length."""
    tokens: List[_Token] = []
    for cue in recognized:
        words = _words(cue.text)
        if not words:
            continue
        total = sum(len(w) for w in words)
        elapsed = 0
        for word in words:
            start = cue.start_ms + cue.duration_ms * elapsed / total
            elapsed += len(word)
            end = cue.start_ms + cue.duration_ms * elapsed / total
            tokens.append(_Token(_normalize_word(word), start, end))
    return tokens


def _proportional_bounds(weights: Sequence[int], start_ms: float, end_ms: float) -> List[Tuple[float, float]]:
    weights = [max(1, w) for w in weights]
    total = sum(weights)
    bounds = []
    elapsed = 0
    for weight in weights:
        lo = start_ms + (end_ms - start_ms) * elapsed / total
        elapsed += weight
        hi = start_ms + (end_ms - start_ms) * elapsed / total
        bounds.append((lo, hi))
    return bounds


def merge_expected_text(
    expected_lines: Sequence[str],
    recognized: Timeline,
    min_duration_ms: int = DEFAULT_MIN_DURATION_MS,
) -> Timeline:
    """
    Times a known-good transcript using recognized (timestamped) text.

    Each expected line becomes one cue; line breaks and wording come from
    `expected_lines`, timing from `recognized`. When both sides have the same
    number of entries they are paired one to one. Otherwise the words of both
    sides are aligned with a longest-matching-subsequence diff, each line
    takes the time range of its matched words, and lines with no matched
    words are spread between their neighbours in proportion to their length.
    No expected line is ever dropped.

    Raises:
        AlignmentFailure: If either side is empty.
    """
    lines = [line for line in (l.strip() for l in expected_lines) if line]
    recognized = Timeline(c for c in recognized if not c.is_blank)
    if not lines:
        raise AlignmentFailure("Expected text has no lines to align.")
    if not recognized:
        raise AlignmentFailure("Recognized timeline has no cues to take timing from.")

    if len(lines) == len(recognized):
        logger.info(f"Pairing {len(lines)} expected lines one-to-one with recognized cues.")
        cues = [Cue(c.start_ms, c.end_ms, (line,)) for line, c in zip(lines, recognized)]
        return Timeline(cues).normalize(DegeneratePolicy.EXPAND, min_duration_ms)

    logger.info(
        f"Aligning {len(lines)} expected lines against {len(recognized)} recognized cues by text."
    )
    rec_tokens = _timed_tokens(recognized)
    exp_words: List[str] = []
    owner: List[int] = []
    for line_no, line in enumerate(lines):
        for word in _words(line):
            exp_words.append(_normalize_word(word))
            owner.append(line_no)

    matcher = difflib.SequenceMatcher(None, exp_words, [t.norm for t in rec_tokens], autojunk=False)
    line_bounds: Dict[int, List[float]] = {}
    matched_words = 0
    for block in matcher.get_matching_blocks():
        for offset in range(block.size):
            line_no = owner[block.a + offset]
            token = rec_tokens[block.b + offset]
            bounds = line_bounds.setdefault(line_no, [token.start_ms, token.end_ms])
            bounds[0] = min(bounds[0], token.start_ms)
            bounds[1] = max(bounds[1], token.end_ms)
            matched_words += 1

    if not line_bounds:
        logger.warning("No words in common with the recognized text; distributing lines proportionally.")
        spans = _proportional_bounds([len(l) for l in lines], recognized.start_ms, recognized.end_ms)
    else:
        logger.debug(f"Matched {matched_words}/{len(exp_words)} expected words.")
        spans = _fill_unmatched(lines, line_bounds, recognized.start_ms, recognized.end_ms)

    cues = []
    previous_start = 0
    for line, (lo, hi) in zip(lines, spans):
        start = max(previous_start, int(round(lo)))
        end = max(start, int(round(hi)))
        cues.append(Cue(start, end, (line,)))
        previous_start = start
    return Timeline(cues).normalize(DegeneratePolicy.EXPAND, min_duration_ms)


def _fill_unmatched(lines: Sequence[str], matched: Dict[int, List[float]],
                    range_start: float, range_end: float) -> List[Tuple[float, float]]:
    """Gives every line a (start, end) range, interpolating runs of unmatched lines."""
    spans: List[Optional[Tuple[float, float]]] = [None] * len(lines)
    # Matched ranges can cross when a word repeats; clamp them into order
    floor = range_start
    for line_no in sorted(matched):
        lo, hi = matched[line_no]
        lo = max(lo, floor)
        hi = max(hi, lo)
        spans[line_no] = (lo, hi)
        floor = lo

    line_no = 0
    while line_no < len(lines):
        if spans[line_no] is not None:
            line_no += 1
            continue
        run_start = line_no
        while line_no < len(lines) and spans[line_no] is None:
            line_no += 1
        gap_lo = spans[run_start - 1][1] if run_start > 0 else range_start
        gap_hi = spans[line_no][0] if line_no < len(lines) else range_end
        if gap_hi < gap_lo:
            gap_hi = gap_lo
        run = range(run_start, line_no)
        for idx, bounds in zip(run, _proportional_bounds([len(lines[i]) for i in run], gap_lo, gap_hi)):
            spans[idx] = bounds
    return spans


def sync_timelines(
    foreign: Timeline,
    native: Timeline,
    min_duration_ms: int = DEFAULT_MIN_DURATION_MS,
) -> Timeline:
    """
    Combines two timestamped tracks into one bilingual track.

    The output keeps the foreign track's timing. Every native cue is attached
    to the foreign cue it overlaps most; ties go to the earlier-starting
    foreign cue, and foreign cues with identical intervals keep their input
    order. A native cue that overlaps nothing goes to the foreign cue whose
    midpoint is nearest. Output text is the foreign lines followed by the
    attached native lines in time order, so no native text is lost.

    Raises:
        AlignmentFailure: If either timeline is empty.
    """
    foreign = foreign.normalize(DegeneratePolicy.EXPAND, min_duration_ms)
    native = native.normalize(DegeneratePolicy.EXPAND, min_duration_ms)
    if not foreign:
        raise AlignmentFailure("Foreign timeline is empty; nothing to synchronize against.")
    if not native:
        raise AlignmentFailure("Native timeline is empty; nothing to synchronize.")

    attached: Dict[int, List[Cue]] = {i: [] for i in range(len(foreign))}
    unmatched = 0
    for n_cue in native:
        best_index = None
        best_overlap = 0
        for f_index, f_cue in enumerate(foreign):
            if f_cue.start_ms >= n_cue.end_ms:
                break # foreign is sorted; nothing later can overlap
            overlap = f_cue.overlap_ms(n_cue)
            if overlap > best_overlap:
                best_index, best_overlap = f_index, overlap
        if best_index is None:
            unmatched += 1
            midpoint = n_cue.midpoint_ms()
            best_index = min(
                range(len(foreign)),
                key=lambda i: (abs(foreign[i].midpoint_ms() - midpoint), foreign[i].start_ms, i),
            )
        attached[best_index].append(n_cue)

    if unmatched:
        logger.info(f"{unmatched} native cue(s) had no overlap; attached to the nearest foreign cue.")

    cues = []
    for f_index, f_cue in enumerate(foreign):
        native_lines = tuple(line for n_cue in attached[f_index] for line in n_cue.lines)
        cues.append(Cue(f_cue.start_ms, f_cue.end_ms, f_cue.lines + native_lines))
    return Timeline(cues).normalize(DegeneratePolicy.EXPAND, min_duration_ms)
