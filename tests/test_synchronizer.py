from __future__ import annotations

import pytest

from subalign.exceptions import AlignmentFailure
from subalign.synchronizer import merge_expected_text, sync_timelines
from subalign.timeline import Cue, Timeline


def _timeline(*cues: tuple[int, int, str]) -> Timeline:
    return Timeline(Cue.from_text(start, end, text) for start, end, text in cues)


RECOGNIZED = _timeline(
    (0, 2000, "hello there my friend"),
    (2000, 4000, "how are you today"),
    (4000, 6000, "the weather is nice"),
    (6000, 8000, "see you later"),
)


def test_more_expected_lines_than_segments_keeps_every_line() -> None:
    expected = ["Hello there,", "my friend.", "How are you today?", "The weather is nice.", "See you later!"]

    merged = merge_expected_text(expected, RECOGNIZED)

    assert [cue.text for cue in merged] == expected
    assert merged.is_normalized()
    assert merged[0].start_ms == 0
    assert merged[1].start_ms >= 1000
    assert merged[4].start_ms >= 6000
    assert merged[4].end_ms <= 8000


def test_unmatched_line_is_placed_between_its_neighbours() -> None:
    expected = ["Hello there my friend", "[MUSIC]", "How are you today", "The weather is nice", "See you later"]

    merged = merge_expected_text(expected, RECOGNIZED)

    assert [cue.text for cue in merged] == expected
    assert merged[0].end_ms <= merged[1].start_ms <= merged[2].start_ms


def test_equal_counts_pair_one_to_one() -> None:
    expected = ["Line one", "Line two", "Line three", "Line four"]

    merged = merge_expected_text(expected, RECOGNIZED)

    assert [(c.start_ms, c.end_ms, c.text) for c in merged] == [
        (0, 2000, "Line one"),
        (2000, 4000, "Line two"),
        (4000, 6000, "Line three"),
        (6000, 8000, "Line four"),
    ]


def test_no_common_words_spreads_lines_by_length() -> None:
    merged = merge_expected_text(["alpha beta", "gamma"], _timeline((0, 3000, "xyz")))

    assert [(c.start_ms, c.end_ms) for c in merged] == [(0, 2000), (2000, 3000)]


def test_merge_requires_both_sides() -> None:
    with pytest.raises(AlignmentFailure):
        merge_expected_text([], RECOGNIZED)
    with pytest.raises(AlignmentFailure):
        merge_expected_text(["   "], RECOGNIZED)
    with pytest.raises(AlignmentFailure):
        merge_expected_text(["hello"], Timeline())


def test_sync_attaches_by_overlap_and_nearest_neighbour() -> None:
    foreign = _timeline((0, 2000, "Hola"), (2000, 4000, "Adiós"))
    native = _timeline((100, 1900, "Hello"), (2100, 3900, "Goodbye"), (10000, 11000, "Extra"))

    bilingual = sync_timelines(foreign, native)

    assert [(c.start_ms, c.end_ms) for c in bilingual] == [(0, 2000), (2000, 4000)]
    assert bilingual[0].lines == ("Hola", "Hello")
    assert bilingual[1].lines == ("Adiós", "Goodbye", "Extra")


def test_sync_overlap_tie_goes_to_earlier_cue() -> None:
    foreign = _timeline((0, 2000, "Uno"), (2000, 4000, "Dos"))
    native = _timeline((1000, 3000, "Straddles"))

    bilingual = sync_timelines(foreign, native)

    assert bilingual[0].lines == ("Uno", "Straddles")
    assert bilingual[1].lines == ("Dos",)


def test_sync_identical_foreign_intervals_keep_input_order() -> None:
    foreign = _timeline((0, 1000, "A"), (0, 1000, "B"))
    native = _timeline((0, 1000, "N"))

    bilingual = sync_timelines(foreign, native)

    assert [c.lines for c in bilingual] == [("A", "N"), ("B",)]
    assert bilingual.is_normalized()


def test_sync_is_deterministic() -> None:
    foreign = _timeline((0, 1500, "a"), (1200, 2500, "b"), (2500, 2500, "c"))
    native = _timeline((1000, 1400, "x"), (2400, 3000, "y"), (5000, 5200, "z"))

    assert sync_timelines(foreign, native) == sync_timelines(foreign, native)


def test_sync_requires_both_tracks() -> None:
    with pytest.raises(AlignmentFailure):
        sync_timelines(Timeline(), RECOGNIZED)
    with pytest.raises(AlignmentFailure):
        sync_timelines(RECOGNIZED, Timeline())
