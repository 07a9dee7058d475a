from __future__ import annotations

from pathlib import Path

import pytest

from subalign.exceptions import MalformedInput
from subalign.subtitle_formatter import parse_srt, read_srt, render_srt, write_srt
from subalign.timeline import Cue, Timeline
from subalign.utils import format_time_srt, parse_time_srt


WELL_FORMED = (
    "1\n"
    "00:00:01,000 --> 00:00:02,500\n"
    "Hello\n"
    "world\n"
    "\n"
    "2\n"
    "00:00:03,000 --> 00:00:04,000\n"
    "¿Qué tal?\n"
    "\n"
    "3\n"
    "01:02:03,456 --> 01:02:05,000\n"
    "Bye\n"
    "\n"
)


def test_round_trip_is_byte_identical() -> None:
    timeline = parse_srt(WELL_FORMED)

    assert len(timeline) == 3
    assert timeline[0].lines == ("Hello", "world")
    assert timeline[2].start_ms == 3723456
    assert render_srt(timeline) == WELL_FORMED


def test_blank_cue_round_trips() -> None:
    text = (
        "1\n"
        "00:00:01,000 --> 00:00:02,000\n"
        "\n"
        "\n"
        "2\n"
        "00:00:03,000 --> 00:00:04,000\n"
        "B\n"
        "\n"
    )

    timeline = parse_srt(text)

    assert timeline[0].lines == ()
    assert render_srt(timeline) == text


def test_missing_blank_line_separators_are_accepted() -> None:
    text = (
        "1\n"
        "00:00:01,000 --> 00:00:02,000\n"
        "Hello\n"
        "2\n"
        "00:00:03,000 --> 00:00:04,000\n"
        "Bye\n"
    )

    timeline = parse_srt(text)

    assert [c.lines for c in timeline] == [("Hello",), ("Bye",)]


def test_missing_index_lines_bom_crlf_and_dot_separator() -> None:
    text = "\ufeff00:00:01.5 --> 00:00:02.250\r\nHello\r\n\r\n00:00:03,000 --> 00:00:04,000\r\nBye\r\n"

    timeline = parse_srt(text)

    assert [(c.start_ms, c.end_ms) for c in timeline] == [(1500, 2250), (3000, 4000)]


def test_zero_and_negative_duration_cues_do_not_reject_file() -> None:
    text = (
        "1\n"
        "00:00:01,000 --> 00:00:01,000\n"
        "Zero\n"
        "\n"
        "2\n"
        "00:00:05,000 --> 00:00:04,000\n"
        "Backwards\n"
        "\n"
    )

    timeline = parse_srt(text)

    assert [(c.start_ms, c.end_ms) for c in timeline] == [(1000, 1000), (5000, 5000)]
    normalized = timeline.normalize(min_duration_ms=500)
    assert [(c.start_ms, c.end_ms) for c in normalized] == [(1000, 1500), (5000, 5500)]


def test_numeric_text_line_before_blank_line_is_kept() -> None:
    text = (
        "1\n"
        "00:00:01,000 --> 00:00:02,000\n"
        "Room\n"
        "42\n"
        "\n"
        "2\n"
        "00:00:03,000 --> 00:00:04,000\n"
        "Bye\n"
    )

    timeline = parse_srt(text)

    assert timeline[0].lines == ("Room", "42")


def test_unparseable_input_raises_malformed_input() -> None:
    with pytest.raises(MalformedInput):
        parse_srt("this is not a subtitle file\n")
    with pytest.raises(MalformedInput):
        parse_srt("1\n00:00:01,000 --> garbage\nHello\n")


def test_empty_input_is_an_empty_timeline() -> None:
    assert len(parse_srt("")) == 0
    assert len(parse_srt("\n\n")) == 0


def test_write_and_read_file(tmp_path: Path) -> None:
    path = tmp_path / "out.srt"
    timeline = Timeline([Cue(0, 1000, ("a",)), Cue(1000, 2000, ("b", "c"))])

    write_srt(timeline, str(path))

    assert read_srt(str(path)) == timeline


def test_read_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_srt(str(tmp_path / "missing.srt"))


def test_time_helpers() -> None:
    assert format_time_srt(0) == "00:00:00,000"
    assert format_time_srt(3723456) == "01:02:03,456"
    assert format_time_srt(-5) == "00:00:00,000"
    assert parse_time_srt("01:02:03,456") == 3723456
    assert parse_time_srt("0:0:1.5") == 1500
    with pytest.raises(MalformedInput):
        parse_time_srt("1.5s")
