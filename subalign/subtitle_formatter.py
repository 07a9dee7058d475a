"""Reads and writes subtitle timelines in the SRT (SubRip Text) format."""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from .exceptions import FormattingError, MalformedInput
from .timeline import Cue, Timeline
from .utils import format_time_srt, parse_time_srt

logger = logging.getLogger(__name__)

_TIMING_RE = re.compile(
    r"^\s*(\d+:\d{1,2}:\d{1,2}[,.]\d{1,3})\s*-->\s*(\d+:\d{1,2}:\d{1,2}[,.]\d{1,3})"
)
_INDEX_RE = re.compile(r"^\s*\d+\s*$")


class SubtitleFormatter(ABC):
    """Abstract base class for subtitle interchange formats."""

    extension: str = ""

    @abstractmethod
    def parse(self, text: str) -> Timeline:
        """
        Parses subtitle file contents into a Timeline.

        Raises:
            MalformedInput: If the contents cannot be parsed at all.
        """
        pass

    @abstractmethod
    def render(self, timeline: Timeline) -> str:
        """Renders a Timeline as subtitle file contents."""
        pass

    def read(self, path: str) -> Timeline:
        """
        Reads and parses a subtitle file.

        Raises:
            FileNotFoundError: If the file does not exist.
            MalformedInput: If the file is not decodable or not parseable.
        """
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Subtitle file not found: {path}")
        try:
            with open(path, 'r', encoding='utf-8-sig') as f:
                text = f.read()
        except UnicodeDecodeError as e:
            raise MalformedInput(f"Subtitle file {path} is not valid UTF-8: {e}") from e
        timeline = self.parse(text)
        logger.info(f"Read {len(timeline)} cues from {path}")
        return timeline

    def write(self, timeline: Timeline, output_path: str) -> None:
        """
        Writes a Timeline to `output_path`.

        Raises:
            FormattingError: If file writing fails.
        """
        logger.info(f"Writing {len(timeline)} cues to {output_path}")
        try:
            with open(output_path, 'w', encoding='utf-8', newline='\n') as f:
                f.write(self.render(timeline))
        except OSError as e:
            logger.error(f"Failed to write subtitle file to {output_path}: {e}", exc_info=True)
            raise FormattingError(f"Could not write subtitle file: {e}") from e


class SRTFormatter(SubtitleFormatter):
    """
    SRT reader/writer.

    Well-formed files round-trip exactly. The reader also accepts the
    malformations found in hand-made subtitles: a BOM, CRLF line endings,
    '.' before the milliseconds, missing blank lines between records,
    missing index lines, zero-length cues and cues that end before they
    start (clamped to zero length, left for Timeline.normalize()).
    """

    extension = "srt"

    def parse(self, text: str) -> Timeline:
        lines = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n").split("\n")
        cues: List[Cue] = []
        current: Optional[dict] = None
        preamble: List[str] = []

        def finish(entry: Optional[dict]) -> None:
            if entry is None:
                return
            body = entry["lines"]
            while body and not body[-1].strip():
                body.pop()
            cues.append(Cue(entry["start"], entry["end"], tuple(body)))

        for line_no, line in enumerate(lines, start=1):
            match = _TIMING_RE.match(line)
            if match:
                if current is not None and not current.get("closed"):
                    # Missing blank separator: a trailing bare number is the next index
                    body = current["lines"]
                    if body and _INDEX_RE.match(body[-1]):
                        body.pop()
                finish(current)
                start = parse_time_srt(match.group(1))
                end = parse_time_srt(match.group(2))
                if end < start:
                    logger.warning(
                        f"SRT line {line_no}: cue ends before it starts "
                        f"({match.group(1)} --> {match.group(2)}); clamping to zero length."
                    )
                    end = start
                current = {"start": start, "end": end, "lines": []}
                continue

            if "-->" in line and (current is None or not current["lines"] or current.get("closed")):
                raise MalformedInput(f"SRT line {line_no}: unparseable timing line {line!r}")
            if current is None:
                if line.strip() and not _INDEX_RE.match(line):
                    preamble.append(line)
                continue
            if not line.strip():
                # A blank line ends the text block; later text belongs to no cue
                # until the next timing line, except for the index line itself.
                current["closed"] = True
                continue
            if current.get("closed"):
                if _INDEX_RE.match(line):
                    continue
                # Text after a blank line inside a block: keep it, never lose text
                current["closed"] = False
            current["lines"].append(line)

        finish(current)

        if not cues:
            if any(line.strip() for line in lines):
                bad = preamble[0] if preamble else next(l for l in lines if l.strip())
                raise MalformedInput(f"No SRT timing lines found (first content: {bad!r})")
            return Timeline()
        if preamble:
            logger.warning(f"Ignored {len(preamble)} line(s) before the first SRT cue.")
        return Timeline(cues)

    def render(self, timeline: Timeline) -> str:
        blocks = []
        for index, cue in enumerate(timeline, start=1):
            blocks.append(
                f"{index}\n"
                f"{format_time_srt(cue.start_ms)} --> {format_time_srt(cue.end_ms)}\n"
                f"{cue.text}\n\n"
            )
        return "".join(blocks)


_DEFAULT_FORMATTER = SRTFormatter()


def parse_srt(text: str) -> Timeline:
    return _DEFAULT_FORMATTER.parse(text)


def render_srt(timeline: Timeline) -> str:
    return _DEFAULT_FORMATTER.render(timeline)


def read_srt(path: str) -> Timeline:
    return _DEFAULT_FORMATTER.read(path)


def write_srt(timeline: Timeline, output_path: str) -> None:
    _DEFAULT_FORMATTER.write(timeline, output_path)
