"""Utility functions for SubAlign."""

import os
import re
import logging
from .exceptions import FileSystemError, MalformedInput

logger = logging.getLogger(__name__)

_SRT_TIME_RE = re.compile(r"^\s*(\d+):(\d{1,2}):(\d{1,2})[,.](\d{1,3})\s*$")

def ensure_dir_exists(dir_path: str) -> None:
    """
    Ensures that a directory exists. Creates it if it doesn't.

    Args:
        dir_path: The path to the directory.

    Raises:
        FileSystemError: If the directory cannot be created due to permissions
                         or if the path exists but is not a directory.
    """
    if not dir_path:
        raise ValueError("Directory path cannot be empty.")
    try:
        if not os.path.exists(dir_path):
            os.makedirs(dir_path, exist_ok=True)
            logger.info(f"Created directory: {dir_path}")
        elif not os.path.isdir(dir_path):
            raise FileSystemError(f"Path exists but is not a directory: {dir_path}")
    except OSError as e:
        logger.error(f"Error creating or accessing directory {dir_path}: {e}", exc_info=True)
        raise FileSystemError(f"Could not create or access directory {dir_path}: {e}") from e

def format_time_srt(milliseconds: int) -> str:
    """
    Formats integer milliseconds into SRT time format HH:MM:SS,mmm.

    Args:
        milliseconds: Time in milliseconds.

    Returns:
        Formatted time string.
    """
    if milliseconds < 0:
        milliseconds = 0 # Ensure non-negative time
    hrs = milliseconds // 3600000
    milliseconds %= 3600000
    mins = milliseconds // 60000
    milliseconds %= 60000
    secs = milliseconds // 1000
    milliseconds %= 1000
    return f"{hrs:02d}:{mins:02d}:{secs:02d},{milliseconds:03d}"

def parse_time_srt(value: str) -> int:
    """
    Parses an SRT timestamp into integer milliseconds.

    Accepts '.' as well as ',' before the milliseconds, and one-digit
    minute/second fields, both of which show up in hand-edited files.

    Raises:
        MalformedInput: If the value is not a timestamp.
    """
    match = _SRT_TIME_RE.match(value)
    if not match:
        raise MalformedInput(f"Invalid SRT timestamp: {value!r}")
    hrs, mins, secs, frac = match.groups()
    # "1,5" means 500 ms, not 5 ms
    millis = int(frac.ljust(3, "0"))
    return ((int(hrs) * 60 + int(mins)) * 60 + int(secs)) * 1000 + millis

def seconds_to_ms(seconds) -> int:
    """Rounds a second value (float or Fraction) to the nearest millisecond."""
    return int(round(seconds * 1000))
