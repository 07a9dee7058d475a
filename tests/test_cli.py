from __future__ import annotations

import logging
from pathlib import Path

import pytest

from main_batch import find_and_sort_videos
from subalign.cli import EXIT_ERROR, EXIT_OK, CLIHandler
from subalign.subtitle_formatter import read_srt

FOREIGN = "1\n00:00:00,000 --> 00:00:02,000\nHola\n\n2\n00:00:02,000 --> 00:00:04,000\nAdiós\n\n"
NATIVE = "1\n00:00:00,100 --> 00:00:01,900\nHello\n\n2\n00:00:02,100 --> 00:00:03,900\nGoodbye\n\n"


@pytest.fixture(autouse=True)
def restore_root_logging(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # The CLI reconfigures the root logger; put pytest's handlers back afterwards
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _config(tmp_path: Path) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(
        f"log_dir: '{tmp_path / 'logs'}'\ncache_dir: '{tmp_path / 'cache'}'\n",
        encoding="utf-8",
    )
    return str(path)


def test_sync_command_writes_bilingual_file(tmp_path: Path) -> None:
    (tmp_path / "es.srt").write_text(FOREIGN, encoding="utf-8")
    (tmp_path / "en.srt").write_text(NATIVE, encoding="utf-8")
    output = tmp_path / "both.srt"

    code = CLIHandler().run([
        "-c", _config(tmp_path), "sync", str(tmp_path / "es.srt"), str(tmp_path / "en.srt"), "-o", str(output),
    ])

    assert code == EXIT_OK
    assert [c.lines for c in read_srt(str(output))] == [("Hola", "Hello"), ("Adiós", "Goodbye")]


def test_sync_command_rejects_unparseable_input(tmp_path: Path) -> None:
    (tmp_path / "bad.srt").write_text("not subtitles\n", encoding="utf-8")
    (tmp_path / "en.srt").write_text(NATIVE, encoding="utf-8")

    code = CLIHandler().run([
        "-c", _config(tmp_path), "sync", str(tmp_path / "bad.srt"), str(tmp_path / "en.srt"),
        "-o", str(tmp_path / "out.srt"),
    ])

    assert code == EXIT_ERROR
    assert not (tmp_path / "out.srt").exists()


def test_missing_explicit_config_is_an_error(tmp_path: Path) -> None:
    code = CLIHandler().run(["-c", str(tmp_path / "missing.yaml"), "cache-evict"])

    assert code == EXIT_ERROR


def test_cache_evict_command(tmp_path: Path) -> None:
    assert CLIHandler().run(["-c", _config(tmp_path), "cache-evict"]) == EXIT_OK


def test_generate_with_missing_media_fails_before_loading_models(tmp_path: Path) -> None:
    code = CLIHandler().run([
        "-c", _config(tmp_path), "generate", str(tmp_path / "missing.mkv"), "-o", str(tmp_path / "out"),
    ])

    assert code == EXIT_ERROR


def test_batch_finds_media_smallest_first(tmp_path: Path) -> None:
    (tmp_path / "big.mkv").write_bytes(b"x" * 300)
    (tmp_path / "small.MP4").write_bytes(b"x" * 10)
    (tmp_path / "notes.txt").write_bytes(b"x")

    videos = find_and_sort_videos(str(tmp_path))

    assert [Path(path).name for path, _ in videos] == ["small.MP4", "big.mkv"]
    with pytest.raises(FileNotFoundError):
        find_and_sort_videos(str(tmp_path / "nope"))
