"""Probes media files and decodes their audio using ffmpeg."""

import ffmpeg
import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from .exceptions import AudioExtractionError

logger = logging.getLogger(__name__)

# ffprobe reports ISO 639-2 tags; the rest of the pipeline uses 639-1 codes
_ISO639_2_TO_1 = {
    "ara": "ar", "chi": "zh", "zho": "zh", "cze": "cs", "ces": "cs", "dan": "da",
    "dut": "nl", "nld": "nl", "eng": "en", "fin": "fi", "fre": "fr", "fra": "fr",
    "ger": "de", "deu": "de", "gre": "el", "ell": "el", "heb": "he", "hin": "hi",
    "hun": "hu", "ind": "id", "ita": "it", "jpn": "ja", "kor": "ko", "mal": "ml",
    "nor": "no", "pol": "pl", "por": "pt", "rum": "ro", "ron": "ro", "rus": "ru",
    "spa": "es", "swe": "sv", "tha": "th", "tur": "tr", "ukr": "uk", "vie": "vi",
}


def normalize_language_tag(tag: Optional[str]) -> Optional[str]:
    """Maps 'eng'/'en'/'en-US' style tags to a two-letter code; None if unknown."""
    if not tag:
        return None
    tag = tag.strip().lower().replace("_", "-").split("-")[0]
    if len(tag) == 2 and tag.isalpha():
        return tag
    return _ISO639_2_TO_1.get(tag)


@dataclass(frozen=True)
class StreamInfo:
    """One stream inside a media container."""
    index: int
    codec_type: str
    language: Optional[str] = None
    attached_pic: bool = False

    @classmethod
    def from_probe(cls, data: Dict) -> "StreamInfo":
        tags = data.get("tags") or {}
        disposition = data.get("disposition") or {}
        return cls(
            index=int(data["index"]),
            codec_type=str(data.get("codec_type", "unknown")),
            language=normalize_language_tag(tags.get("language")),
            attached_pic=disposition.get("attached_pic") == 1,
        )


class AudioExtractor:
    """Reads stream metadata and raw audio from media files."""

    def __init__(self, ffmpeg_path: Optional[str] = None, ffprobe_path: Optional[str] = None):
        """
        Initializes the AudioExtractor.

        Args:
            ffmpeg_path: Optional path to the ffmpeg executable.
                         If None, assumes ffmpeg is in the system PATH.
            ffprobe_path: Optional path to ffprobe; defaults to the one next to ffmpeg_path.
        """
        self.ffmpeg_cmd = ffmpeg_path or 'ffmpeg'
        if ffprobe_path:
            self.ffprobe_cmd = ffprobe_path
        elif ffmpeg_path:
            self.ffprobe_cmd = os.path.join(os.path.dirname(ffmpeg_path), 'ffprobe')
        else:
            self.ffprobe_cmd = 'ffprobe'
        logger.info(f"Using ffmpeg command: {self.ffmpeg_cmd}")

    def probe(self, media_path: str) -> List[StreamInfo]:
        """
        Lists the streams in a media file.

        Raises:
            FileNotFoundError: If the file does not exist.
            AudioExtractionError: If ffprobe fails.
        """
        if not os.path.isfile(media_path):
            raise FileNotFoundError(f"Media file not found: {media_path}")
        try:
            info = ffmpeg.probe(media_path, cmd=self.ffprobe_cmd)
        except ffmpeg.Error as e:
            stderr_output = e.stderr.decode('utf-8', errors='replace') if e.stderr else "No stderr output"
            logger.error(f"ffprobe failed for {media_path}: {stderr_output}")
            raise AudioExtractionError(f"ffprobe failed: {stderr_output}") from e
        except OSError as e:
            logger.error(f"Could not run ffprobe ({self.ffprobe_cmd}): {e}", exc_info=True)
            raise AudioExtractionError(f"Could not run ffprobe: {e}") from e
        streams = [StreamInfo.from_probe(s) for s in info.get("streams", [])]
        logger.debug(f"Probed {media_path}: {streams}")
        return streams

    def audio_track_for(self, media_path: str, language: str) -> Optional[int]:
        """
        Returns the index of the first audio stream tagged with `language`.

        Returns None when no audio stream carries that tag, including when the
        file has no language tags at all; callers then fall back to ffmpeg's
        default audio stream.
        """
        wanted = normalize_language_tag(language)
        for stream in self.probe(media_path):
            if stream.codec_type == "audio" and stream.language == wanted:
                return stream.index
        logger.info(f"No audio stream tagged '{language}' in {media_path}; using the default stream.")
        return None

    def decode_audio(self, media_path: str, stream_index: Optional[int] = None,
                     sample_rate: int = 16000) -> bytes:
        """
        Decodes an audio stream to 16-bit little-endian mono PCM.

        Args:
            media_path: Path to the input video/audio file.
            stream_index: Absolute stream index to decode, or None for ffmpeg's default.
            sample_rate: Output sample rate in Hz.

        Returns:
            The raw PCM bytes.

        Raises:
            FileNotFoundError: If the input file does not exist.
            AudioExtractionError: If ffmpeg fails to decode the audio.
        """
        logger.info(f"Decoding audio from {media_path} (stream={stream_index}, rate={sample_rate})")
        if not os.path.isfile(media_path):
            raise FileNotFoundError(f"Input media file not found: {media_path}")

        output_args = dict(format='s16le', acodec='pcm_s16le', ac=1, ar=sample_rate)
        if stream_index is not None:
            output_args['map'] = f"0:{stream_index}"
        try:
            pcm, _ = (
                ffmpeg
                .input(media_path)
                .output('pipe:', **output_args)
                .global_args('-nostdin', '-v', 'error')
                .run(cmd=self.ffmpeg_cmd, capture_stdout=True, capture_stderr=True)
            )
        except ffmpeg.Error as e:
            stderr_output = e.stderr.decode('utf-8', errors='replace') if e.stderr else "No stderr output"
            logger.error(f"ffmpeg stderr: {stderr_output}")
            raise AudioExtractionError(f"ffmpeg failed: {stderr_output}") from e
        except OSError as e:
            logger.error(f"Could not run ffmpeg ({self.ffmpeg_cmd}): {e}", exc_info=True)
            raise AudioExtractionError(f"Could not run ffmpeg: {e}") from e

        if len(pcm) % 2:
            pcm = pcm[:-1] # drop a dangling half sample
        logger.info(f"Decoded {len(pcm) // 2 / sample_rate:.2f}s of audio from {media_path}")
        return pcm
