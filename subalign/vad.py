"""Frame-level voice-activity detection using WebRTC VAD."""

import logging
from typing import List, Tuple

import webrtcvad

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_RATES = (8000, 16000, 32000, 48000)
SUPPORTED_FRAME_MS = (10, 20, 30)


class VoiceActivityDetector:
    """Classifies fixed-size frames of 16-bit mono PCM as speech or silence."""

    def __init__(self, aggressiveness: int = 2, frame_ms: int = 30):
        if aggressiveness not in (0, 1, 2, 3):
            raise ConfigurationError(f"VAD aggressiveness must be 0-3, got {aggressiveness}")
        if frame_ms not in SUPPORTED_FRAME_MS:
            raise ConfigurationError(f"VAD frame length must be one of {SUPPORTED_FRAME_MS} ms, got {frame_ms}")
        self.aggressiveness = aggressiveness
        self.frame_ms = frame_ms

    def frame_samples(self, sample_rate: int) -> int:
        return sample_rate * self.frame_ms // 1000

    def classify(self, pcm: bytes, sample_rate: int) -> List[Tuple[int, bool]]:
        """
        Returns (frame_index, is_speech) for every whole frame in `pcm`.

        A trailing partial frame is not reported, which the segmenter treats
        as speech.
        """
        if sample_rate not in SUPPORTED_RATES:
            raise ConfigurationError(f"WebRTC VAD supports {SUPPORTED_RATES} Hz, got {sample_rate}")
        vad = webrtcvad.Vad(self.aggressiveness)
        frame_bytes = self.frame_samples(sample_rate) * 2
        flags = []
        for index, offset in enumerate(range(0, len(pcm) - frame_bytes + 1, frame_bytes)):
            frame = pcm[offset:offset + frame_bytes]
            flags.append((index, vad.is_speech(frame, sample_rate)))
        speech = sum(1 for _, is_speech in flags if is_speech)
        logger.info(f"VAD: {speech}/{len(flags)} frames of {self.frame_ms}ms classified as speech")
        return flags
