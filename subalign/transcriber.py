"""Handles Speech-to-Text transcription of audio spans using Whisper."""

import whisper
import logging
import threading
import numpy as np
import torch
from typing import Any, Mapping

from .models import FatalFailure, RequestOutcome, RetryableFailure, Success
from .orchestrator import RequestBackend
from .exceptions import TranscriptionError

logger = logging.getLogger(__name__)


class Transcriber(RequestBackend):
    """
    Base class for transcription backends.

    `data` is 16-bit little-endian mono PCM for one span; `params` carries
    at least `sample_rate`, `language` and `model`. A successful payload is
    {"language": str | None, "segments": [{"start", "end", "text"}]} with
    times in seconds relative to the start of the span.
    """

    name = "transcribe"

    def request_params(self, sample_rate: int, language: str) -> dict:
        """Parameters that, with the audio bytes, determine the transcript."""
        return {"task": "transcribe", "sample_rate": sample_rate, "language": language}


class WhisperTranscriber(Transcriber):
    """Implements transcription using OpenAI's Whisper model."""

    def __init__(self, model_name: str = "medium", device: str = "cuda", fp16: bool = True):
        """
        Initializes the WhisperTranscriber.

        Args:
            model_name: The name of the Whisper model to use (e.g., "base", "medium").
            device: The device to run the model on ("cuda" or "cpu").
            fp16: Whether to use float16 precision (faster on compatible GPUs).

        Raises:
            ValueError: If the specified device is invalid.
            TranscriptionError: If the model fails to load.
        """
        self.model_name = model_name
        self.device = device
        self.fp16 = fp16

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA device requested but not available. Falling back to CPU.")
            self.device = "cpu"
        elif self.device not in ["cuda", "cpu"]:
            raise ValueError(f"Invalid device specified: {self.device}. Choose 'cuda' or 'cpu'.")

        logger.info(f"Initializing WhisperTranscriber with model '{self.model_name}' on device '{self.device}' (FP16: {self.fp16})")
        try:
            self.model = whisper.load_model(self.model_name, device=self.device)
            logger.info(f"Whisper model '{self.model_name}' loaded successfully.")
        except Exception as e:
            logger.error(f"Failed to load Whisper model '{self.model_name}': {e}", exc_info=True)
            raise TranscriptionError(f"Failed to load Whisper model '{self.model_name}': {e}") from e
        # One model instance, many orchestrator workers
        self._model_lock = threading.Lock()

    def request_params(self, sample_rate: int, language: str) -> dict:
        params = super().request_params(sample_rate, language)
        params["model"] = f"whisper:{self.model_name}"
        return params

    def call(self, data: bytes, params: Mapping[str, Any]) -> RequestOutcome:
        sample_rate = int(params.get("sample_rate", whisper.audio.SAMPLE_RATE))
        if sample_rate != whisper.audio.SAMPLE_RATE:
            return FatalFailure(f"Whisper expects {whisper.audio.SAMPLE_RATE} Hz audio, got {sample_rate} Hz")
        if not data:
            return Success({"language": params.get("language"), "segments": []})

        audio = np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0
        try:
            with self._model_lock:
                result = self.model.transcribe(
                    audio,
                    language=params.get("language"),
                    fp16=self.fp16 if self.device == "cuda" else False, # FP16 only works on CUDA
                    verbose=None,
                )
        except torch.cuda.OutOfMemoryError as e:
            torch.cuda.empty_cache()
            logger.warning(f"CUDA out of memory during transcription: {e}")
            return RetryableFailure(f"CUDA out of memory: {e}")
        except Exception as e:
            logger.error(f"Error during Whisper transcription: {e}", exc_info=True)
            return FatalFailure(f"Whisper transcription failed: {e}")

        segments = []
        for seg_data in result.get('segments', []):
            if 'start' in seg_data and 'end' in seg_data and 'text' in seg_data:
                text = seg_data['text'].strip()
                if text:
                    segments.append({
                        "start": float(seg_data['start']),
                        "end": float(seg_data['end']),
                        "text": text,
                    })
            else:
                logger.warning(f"Skipping incomplete segment data: {seg_data}")
        logger.debug(f"Transcribed {len(data) // 2} samples into {len(segments)} segment(s).")
        return Success({"language": result.get('language'), "segments": segments})
