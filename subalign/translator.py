"""Handles cue text translation using Hugging Face models."""

import logging
import threading
import torch
from transformers import AutoTokenizer, AutoModelForSeq2SeqLM
from typing import Any, Mapping, Optional

from .models import FatalFailure, RequestOutcome, RetryableFailure, Success
from .orchestrator import RequestBackend
from .exceptions import TranslationError

logger = logging.getLogger(__name__)


class Translator(RequestBackend):
    """
    Base class for translation backends.

    `data` is the UTF-8 text of one cue (lines joined by newlines); `params`
    carries `source`, `target` and `model`. A successful payload is
    {"text": str}.
    """

    name = "translate"

    def request_params(self, source_lang: str, target_lang: str) -> dict:
        return {"task": "translate", "source": source_lang, "target": target_lang}


def default_model_name(source_lang: str, target_lang: str) -> str:
    return f"Helsinki-NLP/opus-mt-{source_lang}-{target_lang}"


class HuggingFaceTranslator(Translator):
    """Implements translation using Hugging Face Transformers models."""

    def __init__(self, model_name: Optional[str] = None, device: str = "cuda",
                 source_lang: str = "en", target_lang: str = "es"):
        """
        Initializes the HuggingFaceTranslator.

        Args:
            model_name: The name of the Hugging Face translation model. Defaults
                to the Helsinki-NLP opus-mt model for the language pair.
            device: The device to run the model on ("cuda" or "cpu").
            source_lang: Source language code (e.g., 'en').
            target_lang: Target language code (e.g., 'es').

        Raises:
            ValueError: If the specified device is invalid.
            TranslationError: If the model or tokenizer fails to load.
        """
        self.model_name = model_name or default_model_name(source_lang, target_lang)
        self.device = device
        self.source_lang = source_lang
        self.target_lang = target_lang

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA device requested but not available for translation. Falling back to CPU.")
            self.device = "cpu"
        elif self.device not in ["cuda", "cpu"]:
            raise ValueError(f"Invalid device specified: {self.device}. Choose 'cuda' or 'cpu'.")

        logger.info(f"Initializing HuggingFaceTranslator with model '{self.model_name}' on device '{self.device}'")
        try:
            self.tokenizer = AutoTokenizer.from_pretrained(self.model_name)
            self.model = AutoModelForSeq2SeqLM.from_pretrained(self.model_name)
            self.model.to(self.device)
            self.model.eval() # Set model to evaluation mode
            logger.info(f"Hugging Face translation model '{self.model_name}' loaded successfully.")
        except Exception as e:
            logger.error(f"Failed to load translation model or tokenizer '{self.model_name}': {e}", exc_info=True)
            raise TranslationError(f"Failed to load translation model/tokenizer '{self.model_name}': {e}") from e
        self._model_lock = threading.Lock()

    def request_params(self, source_lang: str = None, target_lang: str = None) -> dict:
        params = super().request_params(source_lang or self.source_lang, target_lang or self.target_lang)
        params["model"] = self.model_name
        return params

    def call(self, data: bytes, params: Mapping[str, Any]) -> RequestOutcome:
        text = data.decode("utf-8")
        if params.get("source") != self.source_lang or params.get("target") != self.target_lang:
            return FatalFailure(
                f"Model '{self.model_name}' translates {self.source_lang}->{self.target_lang}, "
                f"not {params.get('source')}->{params.get('target')}"
            )
        if not text.strip():
            return Success({"text": ""})

        logger.debug(f"Translating ({self.source_lang}->{self.target_lang}): '{text[:50]}...'")
        # Translate line by line so the cue keeps its line breaks
        lines = text.split("\n")
        try:
            with self._model_lock:
                inputs = self.tokenizer(lines, return_tensors="pt", padding=True, truncation=True, max_length=512)
                inputs = {k: v.to(self.device) for k, v in inputs.items()}
                with torch.no_grad():
                    translated_tokens = self.model.generate(**inputs)
            translated = [
                self.tokenizer.decode(tokens, skip_special_tokens=True)
                for tokens in translated_tokens
            ]
        except torch.cuda.OutOfMemoryError as e:
            torch.cuda.empty_cache()
            return RetryableFailure(f"CUDA out of memory: {e}")
        except Exception as e:
            logger.error(f"Error during translation of text '{text[:50]}...': {e}", exc_info=True)
            return FatalFailure(f"Hugging Face translation failed: {e}")

        logger.debug(f"Translation result: '{translated[0][:50]}...'")
        return Success({"text": "\n".join(translated)})
