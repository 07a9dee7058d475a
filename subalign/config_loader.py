"""Handles loading configuration from YAML files."""

import copy
import yaml
import os
import logging
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    # Logging
    'log_dir': 'logs',
    'log_file': 'subalign.log',
    # Request cache
    'cache_dir': '.subalign_cache',
    'cache_max_entries': 50000,
    'cache_max_age_days': 90,
    'cache_evict_interval_seconds': 300,
    # Orchestrator
    'workers': 4,
    'max_attempts': 4,
    'backoff_base_seconds': 1.0,
    'backoff_max_seconds': 30.0,
    'request_timeout_seconds': 600.0,
    'show_progress': True,
    # Audio / segmentation
    'ffmpeg_path': None,
    'sample_rate': 16000,
    'vad_frame_ms': 30,
    'vad_aggressiveness': 2,
    'min_silence_ms': 300,
    'min_span_seconds': 5.0,
    'max_span_seconds': 30.0,
    'lookback_seconds': 5.0,
    # Timeline
    'degenerate_policy': 'expand',
    'min_cue_duration_ms': 500,
    # Backends
    'device': 'cuda',
    'whisper_model': 'medium',
    'whisper_fp16': True,
    'source_language': 'en',
    'target_language': 'es',
    'translation_model': None,
    'translate': False,
}

_POSITIVE_INTS = ('workers', 'max_attempts', 'sample_rate', 'vad_frame_ms', 'cache_max_entries')
_NON_NEGATIVE_NUMBERS = (
    'backoff_base_seconds', 'backoff_max_seconds', 'request_timeout_seconds',
    'min_silence_ms', 'min_span_seconds', 'max_span_seconds', 'lookback_seconds',
    'min_cue_duration_ms', 'cache_max_age_days', 'cache_evict_interval_seconds',
)


def validate_config(config: dict) -> dict:
    """
    Checks value types and ranges of a merged configuration dictionary.

    Args:
        config: Configuration merged over DEFAULT_CONFIG.

    Returns:
        The same dictionary, for chaining.

    Raises:
        ConfigurationError: If any value is of the wrong type or out of range.
    """
    for key in _POSITIVE_INTS:
        value = config.get(key)
        if value is None and key == 'cache_max_entries':
            continue
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigurationError(f"'{key}' must be a positive integer, got {value!r}")
    for key in _NON_NEGATIVE_NUMBERS:
        value = config.get(key)
        if value is None and key == 'cache_max_age_days':
            continue
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ConfigurationError(f"'{key}' must be a non-negative number, got {value!r}")
    if config['min_span_seconds'] > config['max_span_seconds']:
        raise ConfigurationError("'min_span_seconds' cannot exceed 'max_span_seconds'.")
    if config['max_span_seconds'] <= 0:
        raise ConfigurationError("'max_span_seconds' must be greater than zero.")
    if config['min_cue_duration_ms'] <= 0:
        raise ConfigurationError("'min_cue_duration_ms' must be greater than zero.")
    if str(config.get('degenerate_policy')).lower() not in ('expand', 'drop'):
        raise ConfigurationError(
            f"'degenerate_policy' must be 'expand' or 'drop', got {config.get('degenerate_policy')!r}"
        )
    if config.get('vad_aggressiveness') not in (0, 1, 2, 3):
        raise ConfigurationError("'vad_aggressiveness' must be one of 0, 1, 2, 3.")
    if config['vad_frame_ms'] not in (10, 20, 30):
        raise ConfigurationError("'vad_frame_ms' must be 10, 20 or 30.")
    return config


class ConfigLoader:
    """Loads configuration settings from a YAML file."""

    def load_config(self, config_path: str) -> dict:
        """
        Loads configuration from the specified YAML file path.

        Values from the file override DEFAULT_CONFIG; keys missing from the
        file keep their defaults.

        Args:
            config_path: The path to the YAML configuration file.

        Returns:
            A dictionary containing the merged, validated configuration.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            ConfigurationError: If the file cannot be parsed as YAML, if there
                              are other reading errors, or if a value is invalid.
        """
        logger.info(f"Attempting to load configuration from: {config_path}")
        if not os.path.exists(config_path):
            logger.error(f"Configuration file not found at path: {config_path}")
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        if not os.path.isfile(config_path):
            logger.error(f"Configuration path is not a file: {config_path}")
            raise ConfigurationError(f"Configuration path is not a file: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Invalid YAML format in {config_path}: {e}") from e
        except OSError as e:
            logger.error(f"Error reading configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Could not read configuration file {config_path}: {e}") from e

        if loaded is None:
            loaded = {} # Empty file means "all defaults"
        if not isinstance(loaded, dict):
            logger.error(f"Configuration file {config_path} did not load as a dictionary (root object).")
            raise ConfigurationError(f"Invalid YAML structure in {config_path}. Root must be a mapping (dictionary).")

        unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys in {config_path}: {', '.join(unknown)}")

        config = copy.deepcopy(DEFAULT_CONFIG)
        config.update({k: v for k, v in loaded.items() if k in DEFAULT_CONFIG})
        validate_config(config)
        logger.info(f"Configuration loaded successfully from {config_path}")
        return config
