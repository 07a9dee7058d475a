"""Command-Line Interface handler for SubAlign."""

import argparse
import logging
import os
import sys

from .config_loader import ConfigLoader, DEFAULT_CONFIG, validate_config
from .log_setup import setup_logging
from .request_cache import CacheEvictor, RequestCache
from .subtitle_formatter import SRTFormatter
from .synchronizer import sync_timelines
from .exceptions import SubAlignError, ConfigurationError

logger = logging.getLogger(__name__) # Get logger for this module

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CRASH = 2
EXIT_PARTIAL = 3


def load_configuration(config_path: str, log_level: int, log_file: str) -> dict:
    """
    Sets up early logging, loads the config file and re-initializes logging from it.

    A missing config file at the default path means "use the defaults"; a
    missing file the user named explicitly is an error.
    """
    setup_logging(log_level=log_level, log_dir='logs', log_file='subalign_init.log')
    if config_path == 'config.yaml' and not os.path.exists(config_path):
        logger.info("No config.yaml found; using default configuration.")
        config = validate_config(dict(DEFAULT_CONFIG))
    else:
        config = ConfigLoader().load_config(config_path)
    setup_logging(log_level=log_level, log_dir=config.get('log_dir', 'logs'),
                  log_file=config.get('log_file', log_file))
    logger.info("Logging re-configured with settings from config file.")
    return config


def build_cache(config: dict) -> RequestCache:
    max_age_days = config.get('cache_max_age_days')
    return RequestCache(
        config['cache_dir'],
        max_entries=config.get('cache_max_entries'),
        max_age_seconds=max_age_days * 86400 if max_age_days else None,
    )


def build_generator(config: dict, cache: RequestCache):
    """Instantiates the heavy components (models, ffmpeg, VAD) once."""
    # Imported here so 'sync' and 'cache-evict' work without the ASR stack
    from .audio_extractor import AudioExtractor
    from .subtitle_generator import SubtitleGenerator
    from .transcriber import WhisperTranscriber
    from .vad import VoiceActivityDetector

    device = config.get('device', 'cuda')
    translator = None
    if config.get('translate'):
        from .translator import HuggingFaceTranslator
        translator = HuggingFaceTranslator(
            model_name=config.get('translation_model'),
            device=device,
            source_lang=config.get('source_language', 'en'),
            target_lang=config.get('target_language', 'es'),
        )
    return SubtitleGenerator(
        config=config,
        audio_extractor=AudioExtractor(ffmpeg_path=config.get('ffmpeg_path')),
        vad=VoiceActivityDetector(
            aggressiveness=config.get('vad_aggressiveness', 2),
            frame_ms=config.get('vad_frame_ms', 30),
        ),
        transcriber=WhisperTranscriber(
            model_name=config.get('whisper_model', 'medium'),
            device=device,
            fp16=config.get('whisper_fp16', True) if device == 'cuda' else False,
        ),
        cache=cache,
        translator=translator,
    )


class CLIHandler:
    """Parses arguments and dispatches SubAlign commands."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="subalign",
            description="SubAlign: generate, align and combine subtitle tracks.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter # Show defaults in help
        )
        parser.add_argument(
            "-c", "--config",
            default="config.yaml",
            help="Path to the configuration YAML file."
        )
        parser.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Set the logging level for console and file output."
        )
        parser.add_argument(
            "--cache-dir",
            default=None, # Default taken from config
            help="Override the request cache directory specified in config."
        )
        subparsers = parser.add_subparsers(dest="command", required=True)

        generate = subparsers.add_parser(
            "generate", help="Transcribe a video/audio file into subtitles.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        generate.add_argument("media", help="Path to the input video or audio file.")
        generate.add_argument("-o", "--output-dir", required=True, help="Directory for the generated subtitle files.")
        generate.add_argument("--expected-text", default=None, help="Plain-text transcript to time against the audio.")
        generate.add_argument("--native-subs", default=None, help="Native-language .srt to combine into a bilingual track.")
        generate.add_argument("--translate", action="store_true", help="Also translate cues to the target language.")
        generate.add_argument("--audio-lang", default=None, help="Override the source (audio) language in config.")
        generate.add_argument("--target-lang", default=None, help="Override the translation target language in config.")
        generate.add_argument("--workers", type=int, default=None, help="Override the worker pool size in config.")
        generate.add_argument(
            "--device", default=None, choices=["cuda", "cpu"],
            help="Override the processing device (cuda or cpu) specified in config."
        )

        sync = subparsers.add_parser(
            "sync", help="Combine a foreign and a native .srt into one bilingual .srt.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        sync.add_argument("foreign", help="Foreign-language subtitle file (its timing is kept).")
        sync.add_argument("native", help="Native-language subtitle file.")
        sync.add_argument("-o", "--output", required=True, help="Path of the bilingual .srt to write.")

        subparsers.add_parser("cache-evict", help="Evict expired and least-recently-used cache entries.")
        return parser

    def _apply_overrides(self, args, config: dict) -> None:
        overrides = {
            'cache_dir': args.cache_dir,
            'device': getattr(args, 'device', None),
            'workers': getattr(args, 'workers', None),
            'source_language': getattr(args, 'audio_lang', None),
            'target_language': getattr(args, 'target_lang', None),
        }
        for key, value in overrides.items():
            if value is not None:
                logger.info(f"Overriding {key} from config with CLI argument: {value}")
                config[key] = value
        if getattr(args, 'translate', False):
            config['translate'] = True
        validate_config(config)

    def _run_generate(self, args, config: dict) -> int:
        if not os.path.isfile(args.media):
            logger.critical(f"Input media file not found or is not a file: {args.media}")
            return EXIT_ERROR
        cache = build_cache(config)
        logger.info("Initializing SubAlign components...")
        generator = build_generator(config, cache)
        logger.info("Components initialized successfully.")
        with CacheEvictor(cache, config.get('cache_evict_interval_seconds', 300)):
            report = generator.generate(
                args.media, args.output_dir,
                expected_text_path=args.expected_text,
                native_subtitle_path=args.native_subs,
            )
        for path in (report.foreign_path, report.native_path, report.bilingual_path):
            if path:
                print(f"  - {path}")
        if not report.complete:
            for warning in report.warnings:
                logger.warning(warning)
            return EXIT_PARTIAL
        return EXIT_OK

    def _run_sync(self, args, config: dict) -> int:
        formatter = SRTFormatter()
        foreign = formatter.read(args.foreign)
        native = formatter.read(args.native)
        bilingual = sync_timelines(foreign, native, config.get('min_cue_duration_ms', 500))
        formatter.write(bilingual, args.output)
        logger.info(f"Wrote {len(bilingual)} bilingual cues to {args.output}")
        return EXIT_OK

    def _run_cache_evict(self, args, config: dict) -> int:
        cache = build_cache(config)
        removed = cache.evict()
        logger.info(f"Cache eviction removed {removed} entries; {len(cache)} remain.")
        return EXIT_OK

    def run(self, argv=None) -> int:
        """Parses arguments, sets up logging, loads config, and runs the chosen command."""
        args = self.parser.parse_args(argv)
        log_level = getattr(logging, args.log_level.upper(), logging.INFO)

        try:
            config = load_configuration(args.config, log_level, 'subalign.log')
            self._apply_overrides(args, config)
        except (ConfigurationError, FileNotFoundError) as e:
            logger.critical(f"Failed to load configuration from {args.config}: {e}", exc_info=True)
            return EXIT_ERROR

        handlers = {
            "generate": self._run_generate,
            "sync": self._run_sync,
            "cache-evict": self._run_cache_evict,
        }
        try:
            return handlers[args.command](args, config)
        except (SubAlignError, FileNotFoundError) as e:
            # Errors originating from our application logic or missing inputs
            logger.error(f"A SubAlign error occurred: {e}")
            return EXIT_ERROR
        except KeyboardInterrupt:
            logger.warning("Process interrupted by user (Ctrl+C). Completed requests are cached; rerun to resume.")
            return EXIT_ERROR
        except Exception as e:
            logger.critical(f"An unexpected critical error occurred at the top level: {e}", exc_info=True)
            return EXIT_CRASH


def main(argv=None) -> None:
    sys.exit(CLIHandler().run(argv))
