#!/usr/bin/env python3
"""
SubAlign Batch Processing Entry Point

Generates subtitles for every video in a directory, smallest first, with
one set of loaded models and one shared request cache. Rerunning the same
command after an interruption or partial failure only pays for the spans
that did not succeed the first time.
"""

import argparse
import logging
import os
import sys
import time
from typing import List, Tuple

from tqdm import tqdm

from subalign.cli import EXIT_CRASH, EXIT_ERROR, EXIT_OK, EXIT_PARTIAL, build_cache, build_generator, load_configuration
from subalign.config_loader import validate_config
from subalign.exceptions import SubAlignError, ConfigurationError, FileSystemError
from subalign.request_cache import CacheEvictor
from subalign.utils import ensure_dir_exists

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".webm", ".m4a", ".mp3", ".wav")


def find_and_sort_videos(input_dir: str) -> List[Tuple[str, int]]:
    """
    Finds all media files in the input directory and sorts them by size.

    Args:
        input_dir: The directory to search for media files.

    Returns:
        A list of (filepath, filesize) tuples sorted by filesize, ascending.

    Raises:
        FileNotFoundError: If the input directory doesn't exist.
        ValueError: If the input path is not a directory.
    """
    if not os.path.exists(input_dir):
        raise FileNotFoundError(f"Input directory not found: {input_dir}")
    if not os.path.isdir(input_dir):
        raise ValueError(f"Input path is not a directory: {input_dir}")

    videos = []
    logger.info(f"Scanning directory for media files: {input_dir}")
    for filename in os.listdir(input_dir):
        if filename.lower().endswith(VIDEO_EXTENSIONS):
            filepath = os.path.join(input_dir, filename)
            try:
                if os.path.isfile(filepath):
                    videos.append((filepath, os.path.getsize(filepath)))
            except OSError as e:
                logger.warning(f"Could not access file {filepath}: {e}. Skipping.")

    videos.sort(key=lambda item: item[1])
    logger.info(f"Found {len(videos)} media files. Sorted by size (smallest first).")
    return videos


def run_batch_processing(argv=None) -> int:
    """Parses arguments, sets up, and runs the batch subtitle generation."""
    parser = argparse.ArgumentParser(
        description="SubAlign Batch: generate subtitles for every video in a directory.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("-i", "--input-dir", required=True, help="Directory containing the input videos.")
    parser.add_argument("-o", "--output-dir", default=None, help="Output directory (default: <input-dir>/Subs).")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to the configuration YAML file.")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level for console and file output."
    )
    parser.add_argument("--translate", action="store_true", help="Also translate cues to the target language.")
    parser.add_argument(
        "--device", default=None, choices=["cuda", "cpu"],
        help="Override the processing device (cuda or cpu) specified in config."
    )
    args = parser.parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        config = load_configuration(args.config, log_level, 'subalign_batch.log')
        if args.device:
            logger.info(f"Overriding device from config with CLI argument: {args.device}")
            config['device'] = args.device
        if args.translate:
            config['translate'] = True
        # One progress bar per file is enough; per-request bars would interleave
        config['show_progress'] = False
        validate_config(config)
    except (ConfigurationError, FileNotFoundError) as e:
        logger.critical(f"Failed to load configuration: {e}", exc_info=True)
        return EXIT_ERROR

    try:
        videos = [path for path, _ in find_and_sort_videos(args.input_dir)]
    except (FileNotFoundError, ValueError) as e:
        logger.critical(f"Input directory error: {e}")
        return EXIT_ERROR
    if not videos:
        logger.warning(f"No media files found in {args.input_dir}. Exiting.")
        return EXIT_OK

    output_dir = args.output_dir or os.path.join(args.input_dir, "Subs")
    try:
        ensure_dir_exists(output_dir)
    except FileSystemError as e:
        logger.critical(f"Could not create output directory: {e}")
        return EXIT_ERROR

    # Components are initialized once for the whole batch
    try:
        cache = build_cache(config)
        generator = build_generator(config, cache)
    except SubAlignError as e:
        logger.critical(f"Failed to initialize SubAlign components: {e}", exc_info=True)
        return EXIT_ERROR
    except Exception as e:
        logger.critical(f"An unexpected error occurred during component initialization: {e}", exc_info=True)
        return EXIT_CRASH

    total_files = len(videos)
    complete, partial, failed = 0, 0, 0
    batch_start_time = time.time()
    logger.info(f"--- Starting Batch Subtitle Generation for {total_files} files ---")

    with CacheEvictor(cache, config.get('cache_evict_interval_seconds', 300)):
        with tqdm(total=total_files, unit="video", desc="Starting Batch") as pbar:
            for video_path in videos:
                video_filename = os.path.basename(video_path)
                pbar.set_description(f"Processing: {video_filename[:30]}...")
                try:
                    report = generator.generate(video_path, output_dir)
                    if report.complete:
                        complete += 1
                    else:
                        partial += 1
                        logger.warning(f"{video_filename}: finished with failures; rerun to retry them.")
                except SubAlignError as e:
                    logger.error(f"SubAlign failed for '{video_filename}': {e}")
                    failed += 1
                except KeyboardInterrupt:
                    logger.warning("Batch interrupted by user (Ctrl+C). Completed requests are cached; rerun to resume.")
                    return EXIT_ERROR
                except Exception as e:
                    logger.error(f"An unexpected error occurred processing '{video_filename}': {e}", exc_info=True)
                    failed += 1
                finally:
                    pbar.update(1)

    logger.info("--- Batch Subtitle Generation Finished ---")
    logger.info(f"Total time: {time.time() - batch_start_time:.2f} seconds")
    logger.info(f"Complete: {complete}/{total_files}, partial: {partial}, failed: {failed}")

    if failed:
        return EXIT_ERROR
    if partial:
        return EXIT_PARTIAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(run_batch_processing())
