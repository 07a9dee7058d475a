"""Orchestrates the subtitle generation pipeline for one media file."""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .audio_extractor import AudioExtractor
from .exceptions import SubAlignError
from .models import Request, Span
from .orchestrator import BatchResult, Orchestrator, RequestBackend
from .request_cache import RequestCache
from .segmenter import Segmenter, SegmenterConfig, slice_pcm
from .subtitle_formatter import SRTFormatter, SubtitleFormatter
from .synchronizer import merge_expected_text, sync_timelines
from .timeline import Cue, DegeneratePolicy, Timeline
from .utils import ensure_dir_exists, seconds_to_ms

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    """What one generate() call produced, including partial failures."""
    foreign_path: Optional[str] = None
    native_path: Optional[str] = None
    bilingual_path: Optional[str] = None
    transcription: Optional[BatchResult] = None
    translation: Optional[BatchResult] = None
    forced_cuts: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        batches = [b for b in (self.transcription, self.translation) if b is not None]
        return all(b.succeeded for b in batches)


def build_recognized_timeline(spans: Sequence[Span], payloads: Dict[int, dict]) -> Timeline:
    """
    Turns per-span transcription payloads into one timeline of absolute times.

    Segment times are relative to their span and are clamped into it, so a
    backend that overshoots the end of a span cannot push text into the next.
    Spans without a payload contribute nothing.
    """
    cues: List[Cue] = []
    for span in sorted(spans, key=lambda s: s.sequence_index):
        payload = payloads.get(span.sequence_index)
        if not payload:
            continue
        span_start = seconds_to_ms(span.start)
        span_end = seconds_to_ms(span.end)
        for segment in payload.get("segments", []):
            text = str(segment.get("text", "")).strip()
            if not text:
                continue
            start = min(max(span_start + seconds_to_ms(segment.get("start", 0.0)), span_start), span_end)
            end = min(max(span_start + seconds_to_ms(segment.get("end", 0.0)), start), span_end)
            cues.append(Cue.from_text(start, end, text))
    return Timeline(cues)


def read_expected_text(path: str) -> List[str]:
    """Reads a plain-text transcript, one subtitle line per non-blank line."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Expected-text file not found: {path}")
    with open(path, 'r', encoding='utf-8-sig') as f:
        return [line.rstrip("\n") for line in f if line.strip()]


class SubtitleGenerator:
    """
    Manages the end-to-end process of generating subtitles for a media file.
    """

    def __init__(
        self,
        config: dict,
        audio_extractor: AudioExtractor,
        vad,
        transcriber: RequestBackend,
        cache: RequestCache,
        translator: Optional[RequestBackend] = None,
        formatter: Optional[SubtitleFormatter] = None,
    ):
        """
        Initializes the SubtitleGenerator.

        Args:
            config: A dictionary containing configuration settings.
            audio_extractor: Decodes media to PCM and probes audio tracks.
            vad: Object with classify(pcm, sample_rate) and frame_samples(sample_rate).
            transcriber: Transcription backend.
            cache: The request cache shared by every batch this generator runs.
            translator: Optional translation backend, required when config['translate'] is set.
            formatter: Subtitle writer; SRT by default.
        """
        self.config = config
        self.audio_extractor = audio_extractor
        self.vad = vad
        self.transcriber = transcriber
        self.translator = translator
        self.cache = cache
        self.formatter = formatter or SRTFormatter()
        self.segmenter = Segmenter(SegmenterConfig.from_config(config))
        self.sample_rate = config.get('sample_rate', 16000)
        self.policy = DegeneratePolicy.from_config(config.get('degenerate_policy', 'expand'))
        self.min_cue_ms = config.get('min_cue_duration_ms', 500)
        self.source_language = config.get('source_language', 'en')
        self.target_language = config.get('target_language', 'es')
        if config.get('translate') and translator is None:
            raise SubAlignError("Translation is enabled in the configuration but no translator was provided.")

    def _output_path(self, media_path: str, output_dir: str, suffix: str) -> str:
        base_name = os.path.splitext(os.path.basename(media_path))[0]
        return os.path.join(output_dir, f"{base_name}.{suffix}.{self.formatter.extension}")

    def transcription_requests(self, media_path: str):
        """
        Decodes, segments and packages a media file's audio as transcription requests.

        Returns:
            (spans, requests) in sequence order.
        """
        stream_index = self.audio_extractor.audio_track_for(media_path, self.source_language)
        pcm = self.audio_extractor.decode_audio(media_path, stream_index, self.sample_rate)
        flags = self.vad.classify(pcm, self.sample_rate)
        plan = self.segmenter.plan_pcm(pcm, self.sample_rate, flags, self.vad.frame_samples(self.sample_rate))
        spans = plan.spans()
        params = self.transcriber.request_params(self.sample_rate, self.source_language)
        requests = [
            Request(span.sequence_index, slice_pcm(pcm, span), params, span)
            for span in spans
        ]
        logger.info(f"Segmented audio into {len(spans)} span(s) ({plan.forced_cuts} forced cut(s)).")
        return spans, requests

    def translate_timeline(self, timeline: Timeline, report: GenerationReport) -> Timeline:
        """Translates every cue; cues whose translation failed keep their original text."""
        params = self.translator.request_params(self.source_language, self.target_language)
        cues = list(timeline)
        requests = [Request(i, cue.text.encode('utf-8'), params) for i, cue in enumerate(cues)]
        result = Orchestrator.from_config(self.translator, self.cache, self.config).run(requests)
        report.translation = result
        payloads = result.successful_payloads
        translated = []
        for i, cue in enumerate(cues):
            if i in payloads:
                translated.append(Cue.from_text(cue.start_ms, cue.end_ms, payloads[i].get("text", "")))
            else:
                translated.append(cue)
        if not result.succeeded:
            message = f"{len(result.failed_indices)} cue(s) kept untranslated: {result.failed_indices}"
            logger.warning(message)
            report.warnings.append(message)
        return Timeline(translated).normalize(self.policy, self.min_cue_ms)

    def generate(
        self,
        media_path: str,
        output_dir: str,
        expected_text_path: Optional[str] = None,
        native_subtitle_path: Optional[str] = None,
    ) -> GenerationReport:
        """
        Executes the full subtitle generation pipeline for a single file.

        Transcription failures on individual spans do not stop the run: the
        subtitles are written from the spans that succeeded and the report
        lists the rest. Running again with the same cache only pays for the
        spans that failed.

        Args:
            media_path: Path to the input video/audio file.
            output_dir: Directory to save the subtitle files.
            expected_text_path: Optional known transcript to time against the audio.
            native_subtitle_path: Optional subtitle file in the native language
                to combine with the generated track into a bilingual file.

        Returns:
            A GenerationReport.

        Raises:
            SubAlignError: For configuration or whole-file processing errors.
            FileNotFoundError: If an input file is not found.
        """
        start_time = time.time()
        logger.info(f"--- Starting SubAlign process for: {media_path} ---")
        ensure_dir_exists(output_dir)
        report = GenerationReport()

        try:
            logger.info("Step 1: Decoding and segmenting audio...")
            spans, requests = self.transcription_requests(media_path)
            report.forced_cuts = sum(1 for s in spans if s.forced_cut)

            logger.info("Step 2: Transcribing spans...")
            orchestrator = Orchestrator.from_config(self.transcriber, self.cache, self.config)
            report.transcription = orchestrator.run(requests)
            if not report.transcription.succeeded:
                message = (
                    f"{len(report.transcription.failed_indices)} span(s) failed transcription: "
                    f"{report.transcription.failed_indices}; rerun to retry only those spans."
                )
                logger.warning(message)
                report.warnings.append(message)

            recognized = build_recognized_timeline(spans, report.transcription.successful_payloads)
            if expected_text_path:
                logger.info("Step 3: Aligning expected text against recognized speech...")
                foreign = merge_expected_text(read_expected_text(expected_text_path), recognized, self.min_cue_ms)
            else:
                foreign = recognized.normalize(self.policy, self.min_cue_ms)
            if not foreign:
                raise SubAlignError("No speech was transcribed; nothing to write.")

            report.foreign_path = self._output_path(media_path, output_dir, self.source_language)
            self.formatter.write(foreign, report.foreign_path)

            if self.config.get('translate'):
                logger.info(f"Step 4: Translating cues ({self.source_language}->{self.target_language})...")
                native = self.translate_timeline(foreign, report)
                report.native_path = self._output_path(media_path, output_dir, self.target_language)
                self.formatter.write(native, report.native_path)

            if native_subtitle_path:
                logger.info("Step 5: Synchronizing with the native subtitle track...")
                native_track = self.formatter.read(native_subtitle_path)
                bilingual = sync_timelines(foreign, native_track, self.min_cue_ms)
                report.bilingual_path = self._output_path(media_path, output_dir, "bilingual")
                self.formatter.write(bilingual, report.bilingual_path)

            elapsed = time.time() - start_time
            status = "completed" if report.complete else "completed with failures"
            logger.info(f"--- SubAlign process {status} in {elapsed:.2f} seconds ---")
            return report

        except (SubAlignError, FileNotFoundError) as e:
            logger.error(f"SubAlign process failed: {e}", exc_info=False)
            raise
        except Exception as e:
            logger.critical(f"An unexpected critical error occurred during subtitle generation: {e}", exc_info=True)
            raise SubAlignError(f"An unexpected critical error occurred: {e}") from e
