"""
Slice Analysis Scheduler
========================

Bounded-concurrency fan-out of one analysis run.

- Images are split into consecutive batches of ANALYSIS_BATCH_SIZE
- A batch runs concurrently; the next batch starts only after it settles
- Any failed image aborts the whole run (no partial findings)
- Results of a batch are merged in image order, so confidence ties go to
  the earliest image regardless of which call finished first

Progress: 5 at setup, 10..90 after each batch, 100 on success.
"""

import asyncio
import logging
import math
import uuid
from typing import Callable, List, Optional, Sequence

from .config import Settings, get_settings
from .dedup import deduplicate_findings
from .errors import AnalysisAborted, ConfigurationError, ValidationError
from .schemas import AnalysisMetadata, AnalysisResult, RawFinding, ScanImage
from .slice_analyzer import SliceAnalysis, SliceAnalyzer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

PROGRESS_SETUP = 5
PROGRESS_BATCH_START = 10
PROGRESS_BATCH_SPAN = 80
PROGRESS_DONE = 100


def batch_progress(processed: int, total: int) -> int:
    """Progress after `processed` of `total` images (halves round up)"""
    return PROGRESS_BATCH_START + math.floor(PROGRESS_BATCH_SPAN * processed / total + 0.5)


def split_batches(images: Sequence[ScanImage], size: int) -> List[List[ScanImage]]:
    size = max(1, size)
    return [list(images[i:i + size]) for i in range(0, len(images), size)]


class SliceAnalysisScheduler:
    """
    Runs one analysis over an ordered list of images.

    Usage:
        scheduler = SliceAnalysisScheduler(SliceAnalyzer())
        result = await scheduler.run_analysis(images, "Chronic pelvic pain")
    """

    def __init__(
        self,
        analyzer: Optional[SliceAnalyzer] = None,
        settings: Optional[Settings] = None,
        batch_size: Optional[int] = None
    ):
        self.settings = settings or get_settings()
        self.analyzer = analyzer or SliceAnalyzer(settings=self.settings)
        self.batch_size = max(1, batch_size or self.settings.analysis_batch_size)

    def check_preconditions(self, images: Sequence[ScanImage]) -> None:
        """Raise before any call is dispatched"""
        if not self.analyzer.is_configured():
            raise ConfigurationError(
                "Inference backend is not configured: set the API key for LLM_MODE="
                f"{self.settings.llm_mode.value}"
            )
        if not images:
            raise ValidationError("At least one image is required for analysis")

        ids = [image.id for image in images]
        if len(set(ids)) != len(ids):
            raise ValidationError("Image ids must be unique within one analysis")

    async def run_analysis(
        self,
        images: Sequence[ScanImage],
        clinical_context: str,
        on_progress: Optional[ProgressCallback] = None
    ) -> AnalysisResult:
        """
        Analyze every image and aggregate the findings.

        Raises:
            ConfigurationError: no credential for the inference backend
            ValidationError: no images / duplicate image ids
            AnalysisAborted: any image call failed or returned bad data
        """
        self.check_preconditions(images)

        def report(value: int) -> None:
            if on_progress is not None:
                on_progress(value)

        total = len(images)
        run_id = uuid.uuid4().hex[:8]
        logger.info(f"Analysis {run_id}: {total} images, batch size {self.batch_size}")
        report(PROGRESS_SETUP)

        raw_findings: List[RawFinding] = []
        valid_count = 0
        processed = 0
        last_description = "Unknown"

        for batch in split_batches(images, self.batch_size):
            analyses = await self._run_batch(batch, clinical_context)

            for analysis in analyses:
                last_description = analysis.modality_description
                if analysis.is_valid_modality:
                    valid_count += 1
                    raw_findings.extend(analysis.findings)
                else:
                    logger.info(f"Image {analysis.image_id} is not a {self.settings.expected_modality} scan")

            processed += len(batch)
            report(batch_progress(processed, total))

        if valid_count == 0:
            logger.info(f"Analysis {run_id}: no valid {self.settings.expected_modality} images")
            result = AnalysisResult(
                metadata=AnalysisMetadata(
                    is_valid_modality=False,
                    modality_description=last_description,
                ),
                findings=[],
            )
            report(PROGRESS_DONE)
            return result

        findings = deduplicate_findings(
            raw_findings,
            image_order=[image.id for image in images],
            run_id=run_id,
        )
        result = AnalysisResult(
            metadata=AnalysisMetadata(
                is_valid_modality=True,
                modality_description=f"Multi-image {self.settings.expected_modality} series ({total} images)",
            ),
            findings=findings,
        )

        logger.info(
            f"Analysis {run_id} complete: {valid_count}/{total} valid images, "
            f"{len(raw_findings)} raw -> {len(findings)} findings"
        )
        report(PROGRESS_DONE)
        return result

    async def _run_batch(self, batch: List[ScanImage], clinical_context: str) -> List[SliceAnalysis]:
        """Analyze one batch concurrently; wait for all, then fail on the first error in image order"""
        outcomes = await asyncio.gather(
            *(self.analyzer.analyze(image, clinical_context) for image in batch),
            return_exceptions=True,
        )

        for image, outcome in zip(batch, outcomes):
            if not isinstance(outcome, BaseException):
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(f"Analysis aborted at image {image.id}: {outcome}")
            raise AnalysisAborted(str(outcome) or outcome.__class__.__name__, image_id=image.id) from outcome

        return list(outcomes)
