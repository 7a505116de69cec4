"""
Slice Analyzer
==============

One image in, one validated inference result out.

Role:
- Build the per-image prompt (sequence label + clinical context)
- Call the vision LLM
- Validate the JSON against SliceInferenceResult

Any transport failure, empty/non-JSON content or schema violation raises
InferenceError; the scheduler decides what that means for the run.
"""

import logging
from typing import List, Optional
from dataclasses import dataclass, field

from pydantic import ValidationError as PydanticValidationError

from .config import Settings, get_settings
from .errors import InferenceError
from .llm_client import VisionLLMClient, parse_json_robust, safe_log_content
from .schemas import ScanImage, SliceInferenceResult, RawFinding

logger = logging.getLogger(__name__)


SLICE_PROMPT_TEMPLATE = """You are an expert radiologist specializing in {specialty}.
Analyze this image (Sequence: {label}) and the following clinical context: "{context}".

Step 1: Verify whether this image is a {modality} scan.
Step 2: If it IS a {modality} scan, identify any potential abnormalities relevant to {specialty}.
Step 3: If it is NOT a {modality} scan, describe what the image shows.

Return valid JSON only, with exactly this structure:
{{
  "is_valid_modality": true | false,
  "modality_description": "Short description of the image content",
  "findings": [
    {{
      "title": "Short medical term (e.g., Ovarian Cyst)",
      "confidence": "High" | "Medium" | "Low",
      "description": "One sentence clinical observation.",
      "region": "Anatomical region (e.g., Left Ovary)"
    }}
  ]
}}

If there are no abnormalities, return an empty "findings" list."""

NO_HISTORY = "No history provided"


def normalize_clinical_context(context: Optional[str]) -> str:
    """Blank context is stored as "NA" """
    context = (context or "").strip()
    return context or "NA"


def build_slice_prompt(
    label: str,
    clinical_context: str,
    modality: str,
    specialty: str
) -> str:
    context = normalize_clinical_context(clinical_context)
    return SLICE_PROMPT_TEMPLATE.format(
        specialty=specialty,
        label=label or "unlabelled",
        context=NO_HISTORY if context == "NA" else context,
        modality=modality,
    )


@dataclass
class SliceAnalysis:
    """Validated outcome for one image"""
    image_id: str
    is_valid_modality: bool
    modality_description: str
    findings: List[RawFinding] = field(default_factory=list)


@dataclass
class SliceAnalyzerStats:
    """Statistics for analyzer calls"""
    calls: int = 0
    successful: int = 0
    failed: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    findings_found: int = 0


class SliceAnalyzer:
    """
    Per-image inference call with strict response validation.
    """

    def __init__(
        self,
        client: Optional[VisionLLMClient] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.client = client or VisionLLMClient(self.settings)
        self.stats = SliceAnalyzerStats()

    def is_configured(self) -> bool:
        return self.client.is_configured()

    async def close(self):
        """Close the client"""
        await self.client.close()

    async def analyze(self, image: ScanImage, clinical_context: str) -> SliceAnalysis:
        """
        Analyze one image.

        Raises:
            InferenceError: call failed or response is not valid JSON of the expected shape
        """
        prompt = build_slice_prompt(
            label=image.label,
            clinical_context=clinical_context,
            modality=self.settings.expected_modality,
            specialty=self.settings.specialty_focus,
        )

        self.stats.calls += 1
        result = await self.client.generate(prompt, image.data, image.mime_type)

        if not result.success:
            self.stats.failed += 1
            raise InferenceError(f"Image {image.id}: {result.error or 'inference call failed'}")

        self.stats.total_input_tokens += result.input_tokens
        self.stats.total_output_tokens += result.output_tokens
        logger.debug(f"Slice {image.id} response: {safe_log_content(result.content)}")

        data, parse_ok, error_msg = parse_json_robust(result.content)
        if not parse_ok:
            self.stats.failed += 1
            logger.warning(f"Slice {image.id}: unparseable response ({error_msg})")
            raise InferenceError(f"Image {image.id}: unparseable response ({error_msg})")

        try:
            parsed = SliceInferenceResult.model_validate(data)
        except PydanticValidationError as e:
            self.stats.failed += 1
            logger.warning(f"Slice {image.id}: response failed schema validation ({e.error_count()} errors)")
            raise InferenceError(f"Image {image.id}: response does not match the expected schema") from e

        self.stats.successful += 1
        self.stats.findings_found += len(parsed.findings)

        return SliceAnalysis(
            image_id=image.id,
            is_valid_modality=parsed.is_valid_modality,
            modality_description=parsed.modality_description,
            findings=[
                RawFinding(
                    title=f.title,
                    description=f.description,
                    confidence=f.confidence,
                    region=f.region,
                    source_image_id=image.id,
                )
                for f in parsed.findings
            ],
        )
