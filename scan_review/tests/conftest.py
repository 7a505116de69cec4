"""
Shared fixtures: test settings, a temp SQLite store and a scripted analyzer
that stands in for the inference service.
"""

import asyncio
from typing import Dict, List, Optional, Union

import pytest

from scan_review.config import Settings
from scan_review.db.session import reset_engines
from scan_review.errors import InferenceError
from scan_review.schemas import Confidence, LLMMode, RawFinding, ScanImage
from scan_review.slice_analyzer import SliceAnalysis
from scan_review.store import StateStore


class ScriptedAnalyzer:
    """
    Returns a pre-set SliceAnalysis (or raises a pre-set error) per image id.

    Tracks call order and the peak number of concurrent calls.
    """

    def __init__(
        self,
        outcomes: Dict[str, Union[SliceAnalysis, Exception]],
        configured: bool = True,
        delays: Optional[Dict[str, float]] = None
    ):
        self.outcomes = outcomes
        self.configured = configured
        self.delays = delays or {}
        self.calls: List[str] = []
        self.contexts: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def is_configured(self) -> bool:
        return self.configured

    async def close(self):
        self.closed = True

    async def analyze(self, image: ScanImage, clinical_context: str) -> SliceAnalysis:
        self.calls.append(image.id)
        self.contexts.append(clinical_context)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(image.id, 0))
            outcome = self.outcomes[image.id]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


def valid_slice(image_id: str, *findings) -> SliceAnalysis:
    """Valid-modality analysis; findings given as (title, region, confidence)"""
    return SliceAnalysis(
        image_id=image_id,
        is_valid_modality=True,
        modality_description="Sagittal T2 pelvic MRI",
        findings=[
            RawFinding(
                title=title,
                description=f"{title} seen in {region.lower()}.",
                confidence=Confidence(confidence),
                region=region,
                source_image_id=image_id,
            )
            for title, region, confidence in findings
        ],
    )


def invalid_slice(image_id: str, description: str = "Chest X-ray") -> SliceAnalysis:
    return SliceAnalysis(
        image_id=image_id,
        is_valid_modality=False,
        modality_description=description,
    )


def make_images(count: int) -> List[ScanImage]:
    return [
        ScanImage(id=f"img-{i}", data=b"\x89PNG fake", mime_type="image/png", label=f"T2 Sagittal Slice {i}")
        for i in range(1, count + 1)
    ]


@pytest.fixture
def settings():
    return Settings(
        llm_mode=LLMMode.GEMINI,
        gemini_api_key="test-key",
        analysis_batch_size=3,
        require_peer_review=False,
        state_namespace="test_state",
    )


@pytest.fixture
def store(tmp_path):
    yield StateStore(namespace="test_state", database_url=f"sqlite:///{tmp_path / 'state.db'}")
    reset_engines()


@pytest.fixture
def failure():
    """Factory for the error a failing inference call raises"""
    return lambda message="HTTP 500: upstream error": InferenceError(message)


@pytest.fixture(name="make_images")
def make_images_fixture():
    return make_images


@pytest.fixture(name="valid_slice")
def valid_slice_fixture():
    return valid_slice


@pytest.fixture(name="invalid_slice")
def invalid_slice_fixture():
    return invalid_slice


@pytest.fixture(name="scripted_analyzer")
def scripted_analyzer_fixture():
    return ScriptedAnalyzer
