"""
Pydantic Schemas for Scan Review Service
========================================

Stable schemas for the case record, findings, the inference contract and
the HTTP surface. Everything here round-trips through JSON, which is how the
whole application state is persisted.

Ordering:
- Confidence is totally ordered Low < Medium < High (see Confidence.rank)
"""

from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime


# =============================================================================
# ENUMS
# =============================================================================

class Confidence(str, Enum):
    """
    Likelihood/confidence level of a finding.

    Values are the exact strings the inference service must return.
    """
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def outranks(self, other: "Confidence") -> bool:
        """True if strictly more confident than `other`"""
        return self.rank > other.rank


_CONFIDENCE_RANK = {
    Confidence.LOW: 1,
    Confidence.MEDIUM: 2,
    Confidence.HIGH: 3,
}


def max_confidence(levels: List[Confidence]) -> Optional[Confidence]:
    """Highest level in `levels` (None for an empty list)"""
    if not levels:
        return None
    return max(levels, key=lambda c: c.rank)


class ReviewStatus(str, Enum):
    """Primary reviewer's decision on a proposed finding"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CaseStatus(str, Enum):
    """Case review lifecycle status"""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    REVIEWED = "reviewed"
    FINALIZED = "finalized"


class Persona(str, Enum):
    """
    Acting role.

    - PRIMARY: reporting radiologist, owns the report
    - PEER: second-opinion reviewer
    - PATIENT: read-only, sees the finalized report only
    """
    PRIMARY = "primary"
    PEER = "peer"
    PATIENT = "patient"


class LLMMode(str, Enum):
    """Inference backend"""
    NONE = "none"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"


# =============================================================================
# FINDINGS
# =============================================================================

class Coordinates(BaseModel):
    """Overlay position on the best image (set downstream, never inferred)"""
    x: float
    y: float


class RawFinding(BaseModel):
    """One finding reported for one image by one inference call"""
    title: str
    description: str
    confidence: Confidence
    region: str
    source_image_id: str


class CanonicalFinding(BaseModel):
    """A finding deduplicated across every image it was observed in"""
    id: str = Field(..., description="Unique within one analysis run")
    region: str = Field(..., description="Anatomical region, e.g. 'Left Ovary'")
    title: str = Field(..., description="Short medical term, e.g. 'Endometrioma'")
    likelihood: Confidence = Field(..., description="Max confidence over merged raw findings")
    description: str = Field(..., description="Display text incl. image provenance")
    coordinates: Optional[Coordinates] = None
    review_status: ReviewStatus = ReviewStatus.PENDING
    source_image_ids: List[str] = Field(..., min_length=1)
    best_image_id: str


class AnalysisMetadata(BaseModel):
    """Outcome of the modality check for the whole batch"""
    is_valid_modality: bool
    modality_description: str
    generated_at: datetime = Field(default_factory=datetime.utcnow)


class AnalysisResult(BaseModel):
    """Successful output of one analysis run"""
    metadata: AnalysisMetadata
    findings: List[CanonicalFinding] = Field(default_factory=list)


# =============================================================================
# INFERENCE CONTRACT
# =============================================================================

class SliceFinding(BaseModel):
    """Finding as returned by the inference service"""
    title: str
    confidence: Confidence
    description: str
    region: str


class SliceInferenceResult(BaseModel):
    """Structured JSON the inference service must return for one image"""
    is_valid_modality: bool
    modality_description: str
    findings: List[SliceFinding] = Field(default_factory=list)


# =============================================================================
# IMAGES
# =============================================================================

class ImageRef(BaseModel):
    """Persisted view of an uploaded image (no pixel data)"""
    id: str
    label: str = ""
    mime_type: str = "image/png"


class ScanImage(BaseModel):
    """Uploaded image with bytes, kept in memory for one analysis run"""
    id: str
    data: bytes
    mime_type: str = "image/png"
    label: str = ""

    def ref(self) -> ImageRef:
        return ImageRef(id=self.id, label=self.label, mime_type=self.mime_type)


# =============================================================================
# CASE RECORD & APPLICATION STATE
# =============================================================================

class CaseRecord(BaseModel):
    """The single live case"""
    id: str
    patient_ref: str
    case_sequence: str = "001"
    clinical_context: str = "NA"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    status: CaseStatus = CaseStatus.DRAFT
    review_request_note: Optional[str] = None
    reviewer_note: Optional[str] = None
    assigned_reviewer: Optional[str] = None
    final_report_text: str = ""
    analysis_metadata: Optional[AnalysisMetadata] = None


class AppState(BaseModel):
    """Everything the persistence boundary loads and saves in one piece"""
    case: Optional[CaseRecord] = None
    findings: List[CanonicalFinding] = Field(default_factory=list)
    images: List[ImageRef] = Field(default_factory=list)
    current_persona: Persona = Persona.PRIMARY


# =============================================================================
# API REQUEST / RESPONSE MODELS
# =============================================================================

class StartCaseRequest(BaseModel):
    """Request to start a new case (clears the previous one)"""
    patient_ref: Optional[str] = Field(None, description="Anonymous patient reference; generated when omitted")
    clinical_context: Optional[str] = Field(None, description="Clinical history / indication")

    class Config:
        json_schema_extra = {
            "example": {
                "patient_ref": "ANON-2025-4821",
                "clinical_context": "Chronic pelvic pain, dysmenorrhea"
            }
        }


class ReportUpdateRequest(BaseModel):
    """Save-draft of the report text"""
    report_text: str


class ReviewNotesRequest(BaseModel):
    """Save-draft of the peer reviewer's notes"""
    notes: str


class ReviewRequestRequest(BaseModel):
    """Primary asks a peer for a second opinion"""
    reviewer: str = Field(..., description="Assigned peer reviewer")
    note: str = Field("", description="Request note for the reviewer")


class SubmitReviewRequest(BaseModel):
    """Peer returns the case with second-opinion notes"""
    notes: str


class CaseStateResponse(BaseModel):
    """Full view of the active case for the acting persona"""
    case: Optional[CaseRecord] = None
    findings: List[CanonicalFinding] = Field(default_factory=list)
    images: List[ImageRef] = Field(default_factory=list)
    persona: Persona
    report_editable: bool = False
    review_notes_editable: bool = False
    patient_view_available: bool = False


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    llm_mode: LLMMode = Field(..., description="Current inference backend")
    timestamp: datetime = Field(..., description="Current timestamp")
