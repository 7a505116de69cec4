"""
Case Session
============

The explicit context object for the one active case. Holds the application
state, runs analyses and workflow actions against it, and persists the whole
state after every change.

Every operation either applies completely and saves, or raises and leaves
the state exactly as it was:
- ValidationError: missing input (no active case, no images, empty notes)
- ConfigurationError: inference backend not configured
- AnalysisAborted: an image call failed; prior analysis is kept
- WorkflowGuardViolation: wrong persona or wrong status
"""

import logging
import random
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from .config import Settings, get_settings
from .errors import ValidationError, WorkflowGuardViolation
from .scheduler import ProgressCallback, SliceAnalysisScheduler
from .schemas import (
    AppState, CanonicalFinding, CaseRecord, CaseStateResponse, CaseStatus, Persona, ScanImage
)
from .slice_analyzer import normalize_clinical_context
from .store import StateStore
from .workflow import CaseWorkflowStateMachine, build_report_template

logger = logging.getLogger(__name__)


def generate_patient_ref(year: Optional[int] = None) -> str:
    """Anonymous patient reference, e.g. ANON-2025-4821"""
    year = year or datetime.utcnow().year
    return f"ANON-{year}-{random.randint(1000, 9999)}"


def _status_only(case: CaseRecord) -> CaseRecord:
    """Case with report, notes, reviewer and analysis blanked out"""
    return case.model_copy(update={
        "final_report_text": "",
        "review_request_note": None,
        "reviewer_note": None,
        "assigned_reviewer": None,
        "analysis_metadata": None,
    })


class CaseSession:
    """
    Workflow-facing API over the single live case.

    Usage:
        session = CaseSession(StateStore())
        session.start_case(clinical_context="Chronic pelvic pain")
        await session.run_analysis(images)
        session.accept_finding(session.findings[0].id)
        session.submit_for_review("Dr. Maryam", "Please check the left ovary")
    """

    def __init__(
        self,
        store: StateStore,
        scheduler: Optional[SliceAnalysisScheduler] = None,
        workflow: Optional[CaseWorkflowStateMachine] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.scheduler = scheduler or SliceAnalysisScheduler(settings=self.settings)
        self.workflow = workflow or CaseWorkflowStateMachine.from_settings(self.settings)
        self.state = store.load()
        self.progress = 0

    # -------------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------------

    @property
    def case(self) -> Optional[CaseRecord]:
        return self.state.case

    @property
    def findings(self) -> List[CanonicalFinding]:
        return self.state.findings

    @property
    def persona(self) -> Persona:
        return self.state.current_persona

    def _commit(self, **updates) -> None:
        state = self.state.model_copy(update=updates)
        self.store.save(state)
        self.state = state

    def _require_case(self) -> CaseRecord:
        if self.state.case is None:
            raise ValidationError("No active case: start a new case first")
        return self.state.case

    def _actor(self, actor: Optional[Persona]) -> Persona:
        return actor or self.state.current_persona

    def view(self, actor: Optional[Persona] = None) -> CaseStateResponse:
        """Everything the acting persona may see, plus what it may edit"""
        actor = self._actor(actor)
        case = self.state.case
        if actor == Persona.PATIENT and not self.workflow.patient_view_available(case):
            # Progress only until the report is finalized
            return CaseStateResponse(
                case=_status_only(case) if case is not None else None,
                persona=actor,
            )
        return CaseStateResponse(
            case=case,
            findings=self.state.findings,
            images=self.state.images,
            persona=actor,
            report_editable=case is not None and self.workflow.can_edit_report(case, actor),
            review_notes_editable=case is not None and self.workflow.can_edit_review_notes(case, actor),
            patient_view_available=self.workflow.patient_view_available(case),
        )

    def switch_persona(self, persona: Persona) -> Persona:
        self._commit(current_persona=persona)
        logger.info(f"Acting persona: {persona.value}")
        return persona

    # -------------------------------------------------------------------------
    # Case lifecycle
    # -------------------------------------------------------------------------

    def start_case(
        self,
        patient_ref: Optional[str] = None,
        clinical_context: Optional[str] = None,
        actor: Optional[Persona] = None
    ) -> CaseRecord:
        """Replace the live case with a fresh draft (clears findings, report, metadata, images)"""
        actor = self._actor(actor)
        if actor != Persona.PRIMARY:
            raise WorkflowGuardViolation(f"Persona '{actor.value}' may not start a case")

        patient_ref = (patient_ref or "").strip() or generate_patient_ref()
        case = CaseRecord(
            id=str(uuid.uuid4()),
            patient_ref=patient_ref,
            clinical_context=normalize_clinical_context(clinical_context),
            status=CaseStatus.DRAFT,
        )
        case = case.model_copy(
            update={"final_report_text": build_report_template(case, self.settings.exam_title)}
        )

        self._commit(case=case, findings=[], images=[])
        self.progress = 0
        logger.info(f"Started case {case.id} ({patient_ref})")
        return case

    async def run_analysis(
        self,
        images: Sequence[ScanImage],
        clinical_context: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        actor: Optional[Persona] = None
    ) -> CaseRecord:
        """
        Analyze `images` and store metadata + findings against the case.

        The previous analysis is replaced only if the whole run succeeds.
        """
        actor = self._actor(actor)
        self.scheduler.check_preconditions(images)
        case = self._require_case()
        if actor != Persona.PRIMARY:
            raise WorkflowGuardViolation(f"Persona '{actor.value}' may not run an analysis")
        if case.status == CaseStatus.FINALIZED:
            raise WorkflowGuardViolation("Cannot re-analyze a finalized case")

        context = normalize_clinical_context(
            case.clinical_context if clinical_context is None else clinical_context
        )

        def track(value: int) -> None:
            self.progress = value
            if on_progress is not None:
                on_progress(value)

        result = await self.scheduler.run_analysis(images, context, on_progress=track)

        updates = {"clinical_context": context, "analysis_metadata": result.metadata}
        # An untouched template follows the new clinical context
        if case.final_report_text == build_report_template(case, self.settings.exam_title):
            refreshed = case.model_copy(update={"clinical_context": context})
            updates["final_report_text"] = build_report_template(refreshed, self.settings.exam_title)

        updated = case.model_copy(update=updates)
        self._commit(
            case=updated,
            findings=result.findings,
            images=[image.ref() for image in images],
        )
        return updated

    def reset_analysis(self, actor: Optional[Persona] = None) -> CaseRecord:
        """Clear images, findings and metadata; keep patient data, report and status"""
        actor = self._actor(actor)
        case = self._require_case()
        if actor != Persona.PRIMARY or case.status == CaseStatus.FINALIZED:
            raise WorkflowGuardViolation(
                f"Persona '{actor.value}' may not reset the analysis in status '{case.status.value}'"
            )

        updated = case.model_copy(update={"analysis_metadata": None})
        self._commit(case=updated, findings=[], images=[])
        self.progress = 0
        return updated

    # -------------------------------------------------------------------------
    # Report & findings
    # -------------------------------------------------------------------------

    def update_report(self, report_text: str, actor: Optional[Persona] = None) -> CaseRecord:
        updated = self.workflow.update_report(self._require_case(), self._actor(actor), report_text)
        self._commit(case=updated)
        return updated

    def save_review_notes(self, notes: str, actor: Optional[Persona] = None) -> CaseRecord:
        updated = self.workflow.save_review_notes(self._require_case(), self._actor(actor), notes)
        self._commit(case=updated)
        return updated

    def accept_finding(self, finding_id: str, actor: Optional[Persona] = None) -> CaseRecord:
        updated, findings = self.workflow.accept_finding(
            self._require_case(), self.state.findings, finding_id, self._actor(actor)
        )
        self._commit(case=updated, findings=findings)
        return updated

    def reject_finding(self, finding_id: str, actor: Optional[Persona] = None) -> CaseRecord:
        case = self._require_case()
        findings = self.workflow.reject_finding(case, self.state.findings, finding_id, self._actor(actor))
        self._commit(findings=findings)
        return case

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def submit_for_review(
        self,
        reviewer: str,
        note: str = "",
        report_text: Optional[str] = None,
        actor: Optional[Persona] = None
    ) -> CaseRecord:
        updated = self.workflow.submit_for_review(
            self._require_case(), self._actor(actor), reviewer, note, report_text
        )
        self._commit(case=updated)
        return updated

    def submit_review(self, notes: str, actor: Optional[Persona] = None) -> CaseRecord:
        updated = self.workflow.submit_review(self._require_case(), self._actor(actor), notes)
        self._commit(case=updated)
        return updated

    def finalize(self, report_text: Optional[str] = None, actor: Optional[Persona] = None) -> CaseRecord:
        updated = self.workflow.finalize(self._require_case(), self._actor(actor), report_text)
        self._commit(case=updated)
        return updated
