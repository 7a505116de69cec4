"""
Case Workflow State Machine
===========================

    draft -> pending_review -> reviewed -> finalized

Who may move the case, from where, and what each move writes. The
transition table is data: the default table lets the primary finalize
straight from draft (peer review is advisory); REQUIRE_PEER_REVIEW=true
swaps in the strict table.

Every method validates first and returns an updated copy of the record, so
a rejected action never leaves a half-applied change behind.
"""

import logging
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple
from dataclasses import dataclass

from .config import Settings, get_settings
from .errors import ValidationError, WorkflowGuardViolation
from .schemas import CanonicalFinding, CaseRecord, CaseStatus, Persona, ReviewStatus

logger = logging.getLogger(__name__)


class WorkflowAction(str, Enum):
    SUBMIT_FOR_REVIEW = "submit_for_review"
    SUBMIT_REVIEW = "submit_review"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class TransitionRule:
    """One row of the transition table"""
    action: WorkflowAction
    sources: FrozenSet[CaseStatus]
    target: CaseStatus
    actors: FrozenSet[Persona]


DEFAULT_TRANSITIONS: Tuple[TransitionRule, ...] = (
    TransitionRule(
        action=WorkflowAction.SUBMIT_FOR_REVIEW,
        sources=frozenset({CaseStatus.DRAFT, CaseStatus.PENDING_REVIEW, CaseStatus.REVIEWED}),
        target=CaseStatus.PENDING_REVIEW,
        actors=frozenset({Persona.PRIMARY}),
    ),
    TransitionRule(
        action=WorkflowAction.SUBMIT_REVIEW,
        sources=frozenset({CaseStatus.PENDING_REVIEW}),
        target=CaseStatus.REVIEWED,
        actors=frozenset({Persona.PEER}),
    ),
    TransitionRule(
        action=WorkflowAction.FINALIZE,
        sources=frozenset({CaseStatus.DRAFT, CaseStatus.REVIEWED}),
        target=CaseStatus.FINALIZED,
        actors=frozenset({Persona.PRIMARY}),
    ),
)

STRICT_TRANSITIONS: Tuple[TransitionRule, ...] = tuple(
    TransitionRule(
        action=rule.action,
        sources=frozenset({CaseStatus.REVIEWED}),
        target=rule.target,
        actors=rule.actors,
    ) if rule.action == WorkflowAction.FINALIZE else rule
    for rule in DEFAULT_TRANSITIONS
)


# =============================================================================
# Report text helpers
# =============================================================================

def build_report_template(case: CaseRecord, exam_title: str) -> str:
    """Initial structured report for a new case"""
    context = (case.clinical_context or "").strip()
    history = "Clinical History not provided" if context in ("", "NA") else context

    return (
        f"EXAM: {exam_title}\n"
        f"CASE ID: {case.patient_ref}-{case.case_sequence}\n"
        f"REF: {case.patient_ref}\n"
        f"CLINICAL INDICATION: {history}\n"
        f"\n"
        f"FINDINGS:\n"
    )


def finding_report_line(finding: CanonicalFinding) -> str:
    """Literal text appended to the report when a finding is accepted"""
    return f"- {finding.region}: {finding.description} ({finding.likelihood.value} confidence)\n"


# =============================================================================
# State machine
# =============================================================================

class CaseWorkflowStateMachine:
    """
    Validates and applies status transitions for the acting persona.
    """

    def __init__(self, rules: Sequence[TransitionRule] = DEFAULT_TRANSITIONS):
        self.rules = {rule.action: rule for rule in rules}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CaseWorkflowStateMachine":
        settings = settings or get_settings()
        return cls(STRICT_TRANSITIONS if settings.require_peer_review else DEFAULT_TRANSITIONS)

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    def can(self, case: CaseRecord, action: WorkflowAction, actor: Persona) -> bool:
        rule = self.rules.get(action)
        return rule is not None and actor in rule.actors and case.status in rule.sources

    def check(self, case: CaseRecord, action: WorkflowAction, actor: Persona) -> TransitionRule:
        """Return the rule for `action` or raise WorkflowGuardViolation"""
        rule = self.rules.get(action)
        if rule is None:
            raise WorkflowGuardViolation(f"Action '{action.value}' is not enabled")
        if actor not in rule.actors:
            raise WorkflowGuardViolation(
                f"Persona '{actor.value}' may not {action.value.replace('_', ' ')}"
            )
        if case.status not in rule.sources:
            raise WorkflowGuardViolation(
                f"Cannot {action.value.replace('_', ' ')} a case in status '{case.status.value}'"
            )
        return rule

    def can_edit_report(self, case: CaseRecord, actor: Persona) -> bool:
        """Report is the primary's, and locked while out for review or once finalized"""
        return actor == Persona.PRIMARY and case.status not in (
            CaseStatus.PENDING_REVIEW,
            CaseStatus.FINALIZED,
        )

    def can_edit_review_notes(self, case: CaseRecord, actor: Persona) -> bool:
        return actor == Persona.PEER and case.status == CaseStatus.PENDING_REVIEW

    def patient_view_available(self, case: Optional[CaseRecord]) -> bool:
        return case is not None and case.status == CaseStatus.FINALIZED

    def _require_report_access(self, case: CaseRecord, actor: Persona) -> None:
        if not self.can_edit_report(case, actor):
            raise WorkflowGuardViolation(
                f"Report is read-only for persona '{actor.value}' in status '{case.status.value}'"
            )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _apply(self, case: CaseRecord, rule: TransitionRule, **updates) -> CaseRecord:
        updated = case.model_copy(update={"status": rule.target, **updates})
        logger.info(f"Case {case.id}: {case.status.value} -> {rule.target.value} ({rule.action.value})")
        return updated

    def submit_for_review(
        self,
        case: CaseRecord,
        actor: Persona,
        reviewer: str,
        note: str = "",
        report_text: Optional[str] = None
    ) -> CaseRecord:
        """Primary sends the case to a peer; saves the current report text"""
        rule = self.check(case, WorkflowAction.SUBMIT_FOR_REVIEW, actor)
        if not reviewer or not reviewer.strip():
            raise ValidationError("A reviewer must be assigned")
        if report_text is not None:
            self._require_report_access(case, actor)

        return self._apply(
            case,
            rule,
            assigned_reviewer=reviewer.strip(),
            review_request_note=note,
            final_report_text=case.final_report_text if report_text is None else report_text,
        )

    def submit_review(self, case: CaseRecord, actor: Persona, notes: str) -> CaseRecord:
        """Peer returns second-opinion notes; report text is left as is"""
        rule = self.check(case, WorkflowAction.SUBMIT_REVIEW, actor)
        if not notes or not notes.strip():
            raise ValidationError("Second opinion notes are required before submitting a review")

        return self._apply(case, rule, reviewer_note=notes)

    def finalize(self, case: CaseRecord, actor: Persona, report_text: Optional[str] = None) -> CaseRecord:
        """Primary approves the report; it is frozen from here on"""
        rule = self.check(case, WorkflowAction.FINALIZE, actor)
        return self._apply(
            case,
            rule,
            final_report_text=case.final_report_text if report_text is None else report_text,
        )

    # -------------------------------------------------------------------------
    # Edits
    # -------------------------------------------------------------------------

    def update_report(self, case: CaseRecord, actor: Persona, report_text: str) -> CaseRecord:
        self._require_report_access(case, actor)
        return case.model_copy(update={"final_report_text": report_text})

    def save_review_notes(self, case: CaseRecord, actor: Persona, notes: str) -> CaseRecord:
        if not self.can_edit_review_notes(case, actor):
            raise WorkflowGuardViolation(
                f"Reviewer notes are read-only for persona '{actor.value}' in status '{case.status.value}'"
            )
        return case.model_copy(update={"reviewer_note": notes})

    def accept_finding(
        self,
        case: CaseRecord,
        findings: List[CanonicalFinding],
        finding_id: str,
        actor: Persona
    ) -> Tuple[CaseRecord, List[CanonicalFinding]]:
        """Append the finding's text to the report and mark it accepted"""
        self._require_report_access(case, actor)
        finding = _find(findings, finding_id)
        if finding.review_status == ReviewStatus.ACCEPTED:
            raise ValidationError(f"Finding {finding_id} is already accepted")

        updated_case = case.model_copy(
            update={"final_report_text": case.final_report_text + finding_report_line(finding)}
        )
        return updated_case, _with_status(findings, finding_id, ReviewStatus.ACCEPTED)

    def reject_finding(
        self,
        case: CaseRecord,
        findings: List[CanonicalFinding],
        finding_id: str,
        actor: Persona
    ) -> List[CanonicalFinding]:
        """Mark a proposed finding rejected (report untouched)"""
        self._require_report_access(case, actor)
        _find(findings, finding_id)
        return _with_status(findings, finding_id, ReviewStatus.REJECTED)


def _find(findings: List[CanonicalFinding], finding_id: str) -> CanonicalFinding:
    for finding in findings:
        if finding.id == finding_id:
            return finding
    raise ValidationError(f"Finding not found: {finding_id}")


def _with_status(
    findings: List[CanonicalFinding],
    finding_id: str,
    status: ReviewStatus
) -> List[CanonicalFinding]:
    return [
        f.model_copy(update={"review_status": status}) if f.id == finding_id else f
        for f in findings
    ]
