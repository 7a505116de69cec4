"""
Shared error types.

Placed in a separate module so the session, the scheduler, the workflow and
the HTTP layer all raise and catch the same classes.
"""


class CaseReviewError(Exception):
    """Base class for every failure surfaced to callers."""

    code = "case_review_error"


class ValidationError(CaseReviewError):
    """Missing or invalid input (no images, no active case, empty notes)."""

    code = "validation_error"


class ConfigurationError(CaseReviewError):
    """Inference backend is not configured (e.g. missing API key)."""

    code = "configuration_error"


class AnalysisAborted(CaseReviewError):
    """An image call failed or returned unparseable data; the run was discarded."""

    code = "analysis_aborted"

    def __init__(self, reason: str, image_id: str = None):
        super().__init__(reason)
        self.reason = reason
        self.image_id = image_id


class WorkflowGuardViolation(CaseReviewError):
    """Wrong persona or wrong case status for the requested action."""

    code = "workflow_guard_violation"


class InferenceError(Exception):
    """Raised by the slice analyzer when a single image call fails."""
