"""review-loop: iterative design-document review bookkeeping."""

from .controller import RoundController
from .models import (
    ActionItem,
    DuplicateFindingError,
    Finding,
    RemediationOption,
    Review,
    ReviewStatus,
    Round,
    Verdict,
)
from .workflow import WorkflowManager, lookup_review_root, register_review_root
from .workspace import Workspace

__all__ = [
    "ActionItem",
    "DuplicateFindingError",
    "Finding",
    "RemediationOption",
    "Review",
    "ReviewStatus",
    "Round",
    "RoundController",
    "Verdict",
    "WorkflowManager",
    "Workspace",
    "lookup_review_root",
    "register_review_root",
]
