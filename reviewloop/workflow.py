"""Workflow management for review-loop.

This module wraps the workspace operations in result dictionaries that tell
the caller what to do next, and turns failures into structured error entries
instead of exceptions.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import WORKFLOW_STEPS
from .options import OptionSpec
from .reviewloop_logging import log_error_with_context
from .workspace import Workspace

logger = logging.getLogger("reviewloop.workflow")

# Global registry for review roots
_REVIEW_ROOT_REGISTRY: Dict[str, Path] = {}


def register_review_root(review_id: str, root: Path | str) -> Path:
    """Record the project root holding a review's artifacts."""
    resolved = Path(root).resolve()
    _REVIEW_ROOT_REGISTRY[review_id.lower()] = resolved
    return resolved


def lookup_review_root(review_id: str) -> Optional[Path]:
    """Return the registered project root for the review, if any."""
    return _REVIEW_ROOT_REGISTRY.get(review_id.lower())


def _error(operation: str, e: Exception, suggestion: str, next_step: str, **context) -> Dict[str, Any]:
    logger.error(f"Failed to {operation}: {e}")
    log_error_with_context(e, {"operation": operation, **context})
    return {
        "error": f"Failed to {operation}: {e}",
        "suggestion": suggestion,
        "next_suggested_step": next_step,
        "message": f"Error: {e}",
    }


class WorkflowManager:
    """Manages the review loop for the documents of one project root."""

    def __init__(self, root: Path | str):
        """Initialize workflow manager with workspace root."""
        self.workspace = Workspace(root)

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def start_review(
        self,
        title: str,
        document_path: Optional[str] = None,
        review_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Register a design document for review."""
        try:
            review = self.workspace.start_review(title, document_path=document_path, review_id=review_id)
            register_review_root(review.review_id, self.workspace.root)
            return {
                "review": review.to_dict(),
                "review_path": str(self.workspace.review_path(review.review_id)),
                "next_suggested_step": "start_round",
                "workflow_tip": "Next: open round 1 with start_round and record findings with add_finding",
                "message": f"Review '{review.review_id}' created.",
            }
        except Exception as e:
            return _error(
                "start review", e,
                "Provide a non-empty title and a review_id that is not already in use",
                "start_review",
                title=title,
            )

    def list_reviews(self) -> Dict[str, Any]:
        reviews = self.workspace.list_reviews()
        return {
            "reviews": reviews,
            "count": len(reviews),
            "message": f"Found {len(reviews)} reviews" if reviews else "No reviews yet. Use start_review to create one.",
        }

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def start_round(self, review_id: str) -> Dict[str, Any]:
        try:
            review_round = self.workspace.start_round(review_id)
            return {
                "review_id": review_id,
                "round": review_round.to_dict(),
                "next_suggested_step": "add_finding",
                "workflow_tip": f"Record every issue found in round {review_round.number} with add_finding",
                "message": f"Round {review_round.number} started.",
            }
        except Exception as e:
            return _error(
                "start round", e,
                "Close the current round first, or check the review has not already converged",
                "review_status",
                review_id=review_id,
            )

    def close_round(self, review_id: str) -> Dict[str, Any]:
        try:
            result = self.workspace.close_round(review_id)
        except Exception as e:
            blockers: List[str] = []
            try:
                blockers = self.workspace.closure_blockers(review_id)
            except Exception:
                logger.debug(f"Could not compute closure blockers for {review_id}")
            response = _error(
                "close round", e,
                "Classify every finding and complete or defer every action item before closing",
                "review_status",
                review_id=review_id,
            )
            response["closure_blockers"] = blockers
            return response

        if result["converged"]:
            result.update({
                "next_suggested_step": None,
                "workflow_tip": "The last round produced no VALID findings. The review is complete.",
                "message": f"Round {result['round']['number']} closed; review converged.",
            })
        else:
            result.update({
                "next_suggested_step": "start_round",
                "workflow_tip": "Fixes were applied; run another pass with start_round to verify them",
                "message": f"Round {result['round']['number']} closed with {result['valid_findings']} VALID finding(s).",
            })
        result["review_id"] = review_id
        return result

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    def add_finding(
        self,
        review_id: str,
        description: str,
        location: str = "",
        finding_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            finding = self.workspace.add_finding(
                review_id, description, location=location, finding_id=finding_id
            )
            return {
                "review_id": review_id,
                "finding": finding.to_dict(),
                "next_suggested_step": "classify_finding",
                "workflow_tip": "Add the remaining findings, then assign a verdict to each with classify_finding",
            }
        except Exception as e:
            return _error(
                "add finding", e,
                "Make sure a round is open and the finding id is unique within it",
                "start_round",
                review_id=review_id,
                finding_id=finding_id,
            )

    def classify_finding(
        self,
        review_id: str,
        finding_id: str,
        verdict: str,
        rationale: str = "",
        merged_into: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            finding = self.workspace.classify_finding(
                review_id, finding_id, verdict, rationale=rationale, merged_into=merged_into
            )
        except Exception as e:
            return _error(
                "classify finding", e,
                "Use one of VALID, FALSE_POSITIVE, SCOPE_CREEP, ALREADY_OK, MERGED; MERGED needs merged_into",
                "classify_finding",
                review_id=review_id,
                finding_id=finding_id,
            )

        actionable = finding.is_actionable
        return {
            "review_id": review_id,
            "finding": finding.to_dict(),
            "next_suggested_step": "present_options" if actionable else "classify_finding",
            "workflow_tip": (
                f"Offer 2-3 remediation options for {finding.finding_id} with present_options"
                if actionable
                else "Classify the remaining findings, then close_round once nothing is pending"
            ),
        }

    def present_options(
        self,
        review_id: str,
        finding_id: str,
        options: Optional[List[OptionSpec]] = None,
    ) -> Dict[str, Any]:
        try:
            presented = self.workspace.present_options(review_id, finding_id, options)
            return {
                "review_id": review_id,
                "finding_id": finding_id,
                "options": [option.to_dict() for option in presented],
                "next_suggested_step": "select_option",
                "workflow_tip": "Pick one option with select_option; it becomes an action item",
            }
        except Exception as e:
            return _error(
                "present options", e,
                "Options need a VALID finding and 2-3 entries with a summary each",
                "classify_finding",
                review_id=review_id,
                finding_id=finding_id,
            )

    def select_option(
        self,
        review_id: str,
        finding_id: str,
        option_id: str,
        phase: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            action = self.workspace.select_option(review_id, finding_id, option_id, phase=phase)
            return {
                "review_id": review_id,
                "action": action.to_dict(),
                "actions_path": str(self.workspace.actions_path(review_id)),
                "next_suggested_step": "close_round" if action.deferred else "complete_action",
                "workflow_tip": (
                    f"Action {action.action_id} was deferred by the chosen option"
                    if action.deferred
                    else f"Apply the fix, then mark {action.action_id} done with complete_action"
                ),
            }
        except Exception as e:
            return _error(
                "select option", e,
                "Call present_options first and pick one of the returned option ids",
                "present_options",
                review_id=review_id,
                finding_id=finding_id,
            )

    # ------------------------------------------------------------------
    # Action items
    # ------------------------------------------------------------------

    def complete_action(self, review_id: str, action_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        try:
            action = self.workspace.complete_action(review_id, action_id, note=note)
            return self._action_response(review_id, action.to_dict())
        except Exception as e:
            return _error(
                "complete action", e,
                f"Check that action '{action_id}' exists in review '{review_id}'",
                "review_status",
                review_id=review_id,
                action_id=action_id,
            )

    def defer_action(self, review_id: str, action_id: str, reason: str) -> Dict[str, Any]:
        try:
            action = self.workspace.defer_action(review_id, action_id, reason)
            return self._action_response(review_id, action.to_dict())
        except Exception as e:
            return _error(
                "defer action", e,
                "Give a reason and an existing action id",
                "review_status",
                review_id=review_id,
                action_id=action_id,
            )

    def sync_actions(self, review_id: str) -> Dict[str, Any]:
        try:
            result = self.workspace.sync_actions(review_id)
        except Exception as e:
            return _error(
                "sync actions", e,
                "Check that the review exists and actions.md has not been deleted",
                "review_status",
                review_id=review_id,
            )
        result["message"] = f"Synced {len(result['changed'])} action(s) from actions.md"
        return result

    # ------------------------------------------------------------------
    # Status and guidance
    # ------------------------------------------------------------------

    def review_status(self, review_id: str) -> Dict[str, Any]:
        try:
            return self.workspace.review_status(review_id)
        except Exception as e:
            return _error(
                "get review status", e,
                f"Check that review '{review_id}' exists",
                "list_reviews",
                review_id=review_id,
            )

    def render_round(self, review_id: str, round_number: Optional[int] = None) -> Dict[str, Any]:
        try:
            content = self.workspace.render_round(review_id, round_number)
        except Exception as e:
            return _error(
                "render round", e,
                "Start a round first or pass an existing round number",
                "start_round",
                review_id=review_id,
            )
        return {"review_id": review_id, "round_number": round_number, "content": content}

    def get_workflow_guide(self) -> Dict[str, Any]:
        return get_workflow_guide()

    def _action_response(self, review_id: str, action: Dict[str, Any]) -> Dict[str, Any]:
        blockers = self.workspace.closure_blockers(review_id)
        return {
            "review_id": review_id,
            "action": action,
            "closure_blockers": blockers,
            "next_suggested_step": "close_round" if not blockers else "complete_action",
            "workflow_tip": (
                "Every finding is resolved; close the round with close_round"
                if not blockers
                else f"{len(blockers)} item(s) still block closing the round"
            ),
        }


def get_workflow_guide() -> Dict[str, Any]:
    """Describe the review loop step by step."""
    return {
        "workflow_overview": "Iterative review of a design document, one round per review pass",
        "steps": [
            {
                "step": step.step_number,
                "tool": step.tool_name,
                "description": step.description,
                "purpose": step.purpose,
            }
            for step in WORKFLOW_STEPS
        ],
        "verdicts": {
            "VALID": "A real problem in the document; needs an action item",
            "FALSE_POSITIVE": "The reviewer misread the document",
            "SCOPE_CREEP": "Correct observation, but outside what the document sets out to do",
            "ALREADY_OK": "The document already handles it",
            "MERGED": "Duplicate of another finding in the same round (set merged_into)",
        },
        "tips": [
            "Classify every finding before presenting options",
            "Offer 2-3 options per VALID finding; mark at most one as recommended",
            "Defer with a reason instead of leaving an action open",
            "Stop when a round closes without VALID findings",
        ],
    }
