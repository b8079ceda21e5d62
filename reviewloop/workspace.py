"""Workspace management for review-loop.

This module stores reviews inside a project root and exposes the review
operations (rounds, findings, verdicts, options, action items) on top of
that storage. Each review lives in its own directory:

    .review-loop/reviews/<review_id>/review.json   source of truth
    .review-loop/reviews/<review_id>/actions.md    action checklist
    .review-loop/reviews/<review_id>/round-NN.md   one report per round
"""

from __future__ import annotations

import json
import logging
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .controller import RoundController
from .models import ActionItem, Finding, RemediationOption, Review, Round, Verdict
from .options import OptionSpec
from .render import parse_action_checklist, render_action_checklist, render_round_report
from .reviewloop_logging import (
    log_action_update,
    log_error_with_context,
    log_finding_added,
    log_finding_classified,
    log_operation,
    log_performance,
    log_review_converged,
    log_round_closed,
    log_round_started,
    observability_hooks,
)

logger = logging.getLogger("reviewloop.workspace")

DEFAULT_STORAGE_DIR = ".review-loop"


class Workspace:
    """Manage review artifacts within a repository."""

    STORAGE_DIR_ENV = "REVIEWLOOP_STORAGE_DIR"

    def __init__(self, root: Path | str):
        """Initialize workspace with given root directory."""
        self.root = Path(root).resolve()
        storage_name = os.getenv(self.STORAGE_DIR_ENV) or DEFAULT_STORAGE_DIR

        self.base_dir = self.root / storage_name
        self.reviews_dir = self.base_dir / "reviews"

        try:
            self.reviews_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create workspace directories: {e}")
            log_error_with_context(e, {"operation": "workspace_init", "root": str(root)})
            raise RuntimeError(f"Could not initialize workspace at {self.root}: {e}") from e

        logger.debug(f"Workspace initialized at {self.root}")
        observability_hooks.log_review_event("workspace_initialized", root=str(self.root))

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def review_dir(self, review_id: str) -> Path:
        return self.reviews_dir / review_id

    def review_path(self, review_id: str) -> Path:
        return self.review_dir(review_id) / "review.json"

    def actions_path(self, review_id: str) -> Path:
        return self.review_dir(review_id) / "actions.md"

    def round_report_path(self, review_id: str, round_number: int) -> Path:
        return self.review_dir(review_id) / f"round-{round_number:02d}.md"

    # ------------------------------------------------------------------
    # Review records
    # ------------------------------------------------------------------

    def review_exists(self, review_id: str) -> bool:
        return self.review_path(review_id).exists()

    def list_reviews(self) -> List[Dict[str, Any]]:
        """List all reviews in the workspace."""
        reviews: List[Dict[str, Any]] = []
        for path in sorted(self.reviews_dir.glob("*/review.json")):
            review = self._read_review_file(path)
            current = review.rounds[-1] if review.rounds else None
            reviews.append(
                {
                    "review_id": review.review_id,
                    "title": review.title,
                    "document_path": review.document_path,
                    "status": review.status,
                    "rounds": len(review.rounds),
                    "current_round_open": bool(current and current.is_open),
                    "review_path": str(path.resolve()),
                }
            )
        return reviews

    @log_performance("start_review")
    def start_review(
        self,
        title: str,
        *,
        document_path: Optional[str] = None,
        review_id: Optional[str] = None,
    ) -> Review:
        """Create a new review record for a design document."""
        if not title or not title.strip():
            raise ValueError("Review title cannot be empty")

        identifier = self._review_identifier(title, review_id)
        if self.review_exists(identifier):
            raise ValueError(f"Review '{identifier}' already exists.")

        with log_operation("start_review", review_id=identifier):
            review = Review(
                review_id=identifier,
                title=title.strip(),
                document_path=document_path.strip() if document_path else None,
            )
            self.save_review(review)

        observability_hooks.log_review_event(
            "review_started", identifier, title=review.title, document_path=review.document_path
        )
        return review

    def load_review(self, review_id: str) -> Review:
        path = self.review_path(review_id)
        if not path.exists():
            raise FileNotFoundError(
                f"No review found with id '{review_id}'. Use start_review to create one."
            )
        return self._read_review_file(path)

    def save_review(self, review: Review) -> Path:
        """Persist the review and regenerate its markdown artifacts."""
        review_dir = self.review_dir(review.review_id)
        try:
            review_dir.mkdir(parents=True, exist_ok=True)
            path = self.review_path(review.review_id)
            path.write_text(json.dumps(review.to_dict(), indent=2) + "\n", encoding="utf-8")
            self.actions_path(review.review_id).write_text(render_action_checklist(review), encoding="utf-8")
            for review_round in review.rounds:
                self.round_report_path(review.review_id, review_round.number).write_text(
                    render_round_report(review, review_round), encoding="utf-8"
                )
        except OSError as e:
            log_error_with_context(e, {"operation": "save_review", "review_id": review.review_id})
            raise RuntimeError(f"Could not save review '{review.review_id}': {e}") from e
        return path

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    @log_performance("start_round")
    def start_round(self, review_id: str) -> Round:
        with self._editing(review_id, "start_round") as controller:
            review_round = controller.start_round()
        log_round_started(review_id, review_round.number)
        return review_round

    @log_performance("close_round")
    def close_round(self, review_id: str) -> Dict[str, Any]:
        with self._editing(review_id, "close_round") as controller:
            review_round = controller.close_round()
            review = controller.review

        valid_count = len(review_round.valid_findings())
        log_round_closed(review_id, review_round.number, valid_count)
        if review.is_converged:
            log_review_converged(review_id, len(review.rounds))

        return {
            "round": review_round.to_dict(),
            "valid_findings": valid_count,
            "converged": review.is_converged,
            "report_path": str(self.round_report_path(review_id, review_round.number)),
        }

    def closure_blockers(self, review_id: str) -> List[str]:
        controller = RoundController(self.load_review(review_id))
        current = controller.current_round()
        if current is None or not current.is_open:
            return []
        return controller.closure_blockers(current)

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    @log_performance("add_finding")
    def add_finding(
        self,
        review_id: str,
        description: str,
        *,
        location: str = "",
        finding_id: Optional[str] = None,
    ) -> Finding:
        with self._editing(review_id, "add_finding", finding_id=finding_id) as controller:
            finding = controller.add_finding(description, location=location, finding_id=finding_id)
            round_number = controller.open_round().number
        log_finding_added(review_id, round_number, finding.finding_id)
        return finding

    @log_performance("classify_finding")
    def classify_finding(
        self,
        review_id: str,
        finding_id: str,
        verdict: Verdict | str,
        *,
        rationale: str = "",
        merged_into: Optional[str] = None,
    ) -> Finding:
        with self._editing(review_id, "classify_finding", finding_id=finding_id) as controller:
            finding = controller.classify(
                finding_id, verdict, rationale=rationale, merged_into=merged_into
            )
            round_number = controller.open_round().number
        log_finding_classified(review_id, round_number, finding.finding_id, finding.verdict.value)
        return finding

    def present_options(
        self,
        review_id: str,
        finding_id: str,
        options: Optional[List[OptionSpec]] = None,
    ) -> List[RemediationOption]:
        with self._editing(review_id, "present_options", finding_id=finding_id) as controller:
            return controller.present_options(finding_id, options)

    def select_option(
        self,
        review_id: str,
        finding_id: str,
        option_id: str,
        *,
        phase: Optional[str] = None,
    ) -> ActionItem:
        with self._editing(review_id, "select_option", finding_id=finding_id, option_id=option_id) as controller:
            action = controller.select_option(finding_id, option_id, phase=phase)
        log_action_update(review_id, action.action_id, action.completed, action.deferred, created=True)
        return action

    # ------------------------------------------------------------------
    # Action items
    # ------------------------------------------------------------------

    def list_actions(self, review_id: str, *, pending_only: bool = False) -> List[Dict[str, Any]]:
        review = self.load_review(review_id)
        actions = [a for a in review.action_items if not (pending_only and a.is_resolved)]
        return [a.to_dict() for a in actions]

    @log_performance("complete_action")
    def complete_action(self, review_id: str, action_id: str, *, note: Optional[str] = None) -> ActionItem:
        with self._editing(review_id, "complete_action", action_id=action_id) as controller:
            action = controller.complete_action(action_id, note=note)
        log_action_update(review_id, action.action_id, action.completed, action.deferred)
        return action

    @log_performance("defer_action")
    def defer_action(self, review_id: str, action_id: str, reason: str) -> ActionItem:
        with self._editing(review_id, "defer_action", action_id=action_id) as controller:
            action = controller.defer_action(action_id, reason)
        log_action_update(review_id, action.action_id, action.completed, action.deferred)
        return action

    @log_performance("sync_actions")
    def sync_actions(self, review_id: str) -> Dict[str, Any]:
        """Apply checkbox edits made by hand in actions.md to the stored review.

        ``[x]`` completes an action, ``[ ]`` reopens it. A ``[~]`` line keeps
        an already deferred action deferred; deferring needs a reason, so new
        deferrals go through ``defer_action``. Edits to actions of closed
        rounds are reported as skipped.
        """
        actions_path = self.actions_path(review_id)
        if not actions_path.exists():
            raise FileNotFoundError(f"No actions.md found for review '{review_id}'.")
        states = parse_action_checklist(actions_path.read_text(encoding="utf-8"))

        changed: List[str] = []
        skipped: List[Dict[str, str]] = []
        with self._editing(review_id, "sync_actions") as controller:
            for action_id, state in states.items():
                action = controller.review.get_action(action_id)
                if action is None:
                    skipped.append({"action_id": action_id, "reason": "unknown action"})
                    continue
                if state == "deferred" and not action.deferred:
                    skipped.append({"action_id": action_id, "reason": "use defer_action to give a reason"})
                    continue
                try:
                    if state == "completed" and not action.completed:
                        controller.complete_action(action_id, note="Ticked in actions.md")
                    elif state == "open" and action.is_resolved:
                        controller.reopen_action(action_id, note="Unticked in actions.md")
                    else:
                        continue
                except ValueError as e:
                    skipped.append({"action_id": action_id, "reason": str(e)})
                    continue
                changed.append(action_id)

        for action_id in changed:
            logger.info(f"Synced action {action_id} of review {review_id} from actions.md")

        return {
            "review_id": review_id,
            "changed": changed,
            "skipped": skipped,
            "actions_path": str(actions_path),
        }

    # ------------------------------------------------------------------
    # Status and reports
    # ------------------------------------------------------------------

    def review_status(self, review_id: str) -> Dict[str, Any]:
        review = self.load_review(review_id)
        controller = RoundController(review)
        status = controller.status()
        current = controller.current_round()
        blockers = controller.closure_blockers(current) if current and current.is_open else []

        return {
            "review": status.to_dict(),
            "document_path": review.document_path,
            "current_round": current.to_dict() if current else None,
            "pending_actions": [a.to_dict() for a in controller.pending_actions()],
            "closure_blockers": blockers,
            "actions_path": str(self.actions_path(review_id)),
        }

    def render_round(self, review_id: str, round_number: Optional[int] = None) -> str:
        review = self.load_review(review_id)
        if not review.rounds:
            raise ValueError(f"Review '{review_id}' has no rounds yet.")
        review_round = review.rounds[-1] if round_number is None else review.get_round(round_number)
        if review_round is None:
            raise ValueError(f"Round {round_number} not found in review '{review_id}'.")
        return render_round_report(review, review_round)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    @contextmanager
    def _editing(self, review_id: str, operation: str, **extra_fields) -> Iterator[RoundController]:
        """Load a review, hand out its controller, and save it if no error occurred."""
        try:
            with log_operation(operation, review_id=review_id, **extra_fields):
                controller = RoundController(self.load_review(review_id))
                yield controller
                self.save_review(controller.review)
        except Exception as e:
            log_error_with_context(e, {"operation": operation, "review_id": review_id, **extra_fields})
            raise

    def _read_review_file(self, path: Path) -> Review:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RuntimeError(f"Review file {path} is not valid JSON: {e}") from e
        review = Review.from_dict(data)

        issues = []
        for review_round in review.rounds:
            for finding in review_round.findings:
                issues.extend(
                    f"round {review_round.number} {finding.finding_id or '?'}: {issue}"
                    for issue in finding.validate()
                )
        if issues:
            raise RuntimeError(f"Review file {path} is inconsistent: " + "; ".join(issues))
        return review

    def _next_review_number(self) -> int:
        highest = 0
        for directory in self.reviews_dir.glob("*/"):
            match = re.match(r"(\d{3})-", directory.name)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    def _review_identifier(self, title: str, review_id: Optional[str]) -> str:
        if review_id:
            slug = self._slugify(review_id)
            if not re.match(r"^\d{3}-", slug):
                slug = f"{self._next_review_number():03d}-{slug}"
            return slug
        slug = self._slugify(title)
        number = self._next_review_number()
        candidate = f"{number:03d}-{slug}"
        while self.review_dir(candidate).exists():
            number += 1
            candidate = f"{number:03d}-{slug}"
        return candidate

    def _slugify(self, value: str) -> str:
        slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
        return slug or "review"
