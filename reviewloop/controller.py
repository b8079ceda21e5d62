"""Round controller for the review loop.

A review runs in rounds. Each round collects findings, every finding gets a
verdict, VALID findings get remediation options, the chosen option becomes an
action item, and the round closes once every action item is completed or
deferred. Closing a round without VALID findings converges the review.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .classifier import VerdictClassifier
from .models import (
    TDD_PHASES,
    ActionItem,
    Finding,
    RemediationOption,
    Review,
    ReviewStatus,
    Round,
    Verdict,
    utc_timestamp,
)
from .options import OptionPresenter, OptionSpec
from .registry import IssueRegistry

logger = logging.getLogger("reviewloop.controller")

_ACTION_ID_PATTERN = re.compile(r"^A(\d+)$", re.IGNORECASE)

Judgement = Union[Verdict, str, Tuple[Any, ...], Dict[str, Any]]

DiscoverFn = Callable[[int], Iterable[Dict[str, Any]]]
JudgeFn = Callable[[Finding], Judgement]
ChooseFn = Callable[[Finding, List[RemediationOption]], str]
ApplyFn = Callable[[ActionItem, Finding], bool]


class RoundController:
    """Sequence rounds of a single review."""

    def __init__(self, review: Review):
        self.review = review
        self.presenter = OptionPresenter()

    # ------------------------------------------------------------------
    # Round access
    # ------------------------------------------------------------------

    def current_round(self) -> Optional[Round]:
        return self.review.rounds[-1] if self.review.rounds else None

    def open_round(self) -> Round:
        current = self.current_round()
        if current is None or not current.is_open:
            raise ValueError(
                f"Review '{self.review.review_id}' has no open round. Call start_round first."
            )
        return current

    def registry(self) -> IssueRegistry:
        return IssueRegistry(self.open_round())

    def classifier(self) -> VerdictClassifier:
        return VerdictClassifier(self.open_round(), self.review.action_items)

    # ------------------------------------------------------------------
    # Round lifecycle
    # ------------------------------------------------------------------

    def start_round(self) -> Round:
        if self.review.is_converged:
            raise ValueError(
                f"Review '{self.review.review_id}' converged in round {self.review.rounds[-1].number}; "
                "no further rounds are needed."
            )
        current = self.current_round()
        if current is not None and current.is_open:
            raise ValueError(f"Round {current.number} is still open. Close it before starting a new round.")

        new_round = Round(number=(current.number + 1) if current else 1)
        self.review.rounds.append(new_round)
        self.review.touch()
        logger.info(f"Review {self.review.review_id}: round {new_round.number} started")
        return new_round

    def closure_blockers(self, review_round: Optional[Round] = None) -> List[str]:
        """Reasons the round cannot be closed yet; empty when it can."""
        review_round = review_round or self.open_round()
        blockers: List[str] = []

        for finding in review_round.unclassified_findings():
            blockers.append(f"Finding {finding.finding_id} has no verdict")

        for finding in review_round.valid_findings():
            actions = self.review.actions_for_finding(review_round.number, finding.finding_id)
            if not actions:
                if finding.options:
                    blockers.append(f"Finding {finding.finding_id} is VALID but no option was selected")
                else:
                    blockers.append(f"Finding {finding.finding_id} is VALID but no options were presented")
                continue
            for action in actions:
                if not action.is_resolved:
                    blockers.append(
                        f"Action {action.action_id} for finding {finding.finding_id} is neither completed nor deferred"
                    )
        return blockers

    def close_round(self) -> Round:
        review_round = self.open_round()
        blockers = self.closure_blockers(review_round)
        if blockers:
            raise ValueError(
                f"Round {review_round.number} cannot be closed: " + "; ".join(blockers)
            )

        review_round.status = "closed"
        review_round.closed_at = utc_timestamp()
        if not review_round.valid_findings():
            self.review.status = "converged"
            self.review.converged_at = review_round.closed_at
            logger.info(
                f"Review {self.review.review_id} converged after {len(self.review.rounds)} round(s)"
            )
        self.review.touch()
        return review_round

    # ------------------------------------------------------------------
    # Findings and verdicts
    # ------------------------------------------------------------------

    def add_finding(self, description: str, location: str = "", finding_id: Optional[str] = None) -> Finding:
        finding = self.registry().add(description, location=location, finding_id=finding_id)
        self.review.touch()
        return finding

    def classify(
        self,
        finding_id: str,
        verdict: Verdict | str,
        *,
        rationale: str = "",
        merged_into: Optional[str] = None,
    ) -> Finding:
        finding = self.classifier().classify(
            finding_id, verdict, rationale=rationale, merged_into=merged_into
        )
        self.review.touch()
        return finding

    def present_options(
        self, finding_id: str, options: Optional[Iterable[OptionSpec]] = None
    ) -> List[RemediationOption]:
        finding = self.registry().get(finding_id)
        presented = self.presenter.present(finding, options)
        self.review.touch()
        return presented

    def select_option(self, finding_id: str, option_id: str, *, phase: Optional[str] = None) -> ActionItem:
        """Record the chosen option and derive the finding's action item."""
        review_round = self.open_round()
        finding = IssueRegistry(review_round).get(finding_id)
        existing = self.review.actions_for_finding(review_round.number, finding.finding_id)
        if existing:
            raise ValueError(
                f"Finding '{finding.finding_id}' already has action {existing[0].action_id}."
            )

        option = self.presenter.select(finding, option_id)
        action = ActionItem(
            action_id=self._next_action_id(),
            finding_id=finding.finding_id,
            round_number=review_round.number,
            description=option.summary,
            phase=self._normalize_phase(phase),
        )
        action.add_note(f"Option {option.option_id} selected for {finding.finding_id}")
        if option.defers:
            action.defer(f"Option {option.option_id}: {option.summary}")
        self.review.action_items.append(action)
        self.review.touch()
        return action

    # ------------------------------------------------------------------
    # Action items
    # ------------------------------------------------------------------

    def get_action(self, action_id: str) -> ActionItem:
        action = self.review.get_action(action_id)
        if action is None:
            raise ValueError(f"Action '{action_id}' not found in review '{self.review.review_id}'.")
        return action

    def pending_actions(self) -> List[ActionItem]:
        return [a for a in self.review.action_items if not a.is_resolved]

    def _editable_action(self, action_id: str, verb: str) -> ActionItem:
        """Actions of closed rounds are frozen."""
        action = self.get_action(action_id)
        review_round = self.review.get_round(action.round_number)
        if review_round is not None and not review_round.is_open:
            raise ValueError(
                f"Action {action.action_id} belongs to closed round {action.round_number} and cannot be {verb}."
            )
        return action

    def complete_action(self, action_id: str, note: Optional[str] = None) -> ActionItem:
        action = self._editable_action(action_id, "completed")
        # The fix is verified by the pass after the one that raised it.
        action.mark_completed(note, round_number=action.round_number + 1)
        self.review.touch()
        return action

    def reopen_action(self, action_id: str, note: Optional[str] = None) -> ActionItem:
        action = self._editable_action(action_id, "reopened")
        action.mark_open(note)
        self.review.touch()
        return action

    def defer_action(self, action_id: str, reason: str) -> ActionItem:
        action = self._editable_action(action_id, "deferred")
        action.defer(reason)
        self.review.touch()
        return action

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> ReviewStatus:
        current = self.current_round()
        verdict_counts: Dict[str, int] = {}
        total_findings = 0
        for review_round in self.review.rounds:
            total_findings += len(review_round.findings)
            for key, count in review_round.verdict_counts().items():
                verdict_counts[key] = verdict_counts.get(key, 0) + count

        actions = self.review.action_items
        return ReviewStatus(
            review_id=self.review.review_id,
            title=self.review.title,
            status=self.review.status,
            total_rounds=len(self.review.rounds),
            current_round=current.number if current else None,
            current_round_open=bool(current and current.is_open),
            total_findings=total_findings,
            verdict_counts=verdict_counts,
            total_actions=len(actions),
            completed_actions=sum(1 for a in actions if a.completed),
            deferred_actions=sum(1 for a in actions if a.deferred),
            pending_actions=sum(1 for a in actions if not a.is_resolved),
        )

    # ------------------------------------------------------------------
    # Driving the loop
    # ------------------------------------------------------------------

    def run(
        self,
        discover: DiscoverFn,
        judge: JudgeFn,
        choose: ChooseFn,
        apply: ApplyFn,
        *,
        max_rounds: int = 10,
    ) -> Review:
        """Run rounds until one yields no VALID finding or max_rounds is reached.

        ``discover(round_number)`` returns finding dicts (``description``,
        optional ``location`` and ``finding_id``). ``judge(finding)`` returns a
        verdict, a ``(verdict, rationale[, merged_into])`` tuple, or a dict with
        ``verdict``/``rationale``/``merged_into``/``options``.
        ``choose(finding, options)`` returns an option id, and
        ``apply(action, finding)`` returns True when the fix was applied;
        False defers the action.
        """
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")

        rounds_run = 0
        while not self.review.is_converged and rounds_run < max_rounds:
            review_round = self.start_round()
            rounds_run += 1

            for entry in discover(review_round.number) or []:
                self.add_finding(
                    entry["description"],
                    location=entry.get("location", ""),
                    finding_id=entry.get("finding_id"),
                )

            for finding in list(review_round.findings):
                judgement = self._normalize_judgement(judge(finding))
                self.classify(
                    finding.finding_id,
                    judgement["verdict"],
                    rationale=judgement.get("rationale", ""),
                    merged_into=judgement.get("merged_into"),
                )
                if finding.is_actionable:
                    self.present_options(finding.finding_id, judgement.get("options"))

            for finding in review_round.valid_findings():
                option_id = choose(finding, list(finding.options))
                action = self.select_option(finding.finding_id, option_id)
                if action.deferred:
                    continue
                if apply(action, finding):
                    self.complete_action(action.action_id, note="Fix applied")
                else:
                    self.defer_action(action.action_id, f"Fix not applied during round {review_round.number}")

            self.close_round()

        if not self.review.is_converged:
            logger.warning(
                f"Review {self.review.review_id} did not converge within {max_rounds} round(s)"
            )
        return self.review

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _next_action_id(self) -> str:
        highest = 0
        for action in self.review.action_items:
            match = _ACTION_ID_PATTERN.match(action.action_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"A{highest + 1:03d}"

    @staticmethod
    def _normalize_phase(phase: Optional[str]) -> Optional[str]:
        if phase is None or not phase.strip():
            return None
        normalized = phase.strip().upper()
        if normalized not in TDD_PHASES:
            raise ValueError(f"Unknown phase '{phase}'. Expected one of: {', '.join(TDD_PHASES)}")
        return normalized

    @staticmethod
    def _normalize_judgement(judgement: Judgement) -> Dict[str, Any]:
        if isinstance(judgement, dict):
            if "verdict" not in judgement:
                raise ValueError("Judgement dict must contain a 'verdict' key")
            return judgement
        if isinstance(judgement, tuple):
            if not judgement:
                raise ValueError("Judgement tuple cannot be empty")
            keys = ("verdict", "rationale", "merged_into")
            return dict(zip(keys, judgement))
        return {"verdict": judgement}
