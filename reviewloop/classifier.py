"""Verdict classifier.

The judgement itself belongs to the reviewer. This module records the verdict
on a finding and enforces the structural rules around it: MERGED findings
point at an existing, non-MERGED primary in the same round, and a VALID
finding that already produced an action item keeps its verdict.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .models import ActionItem, Finding, Round, Verdict, utc_timestamp

logger = logging.getLogger("reviewloop.classifier")


class VerdictClassifier:
    """Assign verdicts to the findings of one round."""

    def __init__(self, review_round: Round, action_items: Optional[List[ActionItem]] = None):
        self.round = review_round
        self.action_items = action_items or []

    def classify(
        self,
        finding_id: str,
        verdict: Verdict | str,
        *,
        rationale: str = "",
        merged_into: Optional[str] = None,
    ) -> Finding:
        """Record the reviewer's verdict for a finding."""
        if not self.round.is_open:
            raise ValueError(f"Round {self.round.number} is closed; verdicts can no longer change.")

        finding = self.round.get_finding(finding_id)
        if finding is None:
            raise ValueError(f"Finding '{finding_id}' not found in round {self.round.number}.")

        verdict = Verdict.parse(verdict)
        primary_id = self._check_merge_target(finding, verdict, merged_into)

        if finding.verdict is Verdict.VALID and verdict is not Verdict.VALID:
            if self._has_action(finding):
                raise ValueError(
                    f"Finding '{finding.finding_id}' already has an action item; defer the action instead of "
                    "reclassifying the finding."
                )
            finding.options = []
            finding.selected_option = None

        previous = finding.verdict
        finding.verdict = verdict
        finding.merged_into = primary_id
        finding.rationale = rationale.strip() if rationale else ""
        finding.classified_at = utc_timestamp()

        logger.debug(
            f"Finding {finding.finding_id} in round {self.round.number}: "
            f"{previous.value if previous else 'UNCLASSIFIED'} -> {verdict.value}"
        )
        return finding

    def merged_children(self, finding_id: str) -> List[Finding]:
        """Findings that were merged into the given primary."""
        wanted = finding_id.upper()
        return [
            f for f in self.round.findings
            if f.verdict is Verdict.MERGED and f.merged_into and f.merged_into.upper() == wanted
        ]

    def _check_merge_target(self, finding: Finding, verdict: Verdict, merged_into: Optional[str]) -> Optional[str]:
        if verdict is not Verdict.MERGED:
            if merged_into:
                raise ValueError("merged_into is only allowed with the MERGED verdict")
            return None

        if not merged_into or not merged_into.strip():
            raise ValueError("MERGED verdict requires merged_into to name the primary finding")

        primary = self.round.get_finding(merged_into)
        if primary is None:
            raise ValueError(
                f"Primary finding '{merged_into}' does not exist in round {self.round.number}."
            )
        if primary is finding:
            raise ValueError(f"Finding '{finding.finding_id}' cannot be merged into itself.")
        if primary.verdict is Verdict.MERGED:
            raise ValueError(
                f"Primary finding '{primary.finding_id}' is itself MERGED into '{primary.merged_into}'; "
                "merge into that finding instead."
            )
        if self.merged_children(finding.finding_id):
            raise ValueError(
                f"Finding '{finding.finding_id}' is the primary of merged findings and cannot be MERGED."
            )
        return primary.finding_id

    def _has_action(self, finding: Finding) -> bool:
        wanted = finding.finding_id.upper()
        return any(
            a.round_number == self.round.number and a.finding_id.upper() == wanted
            for a in self.action_items
        )
