"""Issue registry: findings recorded during a single review round."""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from .models import DuplicateFindingError, Finding, Round

logger = logging.getLogger("reviewloop.registry")

_FINDING_ID_PATTERN = re.compile(r"^F(\d+)$", re.IGNORECASE)


class IssueRegistry:
    """Accept findings for one round, rejecting duplicate ids."""

    def __init__(self, review_round: Round):
        self.round = review_round

    def next_finding_id(self) -> str:
        highest = 0
        for finding in self.round.findings:
            match = _FINDING_ID_PATTERN.match(finding.finding_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"F{highest + 1:03d}"

    def add(
        self,
        description: str,
        location: str = "",
        finding_id: Optional[str] = None,
    ) -> Finding:
        """Register a new finding in the round."""
        if not self.round.is_open:
            raise ValueError(f"Round {self.round.number} is closed; start a new round to add findings.")
        if not description or not description.strip():
            raise ValueError("Finding description cannot be empty")

        if finding_id is None or not finding_id.strip():
            finding_id = self.next_finding_id()
        finding_id = finding_id.strip().upper()

        if self.round.get_finding(finding_id) is not None:
            raise DuplicateFindingError(
                f"Finding '{finding_id}' already exists in round {self.round.number}."
            )

        finding = Finding(
            finding_id=finding_id,
            location=location.strip(),
            description=description.strip(),
        )
        self.round.findings.append(finding)
        logger.debug(f"Registered finding {finding_id} in round {self.round.number}")
        return finding

    def get(self, finding_id: str) -> Finding:
        finding = self.round.get_finding(finding_id)
        if finding is None:
            raise ValueError(f"Finding '{finding_id}' not found in round {self.round.number}.")
        return finding

    def findings(self) -> List[Finding]:
        return list(self.round.findings)

    def __len__(self) -> int:
        return len(self.round.findings)
