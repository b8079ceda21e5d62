"""Markdown rendering for round reports and action checklists."""

from __future__ import annotations

import re
import textwrap
from typing import Dict, List, Optional

from .models import TDD_PHASES, ActionItem, Review, Round, Verdict

ACTION_LINE_PATTERN = re.compile(r"^(?P<prefix>\s*)-\s*\[(?P<mark> |x|X|~)\]\s*(?P<rest>.+)$")
ACTION_ID_PATTERN = re.compile(r"\bA\d{3,}\b", re.IGNORECASE)


def _cell(value: str) -> str:
    """Escape a value for a markdown table cell."""
    return " ".join(value.split()).replace("|", "\\|") or "-"


def _verdict_label(review_round: Round, finding_id: str) -> str:
    finding = review_round.get_finding(finding_id)
    if finding is None or finding.verdict is None:
        return "_unclassified_"
    if finding.verdict is Verdict.MERGED:
        return f"MERGED → {finding.merged_into}"
    return finding.verdict.value


def _checkbox(action: ActionItem) -> str:
    if action.completed:
        return "x"
    if action.deferred:
        return "~"
    return " "


def render_action_line(action: ActionItem) -> List[str]:
    line = f"- [{_checkbox(action)}] {action.action_id} (R{action.round_number}/{action.finding_id}) {action.description}"
    lines = [line]
    if action.deferred and action.defer_reason:
        lines.append(f"  - Deferred: {action.defer_reason}")
    return lines


def render_round_report(review: Review, review_round: Round) -> str:
    """Render one round as a markdown report."""
    counts = review_round.verdict_counts()
    summary = ", ".join(f"{key}: {value}" for key, value in counts.items() if value)

    header = textwrap.dedent(
        f"""
        # Review Round {review_round.number}: {review.title}

        **Review ID**: `{review.review_id}`
        **Document**: {review.document_path or "_not recorded_"}
        **Status**: {review_round.status}
        **Started**: {review_round.started_at}
        **Closed**: {review_round.closed_at or "_open_"}
        """
    ).strip()

    lines: List[str] = [header, "", "## Findings", ""]
    if review_round.findings:
        lines.append("| ID | Location | Verdict | Description |")
        lines.append("|----|----------|---------|-------------|")
        for finding in review_round.findings:
            lines.append(
                f"| {finding.finding_id} | {_cell(finding.location)} | "
                f"{_verdict_label(review_round, finding.finding_id)} | {_cell(finding.description)} |"
            )
        lines.append("")
        lines.append(f"_Verdicts_: {summary or 'none'}")
    else:
        lines.append("_No findings in this round._")

    rationales = [f for f in review_round.findings if f.rationale]
    if rationales:
        lines.extend(["", "## Rationale", ""])
        for finding in rationales:
            lines.append(f"- **{finding.finding_id}**: {finding.rationale}")

    valid = review_round.valid_findings()
    if valid:
        lines.extend(["", "## Remediation Options", ""])
        for finding in valid:
            lines.append(f"### {finding.finding_id}: {finding.description}")
            lines.append("")
            if not finding.options:
                lines.append("_No options presented yet._")
            for option in finding.options:
                tags = []
                if option.recommended:
                    tags.append("recommended")
                if option.defers:
                    tags.append("defers")
                if option.option_id == finding.selected_option:
                    tags.append("selected")
                suffix = f" ({', '.join(tags)})" if tags else ""
                lines.append(f"- **{option.option_id})** {option.summary}{suffix}")
                if option.detail:
                    lines.append(f"  {option.detail}")
            lines.append("")

    actions = [a for a in review.action_items if a.round_number == review_round.number]
    if actions:
        lines.extend(["## Action Items", ""])
        for action in actions:
            lines.extend(render_action_line(action))

    if review_round.status == "closed":
        lines.append("")
        if review_round.is_terminal():
            lines.append("**Outcome**: no VALID findings, review converged.")
        else:
            lines.append(f"**Outcome**: {len(valid)} VALID finding(s) addressed; run another round.")

    return "\n".join(lines).rstrip() + "\n"


def render_action_checklist(review: Review) -> str:
    """Render every action item of the review as a checklist grouped by TDD phase."""
    lines: List[str] = [f"# Action Items: {review.title}", ""]
    lines.append("Legend: `[x]` completed, `[~]` deferred, `[ ]` open.")
    lines.append("")

    if not review.action_items:
        lines.append("_No action items yet._")
        return "\n".join(lines) + "\n"

    groups: Dict[Optional[str], List[ActionItem]] = {}
    for action in review.action_items:
        groups.setdefault(action.phase, []).append(action)

    ordered = [phase for phase in TDD_PHASES if phase in groups]
    if None in groups:
        ordered.append(None)

    for phase in ordered:
        if len(groups) > 1 or phase is not None:
            lines.append(f"## {phase or 'Unphased'}")
            lines.append("")
        for action in groups[phase]:
            lines.extend(render_action_line(action))
            for note in action.notes:
                lines.append(f"  - Note: {note}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def parse_action_checklist(text: str) -> Dict[str, str]:
    """Read checkbox states back from a rendered checklist.

    Returns a mapping of action id to ``"completed"``, ``"deferred"`` or ``"open"``.
    Lines without an action id are ignored.
    """
    states: Dict[str, str] = {}
    for line in text.splitlines():
        match = ACTION_LINE_PATTERN.match(line)
        if not match:
            continue
        id_match = ACTION_ID_PATTERN.search(match.group("rest"))
        if not id_match:
            continue
        mark = match.group("mark").lower()
        if mark == "x":
            state = "completed"
        elif mark == "~":
            state = "deferred"
        else:
            state = "open"
        states[id_match.group(0).upper()] = state
    return states
