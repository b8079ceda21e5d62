"""Data models for review-loop.

This module contains the core data structures used throughout the review
workflow: findings and their verdicts, remediation options, action items,
rounds and the review that ties them together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds") + "Z"


class DuplicateFindingError(ValueError):
    """Raised when a finding id is already registered in a round."""


class Verdict(str, Enum):
    """Closed set of outcomes a reviewer can assign to a finding."""

    VALID = "VALID"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    SCOPE_CREEP = "SCOPE_CREEP"
    ALREADY_OK = "ALREADY_OK"
    MERGED = "MERGED"

    @classmethod
    def parse(cls, value: "Verdict | str") -> "Verdict":
        """Parse a verdict name, tolerating case and '-'/' ' separators."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(v.value for v in cls)
            raise ValueError(f"Unknown verdict '{value}'. Expected one of: {allowed}") from None

    @property
    def actionable(self) -> bool:
        return self is Verdict.VALID


# Ordering used when rendering action checklists.
TDD_PHASES = ("RED", "GREEN", "INTEGRATION")


@dataclass(slots=True)
class RemediationOption:
    """One of the 2-3 choices offered for a VALID finding."""

    option_id: str
    summary: str
    detail: str = ""
    recommended: bool = False
    defers: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "option_id": self.option_id,
            "summary": self.summary,
            "detail": self.detail,
            "recommended": self.recommended,
            "defers": self.defers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemediationOption":
        return cls(
            option_id=data["option_id"],
            summary=data["summary"],
            detail=data.get("detail", ""),
            recommended=data.get("recommended", False),
            defers=data.get("defers", False),
        )


@dataclass(slots=True)
class Finding:
    """A single issue raised against the document during one round."""

    finding_id: str
    location: str
    description: str
    verdict: Optional[Verdict] = None
    merged_into: Optional[str] = None
    rationale: str = ""
    options: List[RemediationOption] = field(default_factory=list)
    selected_option: Optional[str] = None
    created_at: str = field(default_factory=utc_timestamp)
    classified_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "finding_id": self.finding_id,
            "location": self.location,
            "description": self.description,
            "verdict": self.verdict.value if self.verdict else None,
            "merged_into": self.merged_into,
            "rationale": self.rationale,
            "options": [option.to_dict() for option in self.options],
            "selected_option": self.selected_option,
            "created_at": self.created_at,
            "classified_at": self.classified_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        """Create from dictionary representation."""
        verdict = data.get("verdict")
        return cls(
            finding_id=data["finding_id"],
            location=data.get("location", ""),
            description=data["description"],
            verdict=Verdict.parse(verdict) if verdict else None,
            merged_into=data.get("merged_into"),
            rationale=data.get("rationale", ""),
            options=[RemediationOption.from_dict(o) for o in data.get("options", [])],
            selected_option=data.get("selected_option"),
            created_at=data.get("created_at", utc_timestamp()),
            classified_at=data.get("classified_at"),
        )

    @property
    def is_classified(self) -> bool:
        return self.verdict is not None

    @property
    def is_actionable(self) -> bool:
        return self.verdict is Verdict.VALID

    def get_option(self, option_id: str) -> Optional[RemediationOption]:
        wanted = option_id.strip().upper()
        for option in self.options:
            if option.option_id == wanted:
                return option
        return None

    def validate(self) -> List[str]:
        """Validate the finding and return any issues."""
        issues = []

        if not self.finding_id:
            issues.append("Finding ID is required")
        if not self.description:
            issues.append("Description is required")
        if self.verdict is Verdict.MERGED and not self.merged_into:
            issues.append("MERGED findings must reference a primary finding")
        if self.verdict is not Verdict.MERGED and self.merged_into:
            issues.append("Only MERGED findings may reference a primary finding")
        if self.options and not 2 <= len(self.options) <= 3:
            issues.append(f"Expected 2-3 remediation options, got {len(self.options)}")
        if self.selected_option and not self.get_option(self.selected_option):
            issues.append(f"Selected option '{self.selected_option}' was never presented")

        return issues


@dataclass(slots=True)
class ActionItem:
    """Checklist entry derived from a VALID finding."""

    action_id: str
    finding_id: str
    round_number: int
    description: str
    completed: bool = False
    deferred: bool = False
    defer_reason: Optional[str] = None
    phase: Optional[str] = None
    addressed_in_round: Optional[int] = None
    notes: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "action_id": self.action_id,
            "finding_id": self.finding_id,
            "round_number": self.round_number,
            "description": self.description,
            "completed": self.completed,
            "deferred": self.deferred,
            "defer_reason": self.defer_reason,
            "phase": self.phase,
            "addressed_in_round": self.addressed_in_round,
            "notes": list(self.notes),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionItem":
        """Create from dictionary representation."""
        return cls(
            action_id=data["action_id"],
            finding_id=data["finding_id"],
            round_number=data["round_number"],
            description=data["description"],
            completed=data.get("completed", False),
            deferred=data.get("deferred", False),
            defer_reason=data.get("defer_reason"),
            phase=data.get("phase"),
            addressed_in_round=data.get("addressed_in_round"),
            notes=data.get("notes", []),
            created_at=data.get("created_at", utc_timestamp()),
            updated_at=data.get("updated_at", utc_timestamp()),
        )

    @property
    def is_resolved(self) -> bool:
        """Completed or explicitly deferred."""
        return self.completed or self.deferred

    def add_note(self, note: str) -> None:
        """Add a note with timestamp."""
        timestamp = utc_timestamp()
        self.notes.append(f"{timestamp}: {note}")
        self.updated_at = timestamp

    def mark_completed(self, note: Optional[str] = None, *, round_number: Optional[int] = None) -> None:
        """Tick the checkbox and record which round addressed it."""
        self.completed = True
        self.deferred = False
        self.defer_reason = None
        self.addressed_in_round = round_number if round_number is not None else self.round_number
        self.add_note(note or "Action marked as completed")

    def mark_open(self, note: Optional[str] = None) -> None:
        self.completed = False
        self.deferred = False
        self.defer_reason = None
        self.addressed_in_round = None
        self.add_note(note or "Action reopened")

    def defer(self, reason: str) -> None:
        """Explicitly defer the action instead of fixing it."""
        if not reason or not reason.strip():
            raise ValueError("A reason is required to defer an action")
        self.deferred = True
        self.completed = False
        self.defer_reason = reason.strip()
        self.add_note(f"Deferred: {self.defer_reason}")


@dataclass(slots=True)
class Round:
    """Ordered collection of findings produced by one review pass."""

    number: int
    findings: List[Finding] = field(default_factory=list)
    status: str = "open"  # 'open', 'closed'
    started_at: str = field(default_factory=utc_timestamp)
    closed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "number": self.number,
            "status": self.status,
            "started_at": self.started_at,
            "closed_at": self.closed_at,
            "findings": [finding.to_dict() for finding in self.findings],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Round":
        """Create from dictionary representation."""
        return cls(
            number=data["number"],
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            status=data.get("status", "open"),
            started_at=data.get("started_at", utc_timestamp()),
            closed_at=data.get("closed_at"),
        )

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def get_finding(self, finding_id: str) -> Optional[Finding]:
        wanted = finding_id.strip().upper()
        for finding in self.findings:
            if finding.finding_id.upper() == wanted:
                return finding
        return None

    def valid_findings(self) -> List[Finding]:
        return [f for f in self.findings if f.verdict is Verdict.VALID]

    def unclassified_findings(self) -> List[Finding]:
        return [f for f in self.findings if f.verdict is None]

    def verdict_counts(self) -> Dict[str, int]:
        """Count findings per verdict; unclassified ones under 'UNCLASSIFIED'."""
        counts = {verdict.value: 0 for verdict in Verdict}
        counts["UNCLASSIFIED"] = 0
        for finding in self.findings:
            key = finding.verdict.value if finding.verdict else "UNCLASSIFIED"
            counts[key] += 1
        return counts

    def is_terminal(self) -> bool:
        """Fully classified and nothing left to act on."""
        return not self.unclassified_findings() and not self.valid_findings()


@dataclass(slots=True)
class Review:
    """A document under review and the rounds run against it."""

    review_id: str
    title: str
    document_path: Optional[str] = None
    rounds: List[Round] = field(default_factory=list)
    action_items: List[ActionItem] = field(default_factory=list)
    status: str = "in_progress"  # 'in_progress', 'converged'
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)
    converged_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "review_id": self.review_id,
            "title": self.title,
            "document_path": self.document_path,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "converged_at": self.converged_at,
            "rounds": [r.to_dict() for r in self.rounds],
            "action_items": [a.to_dict() for a in self.action_items],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Review":
        """Create from dictionary representation."""
        return cls(
            review_id=data["review_id"],
            title=data["title"],
            document_path=data.get("document_path"),
            rounds=[Round.from_dict(r) for r in data.get("rounds", [])],
            action_items=[ActionItem.from_dict(a) for a in data.get("action_items", [])],
            status=data.get("status", "in_progress"),
            created_at=data.get("created_at", utc_timestamp()),
            updated_at=data.get("updated_at", utc_timestamp()),
            converged_at=data.get("converged_at"),
        )

    @property
    def is_converged(self) -> bool:
        return self.status == "converged"

    def get_round(self, number: int) -> Optional[Round]:
        for review_round in self.rounds:
            if review_round.number == number:
                return review_round
        return None

    def get_action(self, action_id: str) -> Optional[ActionItem]:
        wanted = action_id.strip().upper()
        for action in self.action_items:
            if action.action_id.upper() == wanted:
                return action
        return None

    def actions_for_finding(self, round_number: int, finding_id: str) -> List[ActionItem]:
        wanted = finding_id.upper()
        return [
            a for a in self.action_items
            if a.round_number == round_number and a.finding_id.upper() == wanted
        ]

    def touch(self) -> None:
        self.updated_at = utc_timestamp()


@dataclass(slots=True)
class ReviewStatus:
    """Aggregate counters for one review."""

    review_id: str
    title: str
    status: str
    total_rounds: int = 0
    current_round: Optional[int] = None
    current_round_open: bool = False
    total_findings: int = 0
    verdict_counts: Dict[str, int] = field(default_factory=dict)
    total_actions: int = 0
    completed_actions: int = 0
    deferred_actions: int = 0
    pending_actions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "review_id": self.review_id,
            "title": self.title,
            "status": self.status,
            "total_rounds": self.total_rounds,
            "current_round": self.current_round,
            "current_round_open": self.current_round_open,
            "total_findings": self.total_findings,
            "verdict_counts": dict(self.verdict_counts),
            "total_actions": self.total_actions,
            "completed_actions": self.completed_actions,
            "deferred_actions": self.deferred_actions,
            "pending_actions": self.pending_actions,
            "resolution_rate": self.get_resolution_rate(),
        }

    def get_resolution_rate(self) -> float:
        """Share of action items completed or deferred, as a percentage."""
        if self.total_actions == 0:
            return 0.0
        return ((self.completed_actions + self.deferred_actions) / self.total_actions) * 100


@dataclass(slots=True)
class WorkflowStep:
    """Represents a single step in the review workflow."""

    step_number: int
    name: str
    tool_name: str
    description: str
    purpose: str
    prerequisites: List[str] = field(default_factory=list)
    expected_output: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "step_number": self.step_number,
            "name": self.name,
            "tool_name": self.tool_name,
            "description": self.description,
            "purpose": self.purpose,
            "prerequisites": list(self.prerequisites),
            "expected_output": self.expected_output,
        }

    def can_execute(self, completed_steps: List[str]) -> bool:
        """Check if this step can be executed based on prerequisites."""
        return all(prereq in completed_steps for prereq in self.prerequisites)


# Workflow step definitions
WORKFLOW_STEPS = [
    WorkflowStep(
        step_number=1,
        name="Review Setup",
        tool_name="start_review",
        description="Register the design document that is going to be reviewed",
        purpose="Create the review record all rounds hang off",
        expected_output="Review saved to .review-loop/reviews/{review_id}/review.json",
    ),
    WorkflowStep(
        step_number=2,
        name="Round Start",
        tool_name="start_round",
        description="Open a new review round",
        purpose="Collect the findings of one review pass together",
        prerequisites=["Review Setup"],
        expected_output="Round N opened",
    ),
    WorkflowStep(
        step_number=3,
        name="Finding Collection",
        tool_name="add_finding",
        description="Record every issue found in this pass with its location",
        purpose="Build the round's issue registry",
        prerequisites=["Round Start"],
    ),
    WorkflowStep(
        step_number=4,
        name="Verdict Assignment",
        tool_name="classify_finding",
        description="Assign VALID, FALSE_POSITIVE, SCOPE_CREEP, ALREADY_OK or MERGED to each finding",
        purpose="Separate real problems from noise before anything is changed",
        prerequisites=["Finding Collection"],
    ),
    WorkflowStep(
        step_number=5,
        name="Option Presentation",
        tool_name="present_options, select_option",
        description="Offer 2-3 remediation options for every VALID finding and pick one",
        purpose="Make the fix a deliberate choice and turn it into an action item",
        prerequisites=["Verdict Assignment"],
        expected_output="Action items listed in .review-loop/reviews/{review_id}/actions.md",
    ),
    WorkflowStep(
        step_number=6,
        name="Fix Application",
        tool_name="complete_action, defer_action, sync_actions",
        description="Apply each selected fix to the document or defer it explicitly",
        purpose="Resolve every action item of the round",
        prerequisites=["Option Presentation"],
    ),
    WorkflowStep(
        step_number=7,
        name="Round Closure",
        tool_name="close_round",
        description="Close the round; a round without VALID findings ends the review",
        purpose="Decide whether another pass is needed",
        prerequisites=["Fix Application"],
        expected_output="Round report saved to .review-loop/reviews/{review_id}/round-NN.md",
    ),
]
