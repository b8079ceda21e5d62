"""MCP server exposing the review-loop workflow tools."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from reviewloop.models import Verdict
from reviewloop.reviewloop_logging import setup_logging
from reviewloop.workflow import (
    get_workflow_guide as _workflow_guide,
    lookup_review_root as _lookup_review_root,
    register_review_root as _register_review_root,
)
from reviewloop.workspace import DEFAULT_STORAGE_DIR, Workspace

mcp = FastMCP("review-loop")


SERVER_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT_ENV = "REVIEWLOOP_PROJECT_ROOT"
LOG_LEVEL_ENV = "REVIEWLOOP_LOG_LEVEL"
LOG_FILE_ENV = "REVIEWLOOP_LOG_FILE"


def _marker_directory() -> str:
    return os.getenv(Workspace.STORAGE_DIR_ENV) or DEFAULT_STORAGE_DIR


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    seen: set[Path] = set()
    ordered: List[Path] = []
    for base in bases:
        if base not in seen:
            seen.add(base)
            ordered.append(base)
    return ordered


def _locate_workspace_root() -> Optional[Path]:
    marker = _marker_directory()
    for base in _candidate_bases():
        if (base / marker).exists():
            return base
    return None


def _locate_existing_storage(review_id: str) -> Optional[Path]:
    marker = _marker_directory()
    registered = _lookup_review_root(review_id)
    if registered and (registered / marker / "reviews" / review_id).exists():
        return registered

    for base in _candidate_bases():
        if (base / marker / "reviews" / review_id).exists():
            return _register_review_root(review_id, base)
    return None


def _resolve_root(root: Optional[str], *, review_id: Optional[str] = None) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    if review_id:
        review_root = _locate_existing_storage(review_id)
        if review_root:
            return review_root

    detected_root = _locate_workspace_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _workspace(root: Optional[str], *, review_id: Optional[str] = None) -> Workspace:
    resolved = _resolve_root(root, review_id=review_id)
    workspace = Workspace(resolved)
    if review_id:
        _register_review_root(review_id, resolved)
    return workspace


def _workspace_optional(root: Optional[str]) -> Optional[Workspace]:
    try:
        return _workspace(root)
    except ValueError:
        return None


@mcp.tool()
def start_review(
    title: str,
    document_path: Optional[str] = None,
    review_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Register a design document for iterative review.
    Creates .review-loop/reviews/<review_id>/ under the project root."""

    workspace = _workspace(root)
    review = workspace.start_review(title, document_path=document_path, review_id=review_id)
    _register_review_root(review.review_id, workspace.root)
    return {
        "review": review.to_dict(),
        "review_path": str(workspace.review_path(review.review_id)),
        "next_suggested_step": "start_round",
        "workflow_tip": "Next: open round 1 with start_round",
    }


@mcp.tool()
def list_reviews(root: Optional[str] = None) -> Dict[str, Any]:
    """Enumerate the reviews stored in the workspace."""

    workspace = _workspace_optional(root)
    if not workspace:
        raise ValueError(
            f"Unable to determine project root. Provide the 'root' argument or set {PROJECT_ROOT_ENV}."
        )
    return {"reviews": workspace.list_reviews()}


@mcp.resource("review-loop://reviews")
def resource_reviews() -> str:
    """Resource view listing reviews and their progress."""

    workspace = _workspace_optional(None)
    if not workspace:
        return f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."

    reviews = workspace.list_reviews()
    if not reviews:
        return "No reviews have been started yet."

    lines = ["Design Reviews"]
    for review in reviews:
        lines.append("")
        lines.append(f"- {review['review_id']}: {review['title']} [{review['status']}]")
        lines.append(f"  Rounds: {review['rounds']}")
        if review.get("document_path"):
            lines.append(f"  Document: {review['document_path']}")
    return "\n".join(lines)


@mcp.tool()
def start_round(review_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 2: Open the next review round. The previous round must be closed."""

    workspace = _workspace(root, review_id=review_id)
    review_round = workspace.start_round(review_id)
    return {
        "review_id": review_id,
        "round": review_round.to_dict(),
        "next_suggested_step": "add_finding",
    }


@mcp.tool()
def add_finding(
    review_id: str,
    description: str,
    location: str = "",
    finding_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3: Record a finding in the open round. Ids default to F001, F002, ...
    and must be unique within the round."""

    workspace = _workspace(root, review_id=review_id)
    finding = workspace.add_finding(review_id, description, location=location, finding_id=finding_id)
    return {"review_id": review_id, "finding": finding.to_dict(), "next_suggested_step": "classify_finding"}


@mcp.tool()
def classify_finding(
    review_id: str,
    finding_id: str,
    verdict: str,
    rationale: str = "",
    merged_into: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 4: Assign a verdict: VALID, FALSE_POSITIVE, SCOPE_CREEP, ALREADY_OK or MERGED.
    MERGED needs merged_into naming a non-MERGED finding of the same round."""

    workspace = _workspace(root, review_id=review_id)
    finding = workspace.classify_finding(
        review_id, finding_id, verdict, rationale=rationale, merged_into=merged_into
    )
    return {
        "review_id": review_id,
        "finding": finding.to_dict(),
        "next_suggested_step": "present_options" if finding.verdict is Verdict.VALID else "classify_finding",
    }


@mcp.tool()
def present_options(
    review_id: str,
    finding_id: str,
    options: Optional[List[Dict[str, Any]]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 5a: Offer 2-3 remediation options for a VALID finding.
    Each option is {"summary", "detail"?, "recommended"?, "defers"?}; omit options for a default set."""

    workspace = _workspace(root, review_id=review_id)
    presented = workspace.present_options(review_id, finding_id, options)
    return {
        "review_id": review_id,
        "finding_id": finding_id,
        "options": [option.to_dict() for option in presented],
        "next_suggested_step": "select_option",
    }


@mcp.tool()
def select_option(
    review_id: str,
    finding_id: str,
    option_id: str,
    phase: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 5b: Choose a presented option; creates the finding's action item.
    phase (RED, GREEN, INTEGRATION) orders the action checklist."""

    workspace = _workspace(root, review_id=review_id)
    action = workspace.select_option(review_id, finding_id, option_id, phase=phase)
    return {
        "review_id": review_id,
        "action": action.to_dict(),
        "actions_path": str(workspace.actions_path(review_id)),
        "next_suggested_step": "close_round" if action.deferred else "complete_action",
    }


@mcp.tool()
def complete_action(
    review_id: str,
    action_id: str,
    note: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 6: Mark an action item done after applying the fix to the document."""

    workspace = _workspace(root, review_id=review_id)
    action = workspace.complete_action(review_id, action_id, note=note)
    return {
        "review_id": review_id,
        "action": action.to_dict(),
        "closure_blockers": workspace.closure_blockers(review_id),
    }


@mcp.tool()
def defer_action(review_id: str, action_id: str, reason: str, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 6 (alternative): Explicitly defer an action item, with a reason."""

    workspace = _workspace(root, review_id=review_id)
    action = workspace.defer_action(review_id, action_id, reason)
    return {
        "review_id": review_id,
        "action": action.to_dict(),
        "closure_blockers": workspace.closure_blockers(review_id),
    }


@mcp.tool()
def sync_actions(review_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Pick up checkbox changes made by hand in actions.md."""

    workspace = _workspace(root, review_id=review_id)
    return workspace.sync_actions(review_id)


@mcp.tool()
def close_round(review_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 7: Close the open round. Every finding needs a verdict and every VALID
    finding a completed or deferred action. A round without VALID findings ends the review."""

    workspace = _workspace(root, review_id=review_id)
    result = workspace.close_round(review_id)
    result["review_id"] = review_id
    result["next_suggested_step"] = None if result["converged"] else "start_round"
    return result


@mcp.tool()
def review_status(review_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Summarize rounds, verdict counts, pending actions and what blocks closing the round."""

    workspace = _workspace(root, review_id=review_id)
    return workspace.review_status(review_id)


@mcp.tool()
def render_round(review_id: str, round_number: Optional[int] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the markdown report of a round (latest round by default)."""

    workspace = _workspace(root, review_id=review_id)
    return {
        "review_id": review_id,
        "round_number": round_number,
        "content": workspace.render_round(review_id, round_number),
    }


@mcp.tool()
def get_workflow_guide() -> Dict[str, Any]:
    """Explain the review loop, the verdicts and the recommended tool order."""

    return _workflow_guide()


def main() -> None:
    log_file = os.getenv(LOG_FILE_ENV)
    setup_logging(os.getenv(LOG_LEVEL_ENV, "INFO").upper(), Path(log_file) if log_file else None)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
