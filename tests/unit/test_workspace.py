"""Unit tests for review-loop workspace functionality.

This module tests review storage, the persisted round operations
and the markdown artifacts written next to each review.
"""

import json
import tempfile
from pathlib import Path

import pytest

from reviewloop.models import DuplicateFindingError, Verdict
from reviewloop.reviewloop_logging import observability_hooks
from reviewloop.workspace import Workspace


def _with_valid_finding(workspace, review_id):
    workspace.start_round(review_id)
    workspace.add_finding(review_id, "Password reset flow missing", location="§4")
    workspace.classify_finding(review_id, "F001", "VALID")
    workspace.present_options(review_id, "F001")
    return workspace.select_option(review_id, "F001", "A")


class TestWorkspaceInitialization:
    """Test cases for workspace initialization."""

    def test_workspace_creation(self, tmp_path):
        """Test creating a new workspace."""
        workspace = Workspace(tmp_path)

        assert workspace.root == tmp_path.resolve()
        assert workspace.base_dir == tmp_path.resolve() / ".review-loop"
        assert workspace.reviews_dir.exists()

    def test_workspace_with_custom_storage_dir(self, tmp_path, monkeypatch):
        """Test workspace with custom storage directory."""
        monkeypatch.setenv("REVIEWLOOP_STORAGE_DIR", ".custom-reviews")
        workspace = Workspace(tmp_path)

        assert workspace.base_dir == tmp_path.resolve() / ".custom-reviews"
        assert workspace.base_dir.exists()

    def test_workspace_with_string_path(self):
        """Test workspace creation with string path."""
        with tempfile.TemporaryDirectory() as temp_dir:
            workspace = Workspace(temp_dir)
            assert workspace.root == Path(temp_dir).resolve()


class TestReviewStorage:
    """Test cases for creating and loading reviews."""

    def test_start_review(self, tmp_path):
        """Test starting a review writes review.json and actions.md."""
        workspace = Workspace(tmp_path)
        review = workspace.start_review("Payments API Design", document_path="docs/payments.md")

        assert review.review_id == "001-payments-api-design"
        assert workspace.review_path(review.review_id).exists()
        assert workspace.actions_path(review.review_id).exists()

        data = json.loads(workspace.review_path(review.review_id).read_text(encoding="utf-8"))
        assert data["title"] == "Payments API Design"
        assert data["document_path"] == "docs/payments.md"
        assert data["status"] == "in_progress"

    def test_review_ids_are_numbered(self, tmp_path):
        """Test review ids get increasing number prefixes."""
        workspace = Workspace(tmp_path)
        first = workspace.start_review("Design")
        second = workspace.start_review("Design")

        assert first.review_id == "001-design"
        assert second.review_id == "002-design"

    def test_explicit_review_id(self, tmp_path):
        """Test an explicit review id is slugified and prefixed."""
        workspace = Workspace(tmp_path)
        review = workspace.start_review("Anything", review_id="Auth Backlog")
        assert review.review_id == "001-auth-backlog"

    def test_duplicate_explicit_review_id(self, tmp_path):
        """Test an explicit id that already exists is rejected."""
        workspace = Workspace(tmp_path)
        workspace.start_review("A", review_id="001-auth")
        with pytest.raises(ValueError, match="already exists"):
            workspace.start_review("B", review_id="001-auth")

    def test_empty_title(self, tmp_path):
        """Test an empty title is rejected."""
        with pytest.raises(ValueError, match="title cannot be empty"):
            Workspace(tmp_path).start_review("  ")

    def test_load_missing_review(self, tmp_path):
        """Test loading a review that does not exist."""
        with pytest.raises(FileNotFoundError, match="start_review"):
            Workspace(tmp_path).load_review("404-nothing")

    def test_load_corrupt_review(self, tmp_path):
        """Test a corrupt review file raises RuntimeError."""
        workspace = Workspace(tmp_path)
        review = workspace.start_review("Design")
        workspace.review_path(review.review_id).write_text("{not json", encoding="utf-8")

        with pytest.raises(RuntimeError, match="not valid JSON"):
            workspace.load_review(review.review_id)

    def test_load_inconsistent_review(self, tmp_path):
        """Test hand edits that break finding rules are rejected on load."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        workspace.start_round(review_id)
        workspace.add_finding(review_id, "Primary")
        workspace.add_finding(review_id, "Duplicate")
        workspace.classify_finding(review_id, "F001", "VALID")
        workspace.classify_finding(review_id, "F002", "MERGED", merged_into="F001")
        workspace.present_options(review_id, "F001")

        path = workspace.review_path(review_id)
        data = json.loads(path.read_text(encoding="utf-8"))
        findings = data["rounds"][0]["findings"]
        findings[0]["selected_option"] = "Z"
        findings[1]["merged_into"] = None
        path.write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(RuntimeError, match="inconsistent") as excinfo:
            workspace.load_review(review_id)

        message = str(excinfo.value)
        assert "F001: Selected option 'Z' was never presented" in message
        assert "F002: MERGED findings must reference a primary finding" in message

    def test_list_reviews(self, tmp_path):
        """Test listing reviews with their progress."""
        workspace = Workspace(tmp_path)
        review = workspace.start_review("Design")
        workspace.start_round(review.review_id)

        reviews = workspace.list_reviews()

        assert len(reviews) == 1
        assert reviews[0]["review_id"] == review.review_id
        assert reviews[0]["rounds"] == 1
        assert reviews[0]["current_round_open"] is True


class TestRoundOperations:
    """Test cases for persisted round operations."""

    def test_operations_are_persisted(self, tmp_path):
        """Test every operation survives a reload."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)

        reloaded = Workspace(tmp_path).load_review(review_id)
        finding = reloaded.rounds[0].get_finding("F001")

        assert finding.verdict is Verdict.VALID
        assert finding.selected_option == "A"
        assert reloaded.get_action(action.action_id) is not None

    def test_round_report_written(self, tmp_path):
        """Test each round gets a markdown report."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        _with_valid_finding(workspace, review_id)

        report = workspace.round_report_path(review_id, 1).read_text(encoding="utf-8")
        assert "| F001 | §4 | VALID | Password reset flow missing |" in report

    def test_duplicate_finding(self, tmp_path):
        """Test duplicate finding ids are rejected and nothing is saved."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        workspace.start_round(review_id)
        workspace.add_finding(review_id, "x", finding_id="F001")

        with pytest.raises(DuplicateFindingError):
            workspace.add_finding(review_id, "y", finding_id="F001")

        assert len(workspace.load_review(review_id).rounds[0].findings) == 1

    def test_failed_operation_does_not_save(self, tmp_path):
        """Test a failing operation leaves the stored review untouched."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        workspace.start_round(review_id)
        workspace.add_finding(review_id, "x")
        before = workspace.review_path(review_id).read_text(encoding="utf-8")

        with pytest.raises(ValueError):
            workspace.classify_finding(review_id, "F001", "MERGED", merged_into="F404")

        assert workspace.review_path(review_id).read_text(encoding="utf-8") == before

    def test_close_round_and_converge(self, tmp_path):
        """Test closing rounds until the review converges."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)
        workspace.complete_action(review_id, action.action_id, note="Section added")

        first = workspace.close_round(review_id)
        assert first["converged"] is False
        assert first["valid_findings"] == 1

        workspace.start_round(review_id)
        workspace.add_finding(review_id, "Reset flow looks fine now")
        workspace.classify_finding(review_id, "F001", "already_ok")
        second = workspace.close_round(review_id)

        assert second["converged"] is True
        assert Path(second["report_path"]).exists()
        assert workspace.load_review(review_id).is_converged

    def test_close_round_blocked(self, tmp_path):
        """Test closure blockers are reported for the open round."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        _with_valid_finding(workspace, review_id)

        assert len(workspace.closure_blockers(review_id)) == 1
        with pytest.raises(ValueError, match="cannot be closed"):
            workspace.close_round(review_id)

    def test_defer_action(self, tmp_path):
        """Test deferring an action persists the reason."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)

        deferred = workspace.defer_action(review_id, action.action_id, "Handled by the identity team")

        assert deferred.deferred
        assert workspace.list_actions(review_id, pending_only=True) == []
        assert workspace.closure_blockers(review_id) == []

    def test_render_round(self, tmp_path):
        """Test rendering the latest round and a missing round."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id

        with pytest.raises(ValueError, match="no rounds"):
            workspace.render_round(review_id)

        workspace.start_round(review_id)
        assert workspace.render_round(review_id).startswith("# Review Round 1")
        with pytest.raises(ValueError, match="Round 7 not found"):
            workspace.render_round(review_id, 7)

    def test_review_status(self, tmp_path):
        """Test the status view of an in-progress review."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        _with_valid_finding(workspace, review_id)

        status = workspace.review_status(review_id)

        assert status["review"]["total_findings"] == 1
        assert status["review"]["pending_actions"] == 1
        assert status["current_round"]["number"] == 1
        assert len(status["pending_actions"]) == 1
        assert status["closure_blockers"]

    def test_events_fire_hooks(self, tmp_path):
        """Test review events reach registered observability hooks."""
        events = []
        observability_hooks.register_hook("finding_classified", lambda **data: events.append(data))

        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        workspace.start_round(review_id)
        workspace.add_finding(review_id, "x")
        workspace.classify_finding(review_id, "F001", "FALSE_POSITIVE")

        assert len(events) == 1
        assert events[0]["review_id"] == review_id
        assert events[0]["verdict"] == "FALSE_POSITIVE"


class TestSyncActions:
    """Test cases for reading checkbox edits back from actions.md."""

    def test_ticked_box_completes_action(self, tmp_path):
        """Test ticking a box by hand completes the action."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)
        path = workspace.actions_path(review_id)
        path.write_text(
            path.read_text(encoding="utf-8").replace(f"- [ ] {action.action_id}", f"- [x] {action.action_id}"),
            encoding="utf-8",
        )

        result = workspace.sync_actions(review_id)

        assert result["changed"] == [action.action_id]
        assert workspace.load_review(review_id).get_action(action.action_id).completed
        assert f"- [x] {action.action_id}" in path.read_text(encoding="utf-8")

    def test_unticked_deferred_box_reopens_action(self, tmp_path):
        """Test clearing a [~] box by hand reopens the deferred action."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        workspace.start_round(review_id)
        workspace.add_finding(review_id, "Password reset flow missing")
        workspace.classify_finding(review_id, "F001", "VALID")
        workspace.present_options(review_id, "F001")
        action = workspace.select_option(review_id, "F001", "C")
        assert action.deferred

        path = workspace.actions_path(review_id)
        path.write_text(
            path.read_text(encoding="utf-8").replace(f"- [~] {action.action_id}", f"- [ ] {action.action_id}"),
            encoding="utf-8",
        )

        result = workspace.sync_actions(review_id)

        stored = workspace.load_review(review_id).get_action(action.action_id)
        assert result["changed"] == [action.action_id]
        assert not stored.deferred
        assert not stored.completed
        assert stored.defer_reason is None
        assert f"- [ ] {action.action_id}" in path.read_text(encoding="utf-8")
        with pytest.raises(ValueError, match="neither completed nor deferred"):
            workspace.close_round(review_id)

    def test_ticked_box_in_closed_round_is_skipped(self, tmp_path):
        """Test a deferred action of a closed round is not completed by a sync."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)
        workspace.defer_action(review_id, action.action_id, "Handled by the identity team")
        workspace.close_round(review_id)
        path = workspace.actions_path(review_id)
        path.write_text(
            path.read_text(encoding="utf-8").replace(f"- [~] {action.action_id}", f"- [x] {action.action_id}"),
            encoding="utf-8",
        )

        result = workspace.sync_actions(review_id)

        assert result["changed"] == []
        assert "closed round 1" in result["skipped"][0]["reason"]
        assert workspace.load_review(review_id).get_action(action.action_id).deferred

    def test_unticked_box_in_closed_round_is_skipped(self, tmp_path):
        """Test actions of closed rounds are not reopened by a sync."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)
        workspace.complete_action(review_id, action.action_id)
        workspace.close_round(review_id)
        path = workspace.actions_path(review_id)
        path.write_text(
            path.read_text(encoding="utf-8").replace(f"- [x] {action.action_id}", f"- [ ] {action.action_id}"),
            encoding="utf-8",
        )

        result = workspace.sync_actions(review_id)

        assert result["changed"] == []
        assert result["skipped"][0]["action_id"] == action.action_id
        assert workspace.load_review(review_id).get_action(action.action_id).completed

    def test_unknown_and_new_deferrals_are_skipped(self, tmp_path):
        """Test unknown ids and reason-less deferrals are reported, not applied."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        action = _with_valid_finding(workspace, review_id)
        path = workspace.actions_path(review_id)
        content = path.read_text(encoding="utf-8").replace(f"- [ ] {action.action_id}", f"- [~] {action.action_id}")
        path.write_text(content + "- [x] A999 (R1/F009) Stray line\n", encoding="utf-8")

        result = workspace.sync_actions(review_id)

        reasons = {entry["action_id"]: entry["reason"] for entry in result["skipped"]}
        assert reasons["A999"] == "unknown action"
        assert "defer_action" in reasons[action.action_id]
        assert not workspace.load_review(review_id).get_action(action.action_id).deferred

    def test_option_newlines_do_not_create_checklist_lines(self, tmp_path):
        """Test a multi-line option summary renders as a single checklist entry."""
        workspace = Workspace(tmp_path)
        review_id = workspace.start_review("Design").review_id
        workspace.start_round(review_id)
        workspace.add_finding(review_id, "Password reset flow missing")
        workspace.classify_finding(review_id, "F001", "VALID")
        workspace.present_options(review_id, "F001", ["Add flow\n- [x] A005 (R1/F009) Forged", "Defer"])
        workspace.select_option(review_id, "F001", "A")

        result = workspace.sync_actions(review_id)

        assert result["changed"] == []
        assert result["skipped"] == []
