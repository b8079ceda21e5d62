"""Unit tests for review-loop models.

This module tests the core data structures and their validation,
serialization, and state-transition methods.
"""

import pytest

from reviewloop.models import (
    ActionItem,
    Finding,
    RemediationOption,
    Review,
    ReviewStatus,
    Round,
    Verdict,
    WorkflowStep,
    WORKFLOW_STEPS,
)


class TestVerdict:
    """Test cases for the Verdict enumeration."""

    def test_verdict_members(self):
        """Test the closed set of verdicts."""
        assert {v.value for v in Verdict} == {
            "VALID", "FALSE_POSITIVE", "SCOPE_CREEP", "ALREADY_OK", "MERGED"
        }

    @pytest.mark.parametrize("raw", ["valid", "Valid", " VALID "])
    def test_parse_is_case_insensitive(self, raw):
        """Test parsing tolerates case and whitespace."""
        assert Verdict.parse(raw) is Verdict.VALID

    @pytest.mark.parametrize("raw", ["false-positive", "false positive", "FALSE_POSITIVE"])
    def test_parse_accepts_separators(self, raw):
        """Test parsing accepts dash and space separators."""
        assert Verdict.parse(raw) is Verdict.FALSE_POSITIVE

    def test_parse_unknown_verdict(self):
        """Test parsing an unknown verdict lists the allowed values."""
        with pytest.raises(ValueError, match="Expected one of"):
            Verdict.parse("MAYBE")

    def test_parse_passes_through_enum(self):
        """Test parsing an enum member returns it unchanged."""
        assert Verdict.parse(Verdict.MERGED) is Verdict.MERGED

    def test_only_valid_is_actionable(self):
        """Test that only VALID findings need action."""
        assert Verdict.VALID.actionable
        assert not any(v.actionable for v in Verdict if v is not Verdict.VALID)


class TestFinding:
    """Test cases for Finding model."""

    def test_finding_defaults(self):
        """Test a new finding starts unclassified."""
        finding = Finding(finding_id="F001", location="§2.1", description="Retry policy undefined")

        assert finding.verdict is None
        assert not finding.is_classified
        assert not finding.is_actionable
        assert finding.options == []
        assert finding.created_at.endswith("Z")

    def test_finding_round_trip(self):
        """Test serializing and restoring a classified finding."""
        finding = Finding(
            finding_id="F002",
            location="§3",
            description="Duplicate of F001",
            verdict=Verdict.MERGED,
            merged_into="F001",
            rationale="Same root cause",
        )

        restored = Finding.from_dict(finding.to_dict())

        assert restored.verdict is Verdict.MERGED
        assert restored.merged_into == "F001"
        assert restored.rationale == "Same root cause"
        assert finding.to_dict()["verdict"] == "MERGED"

    def test_finding_from_dict_unclassified(self):
        """Test restoring a finding without verdict."""
        finding = Finding.from_dict({"finding_id": "F001", "description": "Missing timeout"})
        assert finding.verdict is None
        assert finding.location == ""

    def test_validate_merged_without_target(self):
        """Test validation flags MERGED findings without a primary."""
        finding = Finding(finding_id="F001", location="", description="x", verdict=Verdict.MERGED)
        assert "MERGED findings must reference a primary finding" in finding.validate()

    def test_validate_target_without_merge(self):
        """Test validation flags a primary reference on a non-MERGED finding."""
        finding = Finding(
            finding_id="F001", location="", description="x", verdict=Verdict.VALID, merged_into="F002"
        )
        assert "Only MERGED findings may reference a primary finding" in finding.validate()

    def test_validate_option_count(self):
        """Test validation flags a single remediation option."""
        finding = Finding(
            finding_id="F001",
            location="",
            description="x",
            verdict=Verdict.VALID,
            options=[RemediationOption(option_id="A", summary="Fix it")],
        )
        assert any("2-3 remediation options" in issue for issue in finding.validate())

    def test_get_option_case_insensitive(self):
        """Test looking up an option by lower-case id."""
        finding = Finding(
            finding_id="F001",
            location="",
            description="x",
            options=[
                RemediationOption(option_id="A", summary="Fix"),
                RemediationOption(option_id="B", summary="Defer", defers=True),
            ],
        )
        assert finding.get_option("b").defers is True
        assert finding.get_option("C") is None


class TestActionItem:
    """Test cases for ActionItem model."""

    def _action(self):
        return ActionItem(action_id="A001", finding_id="F001", round_number=1, description="Add retry section")

    def test_mark_completed(self):
        """Test completing an action records the addressing round."""
        action = self._action()
        action.mark_completed("Section 4 rewritten", round_number=2)

        assert action.completed
        assert action.is_resolved
        assert action.addressed_in_round == 2
        assert action.notes[-1].endswith("Section 4 rewritten")

    def test_defer_requires_reason(self):
        """Test deferring without a reason is rejected."""
        action = self._action()
        with pytest.raises(ValueError, match="reason"):
            action.defer("  ")

    def test_defer_then_complete(self):
        """Test completing a deferred action clears the deferral."""
        action = self._action()
        action.defer("Out of budget for v1")
        assert action.deferred and action.is_resolved

        action.mark_completed()
        assert action.completed
        assert not action.deferred
        assert action.defer_reason is None

    def test_mark_open(self):
        """Test reopening a completed action."""
        action = self._action()
        action.mark_completed()
        action.mark_open()

        assert not action.completed
        assert action.addressed_in_round is None
        assert not action.is_resolved

    def test_round_trip(self):
        """Test serializing and restoring an action item."""
        action = self._action()
        action.phase = "RED"
        action.defer("Later")
        restored = ActionItem.from_dict(action.to_dict())

        assert restored.phase == "RED"
        assert restored.deferred
        assert restored.defer_reason == "Later"


class TestRound:
    """Test cases for Round model."""

    def _round(self):
        return Round(
            number=1,
            findings=[
                Finding(finding_id="F001", location="", description="a", verdict=Verdict.VALID),
                Finding(finding_id="F002", location="", description="b", verdict=Verdict.FALSE_POSITIVE),
                Finding(finding_id="F003", location="", description="c"),
            ],
        )

    def test_get_finding(self):
        """Test finding lookup ignores case."""
        review_round = self._round()
        assert review_round.get_finding("f002").description == "b"
        assert review_round.get_finding("F999") is None

    def test_verdict_counts(self):
        """Test counting findings per verdict."""
        counts = self._round().verdict_counts()
        assert counts["VALID"] == 1
        assert counts["FALSE_POSITIVE"] == 1
        assert counts["UNCLASSIFIED"] == 1
        assert counts["MERGED"] == 0

    def test_is_terminal(self):
        """Test a round is terminal only without VALID or unclassified findings."""
        review_round = self._round()
        assert not review_round.is_terminal()

        review_round.findings[0].verdict = Verdict.ALREADY_OK
        assert not review_round.is_terminal()

        review_round.findings[2].verdict = Verdict.SCOPE_CREEP
        assert review_round.is_terminal()

    def test_empty_round_is_terminal(self):
        """Test a round without findings is terminal."""
        assert Round(number=3).is_terminal()


class TestReview:
    """Test cases for Review model."""

    def test_review_round_trip(self):
        """Test serializing and restoring a review with rounds and actions."""
        review = Review(review_id="001-api", title="API", document_path="docs/api.md")
        review.rounds.append(Round(number=1, findings=[Finding("F001", "§1", "x", verdict=Verdict.VALID)]))
        review.action_items.append(ActionItem("A001", "F001", 1, "Fix"))

        restored = Review.from_dict(review.to_dict())

        assert restored.review_id == "001-api"
        assert restored.rounds[0].findings[0].verdict is Verdict.VALID
        assert restored.get_action("a001").description == "Fix"
        assert restored.actions_for_finding(1, "f001")[0].action_id == "A001"
        assert restored.actions_for_finding(2, "F001") == []

    def test_get_round(self):
        """Test round lookup by number."""
        review = Review(review_id="001-api", title="API", rounds=[Round(number=1), Round(number=2)])
        assert review.get_round(2).number == 2
        assert review.get_round(5) is None


class TestReviewStatus:
    """Test cases for ReviewStatus model."""

    def test_resolution_rate(self):
        """Test resolution rate counts completed and deferred actions."""
        status = ReviewStatus(
            review_id="001", title="t", status="in_progress",
            total_actions=4, completed_actions=2, deferred_actions=1, pending_actions=1,
        )
        assert status.get_resolution_rate() == 75.0
        assert status.to_dict()["resolution_rate"] == 75.0

    def test_resolution_rate_without_actions(self):
        """Test resolution rate is zero when nothing was raised."""
        assert ReviewStatus(review_id="001", title="t", status="in_progress").get_resolution_rate() == 0.0


class TestWorkflowSteps:
    """Test cases for the workflow step definitions."""

    def test_steps_are_numbered_in_order(self):
        """Test step numbers run from 1 without gaps."""
        assert [s.step_number for s in WORKFLOW_STEPS] == list(range(1, len(WORKFLOW_STEPS) + 1))

    def test_prerequisites_reference_earlier_steps(self):
        """Test every prerequisite names an earlier step."""
        seen = []
        for step in WORKFLOW_STEPS:
            assert step.can_execute(seen)
            seen.append(step.name)

    def test_can_execute(self):
        """Test prerequisite checking."""
        step = WorkflowStep(1, "B", "tool", "d", "p", prerequisites=["A"])
        assert not step.can_execute([])
        assert step.can_execute(["A"])
