"""Remediation options offered for VALID findings."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Union

from .models import Finding, RemediationOption

logger = logging.getLogger("reviewloop.options")

OPTION_IDS = ("A", "B", "C")
MIN_OPTIONS = 2
MAX_OPTIONS = 3

OptionSpec = Union[str, Dict[str, Any], RemediationOption]


def _one_line(value: Any) -> str:
    """Collapse whitespace so option text stays on one markdown line."""
    return " ".join(str(value).split())


def default_options(finding: Finding) -> List[RemediationOption]:
    """Generic trio used when the reviewer supplies no options of their own."""
    where = f" at {finding.location}" if finding.location else ""
    return [
        RemediationOption(
            option_id="A",
            summary=f"Apply the fix described by {finding.finding_id}{where}",
            detail=finding.description,
            recommended=True,
        ),
        RemediationOption(
            option_id="B",
            summary="Apply a minimal fix that removes the ambiguity without restructuring the section",
        ),
        RemediationOption(
            option_id="C",
            summary="Defer: record the issue as a known limitation",
            defers=True,
        ),
    ]


class OptionPresenter:
    """Attach 2-3 remediation options to a finding and record the choice."""

    def present(self, finding: Finding, options: Iterable[OptionSpec] | None = None) -> List[RemediationOption]:
        if not finding.is_actionable:
            verdict = finding.verdict.value if finding.verdict else "UNCLASSIFIED"
            raise ValueError(
                f"Options can only be presented for VALID findings; '{finding.finding_id}' is {verdict}."
            )
        if finding.selected_option:
            raise ValueError(
                f"Option {finding.selected_option} was already selected for '{finding.finding_id}'."
            )

        specs = list(options) if options is not None else []
        built = self._build(specs) if specs else default_options(finding)

        if sum(1 for option in built if option.recommended) > 1:
            raise ValueError("At most one option can be marked as recommended")

        finding.options = built
        logger.debug(f"Presented {len(built)} options for finding {finding.finding_id}")
        return built

    def select(self, finding: Finding, option_id: str) -> RemediationOption:
        if not finding.options:
            raise ValueError(f"No options have been presented for '{finding.finding_id}'.")
        option = finding.get_option(option_id)
        if option is None:
            available = ", ".join(o.option_id for o in finding.options)
            raise ValueError(
                f"Option '{option_id}' is not available for '{finding.finding_id}'. Choose one of: {available}"
            )
        if finding.selected_option and finding.selected_option != option.option_id:
            raise ValueError(
                f"Option {finding.selected_option} was already selected for '{finding.finding_id}'."
            )
        finding.selected_option = option.option_id
        return option

    def _build(self, specs: List[OptionSpec]) -> List[RemediationOption]:
        if not MIN_OPTIONS <= len(specs) <= MAX_OPTIONS:
            raise ValueError(f"Present between {MIN_OPTIONS} and {MAX_OPTIONS} options, got {len(specs)}")

        built: List[RemediationOption] = []
        for option_id, spec in zip(OPTION_IDS, specs):
            if isinstance(spec, RemediationOption):
                option = RemediationOption(
                    option_id=option_id,
                    summary=_one_line(spec.summary),
                    detail=_one_line(spec.detail),
                    recommended=spec.recommended,
                    defers=spec.defers,
                )
            elif isinstance(spec, dict):
                option = RemediationOption(
                    option_id=option_id,
                    summary=_one_line(spec.get("summary") or ""),
                    detail=_one_line(spec.get("detail") or ""),
                    recommended=bool(spec.get("recommended", False)),
                    defers=bool(spec.get("defers", False)),
                )
            else:
                option = RemediationOption(option_id=option_id, summary=_one_line(spec))

            if not option.summary:
                raise ValueError(f"Option {option_id} needs a summary")
            built.append(option)
        return built
