"""
Verdict derivation for the judging phase.

A pure function of the judge's findings; no model is consulted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Verdict:
    """Outcome of judging plus the conditions handed to implementation."""
    verdict: str
    conditions: list[dict[str, str]] = field(default_factory=list)
    rejection_reason: Optional[str] = None


def derive_verdict(findings: list[dict[str, Any]]) -> str:
    """
    Map findings to a verdict.

    Any critical finding, or two or more majors, rejects. A single major
    approves with conditions. Otherwise the approach is approved.
    """
    if any(f["severity"] == "critical" for f in findings):
        return "rejected"
    majors = sum(1 for f in findings if f["severity"] == "major")
    if majors >= 2:
        return "rejected"
    if majors == 1:
        return "approved_with_conditions"
    return "approved"


def build_conditions(findings: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Turn every non-critical finding into a condition, keeping its severity."""
    return [
        {
            "description": f"[{f['criterion']}] {f['description']}: {f['recommendation']}",
            "severity": f["severity"],
        }
        for f in findings
        if f["severity"] != "critical"
    ]


def build_rejection_reason(findings: list[dict[str, Any]]) -> Optional[str]:
    """Describe the findings that forced a rejection, or None if nothing did."""
    critical = [f for f in findings if f["severity"] == "critical"]
    if critical:
        return "Critical findings: " + "; ".join(
            f"[{f['criterion']}] {f['description']}" for f in critical
        )
    majors = [f for f in findings if f["severity"] == "major"]
    if len(majors) >= 2:
        return "Multiple major findings: " + "; ".join(
            f"[{f['criterion']}] {f['description']}" for f in majors
        )
    return None


def evaluate(findings: list[dict[str, Any]]) -> Verdict:
    """Derive verdict, conditions and rejection reason together."""
    return Verdict(
        verdict=derive_verdict(findings),
        conditions=build_conditions(findings),
        rejection_reason=build_rejection_reason(findings),
    )
