"""
Advisory Engagement Platform
Feasibility Analyst Assistant.

Intake-time judgment of whether the requested scope is deliverable under the
stated constraints. An infeasible verdict carries a reason and a suggested
alternative so the client can re-scope.
"""

import json
import logging

from advisory.ai.parsing import as_float, as_list, ask_for_json

logger = logging.getLogger(__name__)

DEFAULT_ALTERNATIVE = (
    "Phased approach: start with a focused assessment of the highest-priority "
    "area, then extend scope once the first phase has delivered"
)


def assess_complexity(requirements: dict) -> str:
    objectives = requirements.get("objectives") or []
    constraints = requirements.get("constraints") or []
    if len(objectives) > 4 or len(constraints) > 3:
        return "high"
    if len(objectives) > 2 or len(constraints) > 1:
        return "medium"
    return "low"


def _timeline_from_constraints(requirements: dict) -> str | None:
    for constraint in requirements.get("constraints") or []:
        if isinstance(constraint, str) and constraint.startswith("Timeline:"):
            return constraint.split(":", 1)[1].strip() or None
    return None


class FeasibilityAnalyst:
    """Feasible / infeasible verdict with risks and recommendations."""

    def __init__(self, gateway=None):
        self.gateway = gateway

    def assess(self, requirements: dict) -> dict:
        instruction = (
            "You are the principal consultant assessing the feasibility of an engagement. "
            "Judge whether the scope can be delivered within the stated timeline and budget.\n\n"
            "Respond ONLY with a JSON object with keys: feasible (bool), complexity, "
            "estimatedDuration, riskLevel, keyRisks, recommendations, reason, "
            "suggestedAlternative, confidence (0-1)."
        )
        context = "Requirements:\n" + json.dumps(requirements, indent=2, default=str)

        parsed = ask_for_json(self.gateway, instruction, context, purpose="feasibility_analyst")
        if parsed is None:
            return self.fallback_feasibility(requirements)

        feasible = parsed.get("feasible") is not False
        alternatives = as_list(requirements.get("suggestedAlternatives"))
        return {
            "feasible": feasible,
            "complexity": parsed.get("complexity") or assess_complexity(requirements),
            "estimatedDuration": (
                parsed.get("estimatedDuration") or parsed.get("estimatedTime")
                or requirements.get("estimatedEffort") or "2-4 weeks"
            ),
            "riskLevel": parsed.get("riskLevel") or "medium",
            "keyRisks": as_list(parsed.get("keyRisks")) or ["Standard project risks apply"],
            "recommendations": (
                as_list(parsed.get("recommendations")) or ["Standard project approach recommended"]
            ),
            "reason": parsed.get("reason") or "",
            "suggestedAlternative": (
                parsed.get("suggestedAlternative")
                or (alternatives[0] if alternatives else "")
                or ("" if feasible else DEFAULT_ALTERNATIVE)
            ),
            "confidence": as_float(parsed.get("confidence"), 0.85),
            "fallbackUsed": False,
        }

    @staticmethod
    def fallback_feasibility(requirements: dict) -> dict:
        """
        Infeasible only when the requirements carry a feasibility warning and
        offer no alternative that would make the scope deliverable.
        """
        complexity = assess_complexity(requirements)
        warning = bool(requirements.get("feasibilityWarning"))
        alternatives = as_list(requirements.get("suggestedAlternatives"))
        feasible = not (warning and not alternatives)

        issues = as_list(requirements.get("constraintIssues"))
        reason = ""
        if not feasible:
            reason = "; ".join(str(i) for i in issues) or "Timeline may be too aggressive for scope"

        return {
            "feasible": feasible,
            "complexity": complexity,
            "estimatedDuration": _timeline_from_constraints(requirements) or "4-6 weeks",
            "riskLevel": "high" if warning else ("medium" if complexity != "low" else "low"),
            "keyRisks": ["Timeline constraints", "Scope clarity", "Resource availability"],
            "recommendations": (
                alternatives or ["Confirm scope and success criteria at kickoff"]
            ),
            "reason": reason,
            "suggestedAlternative": (
                alternatives[0] if alternatives else ("" if feasible else DEFAULT_ALTERNATIVE)
            ),
            "confidence": 0.6,
            "fallbackUsed": True,
        }
