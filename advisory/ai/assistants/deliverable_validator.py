"""
Advisory Engagement Platform
Deliverable Validator Assistant.

Quality gate in front of client delivery. A rejected report comes back with
resubmission guidance that the orchestrator feeds into the next attempt.
"""

import json
import logging

from advisory.ai.parsing import as_float, as_list, ask_for_json

logger = logging.getLogger(__name__)

APPROVAL_THRESHOLD = 0.7
MIN_SUMMARY_LENGTH = 50
DEFAULT_QUALITY = 0.8
DEFAULT_GUIDANCE = (
    "Please strengthen the analysis and ensure all deliverables meet quality standards"
)
ASSESSMENT_LEVELS = {"excellent", "good", "adequate", "poor"}


def quality_assessment(score: float) -> str:
    if score >= 0.9:
        return "excellent"
    if score >= APPROVAL_THRESHOLD:
        return "good"
    if score >= 0.5:
        return "adequate"
    return "poor"


class DeliverableValidator:
    """Approves or rejects a compiled report."""

    def __init__(self, gateway=None):
        self.gateway = gateway

    def validate(self, report: dict) -> dict:
        instruction = (
            "You are the engagement partner acting as quality gate for client delivery. "
            "Judge completeness, depth and actionability of the report.\n\n"
            "Respond ONLY with a JSON object with keys: approved (bool), qualityAssessment "
            "(excellent|good|adequate|poor), clientReadiness, feedback, qualityIssues, "
            "completenessIssues, requiredImprovements, resubmissionGuidance, businessValue, "
            "actionability."
        )
        context = "Report:\n" + json.dumps(report, indent=2, default=str)

        parsed = ask_for_json(self.gateway, instruction, context, purpose="deliverable_validator")
        if parsed is None:
            return self.fallback_validation(report)

        approved = parsed.get("approved") is not False
        assessment = str(parsed.get("qualityAssessment") or "good").lower()
        guidance = parsed.get("resubmissionGuidance") or ""
        if not approved and not guidance:
            improvements = as_list(parsed.get("requiredImprovements"))
            guidance = "; ".join(str(i) for i in improvements) or DEFAULT_GUIDANCE
        return {
            "approved": approved,
            "qualityAssessment": assessment if assessment in ASSESSMENT_LEVELS else "good",
            "clientReadiness": parsed.get("clientReadiness", approved),
            "feedback": parsed.get("feedback") or (
                "Deliverables meet all requirements and are ready for client presentation"
                if approved else "Deliverables need improvement before client presentation"
            ),
            "qualityIssues": as_list(parsed.get("qualityIssues")),
            "completenessIssues": as_list(parsed.get("completenessIssues")),
            "requiredImprovements": as_list(parsed.get("requiredImprovements")),
            "resubmissionGuidance": guidance,
            "businessValue": parsed.get("businessValue") or "high",
            "actionability": parsed.get("actionability") is not False,
            "fallbackUsed": False,
        }

    @staticmethod
    def fallback_validation(report: dict) -> dict:
        score = as_float(report.get("qualityScore"))
        if score is None:
            score = DEFAULT_QUALITY
        has_recommendations = bool(as_list(report.get("recommendations")))
        has_summary = len(str(report.get("executiveSummary") or "")) > MIN_SUMMARY_LENGTH
        approved = score >= APPROVAL_THRESHOLD and has_recommendations and has_summary

        completeness = []
        if not has_recommendations:
            completeness.append("Missing recommendations section")
        if not has_summary:
            completeness.append("Executive summary too short")

        return {
            "approved": approved,
            "qualityAssessment": quality_assessment(score),
            "clientReadiness": approved,
            "feedback": (
                "Deliverables meet all requirements and are ready for client presentation"
                if approved else "Deliverables need improvement before client presentation"
            ),
            "qualityIssues": [] if approved else ["Insufficient depth in analysis"],
            "completenessIssues": completeness,
            "requiredImprovements": [] if approved else ["Enhance analysis depth"],
            "resubmissionGuidance": "" if approved else DEFAULT_GUIDANCE,
            "businessValue": "high",
            "actionability": has_recommendations,
            "fallbackUsed": True,
        }
