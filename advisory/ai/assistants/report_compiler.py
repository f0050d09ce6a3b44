"""
Advisory Engagement Platform
Report Compiler Assistant.

Merges module deliverables into the client report: executive summary, key
findings, recommendations, roadmap, risk mitigation and success metrics.
"""

import json
import logging

from advisory.ai.parsing import as_list, ask_for_json

logger = logging.getLogger(__name__)

EMPTY_REPORT_QUALITY = 0.7


def calculate_overall_quality(deliverables: list[dict]) -> float:
    """Mean module quality rounded to 2 places; 0.7 when nothing was delivered."""
    if not deliverables:
        return EMPTY_REPORT_QUALITY
    total = sum(float(d.get("qualityScore") or 0.0) for d in deliverables)
    return round(total / len(deliverables), 2)


def _compact(deliverables: list[dict]) -> list[dict]:
    return [
        {
            "module": d.get("moduleKey") or d.get("moduleId"),
            "title": d.get("title"),
            "findings": as_list(d.get("findings"))[:5],
            "recommendations": as_list(d.get("recommendations"))[:5],
            "analysis": str(d.get("analysis") or "")[:800],
        }
        for d in deliverables
    ]


class ReportCompiler:
    def __init__(self, gateway=None):
        self.gateway = gateway

    def compile(self, deliverables: list[dict], *, requirements: dict | None = None,
                guidance: str | None = None) -> dict:
        instruction = (
            "You are the principal consultant. Compile the module deliverables into one "
            "client-ready report.\n\n"
            "Respond ONLY with a JSON object with keys: executiveSummary, keyFindings, "
            "recommendations, implementationRoadmap (object), riskMitigation, successMetrics."
        )
        payload = {"requirements": requirements or {}, "deliverables": _compact(deliverables)}
        if guidance:
            payload["revisionGuidance"] = guidance
        context = json.dumps(payload, indent=2, default=str)

        quality = calculate_overall_quality(deliverables)
        parsed = ask_for_json(self.gateway, instruction, context, purpose="report_compiler")
        if parsed is None:
            return self.fallback_report(deliverables, requirements or {})

        roadmap = parsed.get("implementationRoadmap")
        return {
            "executiveSummary": str(parsed.get("executiveSummary") or ""),
            "keyFindings": as_list(parsed.get("keyFindings")),
            "recommendations": as_list(parsed.get("recommendations")),
            "implementationRoadmap": roadmap if isinstance(roadmap, dict) else {},
            "riskMitigation": as_list(parsed.get("riskMitigation")),
            "successMetrics": as_list(parsed.get("successMetrics")),
            "qualityScore": quality,
            "deliverables": deliverables,
            "fallbackUsed": False,
        }

    @staticmethod
    def fallback_report(deliverables: list[dict], requirements: dict) -> dict:
        findings, recommendations = [], []
        for d in deliverables:
            for item in as_list(d.get("findings")):
                if item not in findings:
                    findings.append(item)
            for item in as_list(d.get("recommendations")):
                if item not in recommendations:
                    recommendations.append(item)

        scope = requirements.get("scope") or "the requested engagement"
        if deliverables:
            titles = ", ".join(str(d.get("title") or d.get("type")) for d in deliverables)
            summary = (
                f"This report consolidates {len(deliverables)} work module deliverables "
                f"({titles}) addressing {scope}."
            )
        else:
            summary = f"No module deliverables were produced for {scope}."

        roadmap = {
            f"phase{i}": d.get("title") or d.get("type")
            for i, d in enumerate(deliverables, 1)
        }
        return {
            "executiveSummary": summary,
            "keyFindings": findings,
            "recommendations": recommendations,
            "implementationRoadmap": roadmap,
            "riskMitigation": list(requirements.get("constraintIssues") or []),
            "successMetrics": list(requirements.get("successCriteria") or []),
            "qualityScore": calculate_overall_quality(deliverables),
            "deliverables": deliverables,
            "fallbackUsed": True,
        }
