"""
Advisory Engagement Platform
Scope Clarifier Assistant.

Reviews structured requirements for ambiguity, scope-creep risk and missing
information before the work is planned.
"""

import json
import logging

from advisory.ai.parsing import as_list, ask_for_json

logger = logging.getLogger(__name__)

SCOPE_CREEP_LEVELS = {"low", "medium", "high"}


class ScopeClarifier:
    """Clarification questions and scope refinements for a set of requirements."""

    def __init__(self, gateway=None):
        self.gateway = gateway

    def clarify(self, requirements: dict) -> dict:
        instruction = (
            "You are the engagement partner reviewing requirements for clarification needs. "
            "Identify ambiguities, scope-creep risk and the capabilities the work will need.\n\n"
            "Respond ONLY with a JSON object with keys: clarificationQuestions "
            "(list of {question, category, priority}), suggestedRefinements, riskAreas, "
            "scopeCreepRisk (low|medium|high), recommendedScope, prioritizedObjectives, "
            "technicalFeasibility, requiredCapabilities, recommendedApproach."
        )
        context = "Requirements:\n" + json.dumps(requirements, indent=2, default=str)

        parsed = ask_for_json(self.gateway, instruction, context, purpose="scope_clarifier")
        if parsed is None:
            return self.fallback_clarification(requirements)
        return self._from_parsed(parsed, requirements)

    @staticmethod
    def _from_parsed(parsed: dict, requirements: dict) -> dict:
        questions = []
        for q in as_list(parsed.get("clarificationQuestions")):
            if isinstance(q, str):
                q = {"question": q}
            if isinstance(q, dict) and q.get("question"):
                questions.append({
                    "question": q["question"],
                    "category": q.get("category") or "scope",
                    "priority": q.get("priority") or "medium",
                })
        risk = str(parsed.get("scopeCreepRisk") or "medium").lower()
        return {
            "clarificationQuestions": questions,
            "suggestedRefinements": as_list(parsed.get("suggestedRefinements")),
            "riskAreas": as_list(parsed.get("riskAreas")),
            "scopeCreepRisk": risk if risk in SCOPE_CREEP_LEVELS else "medium",
            "recommendedScope": parsed.get("recommendedScope") or requirements.get("scope"),
            "prioritizedObjectives": (
                as_list(parsed.get("prioritizedObjectives"))
                or list(requirements.get("objectives") or [])
            ),
            "technicalFeasibility": parsed.get("technicalFeasibility") or "medium",
            "requiredCapabilities": as_list(parsed.get("requiredCapabilities")),
            "recommendedApproach": (
                parsed.get("recommendedApproach") or "Standard consulting methodology"
            ),
            "fallbackUsed": False,
        }

    @staticmethod
    def fallback_clarification(requirements: dict) -> dict:
        return {
            "clarificationQuestions": [
                {"question": "What specific outcomes are most important to you?",
                 "category": "scope", "priority": "high"},
                {"question": "Are there any constraints we should be aware of?",
                 "category": "constraints", "priority": "medium"},
            ],
            "suggestedRefinements": ["Clarify success metrics", "Define deliverable format"],
            "riskAreas": ["Scope ambiguity", "Timeline constraints"],
            "scopeCreepRisk": "medium",
            "recommendedScope": requirements.get("scope"),
            "prioritizedObjectives": list(requirements.get("objectives") or []),
            "technicalFeasibility": "medium",
            "requiredCapabilities": ["Business analysis", "Strategic thinking"],
            "recommendedApproach": "Collaborative consulting methodology",
            "fallbackUsed": True,
        }
