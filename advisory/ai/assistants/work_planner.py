"""
Advisory Engagement Platform
Work Planner Assistant.

Decomposes requirements into dependency-ordered work modules. Modules
reference each other by local key (``wm_initial_analysis``); the project
store swaps those keys for UUIDs when the plan is persisted.
"""

import json
import logging

from advisory.ai.parsing import as_list, ask_for_json, extract_json_array, extract_json_object

logger = logging.getLogger(__name__)

MAX_WORK_MODULES = 12

CODE_MODULE_TYPES = {"code_delivery", "code_execution", "prototype"}


def _extract_modules(text):
    found = extract_json_array(text)
    if found is not None:
        return found
    obj = extract_json_object(text)
    if obj and isinstance(obj.get("workModules"), list):
        return obj["workModules"]
    return None


def general_consulting_modules(requirements: dict) -> list[dict]:
    """Analysis → specialist modules by consulting type → final recommendations."""
    consulting_type = requirements.get("consultingType") or "general_consulting"
    modules = [{
        "id": "wm_initial_analysis",
        "type": "initial_analysis",
        "specialist": "research",
        "title": "Initial Analysis",
        "description": "Initial analysis and requirements assessment",
        "estimatedHours": 3,
        "dependencies": [],
        "deliverables": ["Initial Analysis Report", "Requirements Summary"],
        "successCriteria": ["Requirements clarified", "Scope defined"],
    }]

    if "strategic" in consulting_type:
        modules.append({
            "id": "wm_strategic_analysis",
            "type": "strategic_analysis",
            "specialist": "strategy",
            "title": "Strategic Analysis",
            "description": "Strategic analysis and planning",
            "estimatedHours": 4,
            "dependencies": ["wm_initial_analysis"],
            "deliverables": ["Strategic Analysis Report", "Strategic Recommendations"],
            "successCriteria": ["Strategic options evaluated", "Recommendations developed"],
        })

    if "market" in consulting_type:
        modules.append({
            "id": "wm_market_research",
            "type": "market_research",
            "specialist": "research",
            "title": "Market Research",
            "description": "Market research and competitive analysis",
            "estimatedHours": 4,
            "dependencies": ["wm_initial_analysis"],
            "deliverables": ["Market Research Report", "Competitive Analysis"],
            "successCriteria": ["Market landscape mapped", "Opportunities identified"],
        })

    if "technical" in consulting_type:
        modules.append({
            "id": "wm_technical_assessment",
            "type": "technical_assessment",
            "specialist": "technology",
            "title": "Technical Assessment",
            "description": "Architecture and technology landscape assessment",
            "estimatedHours": 4,
            "dependencies": ["wm_initial_analysis"],
            "deliverables": ["Technical Assessment Report"],
            "successCriteria": ["Current architecture documented", "Gaps identified"],
        })

    if requirements.get("executionPlan"):
        modules.append(_prototype_module(requirements["executionPlan"], ["wm_initial_analysis"]))

    modules.append({
        "id": "wm_final_recommendations",
        "type": "recommendations",
        "specialist": "strategy",
        "title": "Final Recommendations",
        "description": "Final recommendations and implementation plan",
        "estimatedHours": 2,
        "dependencies": [m["id"] for m in modules],
        "deliverables": ["Final Recommendations Report", "Implementation Plan"],
        "successCriteria": ["Actionable recommendations provided", "Next steps defined"],
    })
    return modules


def _prototype_module(plan: dict, dependencies: list[str]) -> dict:
    return {
        "id": "wm_prototype",
        "type": "prototype",
        "specialist": "engineering",
        "title": "Prototype Delivery",
        "description": "Build and test the prototype in the sandbox",
        "estimatedHours": 3,
        "dependencies": dependencies,
        "deliverables": ["Tested prototype"],
        "successCriteria": ["Sandbox test command exits 0"],
        "executionPlan": plan,
    }


class WorkPlanner:
    """Work-module breakdown for an engagement."""

    def __init__(self, gateway=None, max_modules=MAX_WORK_MODULES):
        self.gateway = gateway
        self.max_modules = max_modules

    def plan(self, requirements: dict) -> list[dict]:
        instruction = (
            "You are the principal consultant producing a work breakdown for an engagement. "
            f"Split the work into at most {self.max_modules} work modules. Each module may "
            "depend on earlier modules by id; dependencies must not form cycles.\n\n"
            "Respond ONLY with a JSON array of objects with keys: id (short snake_case key), "
            "type, specialist, title, description, estimatedHours, dependencies (list of ids), "
            "deliverables, successCriteria."
        )
        context = "Requirements:\n" + json.dumps(requirements, indent=2, default=str)

        parsed = ask_for_json(
            self.gateway, instruction, context, purpose="work_planner", extractor=_extract_modules,
        )
        modules = self._normalise(parsed) if parsed else []
        if not modules:
            return general_consulting_modules(requirements)

        plan = requirements.get("executionPlan")
        if plan and not any(m.get("executionPlan") for m in modules):
            modules.append(_prototype_module(plan, []))
        return modules

    def _normalise(self, items: list) -> list[dict]:
        modules = []
        for index, item in enumerate(items[: self.max_modules]):
            if not isinstance(item, dict):
                continue
            modules.append({
                "id": item.get("id") or f"wm_{index + 1}",
                "type": item.get("type") or "analysis",
                "specialist": item.get("specialist") or "research",
                "title": item.get("title") or "",
                "description": item.get("description") or "Analysis work module",
                "estimatedHours": item.get("estimatedHours", 3),
                "dependencies": as_list(item.get("dependencies")),
                "deliverables": as_list(item.get("deliverables")) or ["Analysis report"],
                "successCriteria": as_list(item.get("successCriteria")) or ["Complete analysis"],
                "executionPlan": item.get("executionPlan"),
            })
        if len(items) > self.max_modules:
            logger.warning("Work plan truncated from %d to %d modules", len(items), self.max_modules)
        return modules
