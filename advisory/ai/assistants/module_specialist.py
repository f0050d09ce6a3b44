"""
Advisory Engagement Platform
Module Specialist and Code Reviewer.

ModuleSpecialist produces the deliverable for one work module. On resubmission
it receives the validator's guidance. For code modules it also supplies the
sandbox execution plan.

CodeReviewer turns a sandbox run into a release decision: approved iff the
test command exited 0.
"""

import json
import logging
from datetime import datetime, timezone

from advisory.ai.parsing import as_list, ask_for_json
from advisory.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

BASE_MODULE_QUALITY = 0.7
MAX_MODULE_QUALITY = 0.95
FALLBACK_MODULE_QUALITY = 0.3
PREVIEW_CHARS = 1000


def calculate_module_quality(parsed: dict) -> float:
    """Base 0.7 plus content bonuses, capped at 0.95."""
    score = BASE_MODULE_QUALITY
    if len(str(parsed.get("analysis") or "")) > 100:
        score += 0.1
    if len(as_list(parsed.get("findings"))) >= 3:
        score += 0.05
    if len(as_list(parsed.get("insights"))) >= 2:
        score += 0.05
    if len(as_list(parsed.get("recommendations"))) >= 2:
        score += 0.05
    if len(str(parsed.get("data") or "")) > 50:
        score += 0.05
    return min(MAX_MODULE_QUALITY, round(score, 2))


def _module_label(module: dict) -> str:
    return module.get("module_key") or module.get("id") or "module"


def _humanise(module_type: str) -> str:
    return (module_type or "analysis").replace("_", " ").title()


class ModuleSpecialist:
    """Executes one work module and returns its deliverable."""

    def __init__(self, gateway=None):
        self.gateway = gateway

    def execute(self, module: dict, *, requirements: dict | None = None, guidance: str | None = None) -> dict:
        instruction = (
            "You are a specialist consultant producing a work module deliverable. "
            "Ground every finding in the engagement requirements.\n\n"
            "Respond ONLY with a JSON object with keys: title, findings, insights, "
            "recommendations, analysis, data."
        )
        payload = {
            "module": {
                "key": _module_label(module),
                "type": module.get("module_type"),
                "title": module.get("title"),
                "description": module.get("description"),
                "specialist": module.get("specialist_type"),
                "expected": (module.get("deliverables") or {}).get("expected", []),
            },
            "requirements": requirements or {},
        }
        if guidance:
            payload["revisionGuidance"] = guidance
        context = json.dumps(payload, indent=2, default=str)

        parsed = ask_for_json(self.gateway, instruction, context, purpose="module_specialist")
        if parsed is None:
            return self.fallback_deliverable(module)

        return {
            "moduleId": module.get("id"),
            "moduleKey": module.get("module_key"),
            "type": module.get("module_type"),
            "title": parsed.get("title") or f"{_humanise(module.get('module_type'))} Report",
            "findings": as_list(parsed.get("findings")),
            "insights": as_list(parsed.get("insights")),
            "recommendations": as_list(parsed.get("recommendations")),
            "analysis": str(parsed.get("analysis") or ""),
            "data": str(parsed.get("data") or ""),
            "qualityScore": calculate_module_quality(parsed),
            "specialist": module.get("specialist_type"),
            "completedAt": datetime.now(timezone.utc).isoformat(),
            "fallbackUsed": False,
        }

    @staticmethod
    def fallback_deliverable(module: dict) -> dict:
        kind = _humanise(module.get("module_type"))
        analysis = (
            f"{kind} could not be produced by the specialist; this placeholder keeps "
            "the engagement moving and is flagged for review."
        )
        return {
            "moduleId": module.get("id"),
            "moduleKey": module.get("module_key"),
            "type": module.get("module_type"),
            "title": f"{kind} Report",
            "findings": [f"{kind} requires specialist input that was unavailable"],
            "insights": ["Automated analysis incomplete"],
            "recommendations": [f"Review {kind.lower()} manually before client delivery"],
            "analysis": analysis,
            "data": "",
            "qualityScore": FALLBACK_MODULE_QUALITY,
            "specialist": module.get("specialist_type"),
            "completedAt": datetime.now(timezone.utc).isoformat(),
            "fallbackUsed": True,
            "warning": "Fallback deliverable: specialist analysis unavailable",
        }

    def plan_code(self, module: dict, *, requirements: dict | None = None) -> dict:
        """
        Execution plan ({files, testCommand}) for a code module.

        Uses the plan stored on the module when there is one.

        Raises:
            ValidationError: no plan is stored and none could be generated.
        """
        stored = module.get("execution_plan")
        if isinstance(stored, dict) and stored.get("files"):
            return stored

        instruction = (
            "You are an engineer preparing a sandbox execution plan. Produce the source "
            "files and a test command that proves they work.\n\n"
            "Respond ONLY with a JSON object with keys: objective, files (list of "
            "{path, content} with relative paths), testCommand."
        )
        context = json.dumps(
            {"module": module.get("description"), "requirements": requirements or {}},
            indent=2, default=str,
        )
        parsed = ask_for_json(self.gateway, instruction, context, purpose="code_planner")
        if not parsed or not isinstance(parsed.get("files"), list) or not parsed["files"]:
            raise ValidationError(
                "No execution plan available for code module",
                details={"module": _module_label(module)},
            )
        return parsed


class CodeReviewer:
    """Release decision for a sandbox run."""

    def review(self, plan: dict, execution: dict) -> dict:
        test_result = (execution or {}).get("testResult") or {}
        passed = test_result.get("code") == 0
        return {
            "approved": passed,
            "summary": (
                "Tests passed in sandbox; delivery is ready for handoff."
                if passed else
                "Tests failed in sandbox; update implementation before delivery."
            ),
            "objective": (plan or {}).get("objective", ""),
            "files": list((execution or {}).get("filesWritten") or []),
            "testExitCode": test_result.get("code"),
            "killed": bool(test_result.get("killed")),
            "stdoutPreview": str(test_result.get("stdout") or "")[:PREVIEW_CHARS],
            "stderrPreview": str(test_result.get("stderr") or "")[:PREVIEW_CHARS],
        }
