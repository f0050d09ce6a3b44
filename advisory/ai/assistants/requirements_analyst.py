"""
Advisory Engagement Platform
Requirements Analyst Assistant.

Turns a free-text client request into structured requirements:
    1. Validate the request shape
    2. Ask the LLM for a structured requirements object
    3. Fill missing fields from the request, or fall back to keyword heuristics
    4. Enrich with urgency and explicit stakeholders
"""

import json
import logging
import re

from advisory.ai.parsing import as_list, ask_for_json
from advisory.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

VAGUE_QUERY_LENGTH = 30
LOW_BUDGET_THRESHOLD = 10_000

DEFAULT_SUGGESTED_QUESTIONS = [
    "What specific outcomes are you looking for?",
    "What is your target timeline?",
    "What is your budget range?",
]

# Ordered: first match wins
_CONSULTING_TYPE_KEYWORDS = [
    (("strategy", "strategic"), "strategic_planning"),
    (("market", "competitive"), "market_analysis"),
    (("technical", "architecture"), "technical_assessment"),
    (("acquire", "acquisition", "merger"), "mergers_acquisitions"),
    (("organization", "organisation", "change"), "organizational_change"),
]

_BROAD_SCOPE_WORDS = ("comprehensive", "complete", "transformation")

_PLATFORMS = {
    "node.js": "Node.js platform",
    "python": "Python platform",
    "java": "Java platform",
    ".net": ".NET platform",
    "salesforce": "Salesforce platform",
}
_INFRASTRUCTURE = {
    "aws": "AWS cloud infrastructure",
    "azure": "Azure cloud infrastructure",
    "gcp": "Google Cloud infrastructure",
    "google cloud": "Google Cloud infrastructure",
    "kubernetes": "Kubernetes cluster",
    "on-prem": "On-premises infrastructure",
}
_SCALE_RE = re.compile(r"(\d+(?:\.\d+)?\s*[kKmM]?\+?)\s*(users|customers)", re.IGNORECASE)
_BUDGET_RE = re.compile(r"\$\s*([\d,]+(?:\.\d+)?)\s*([kKmM])?")


# ── Heuristics ───────────────────────────────────────────────────────────────


def infer_consulting_type(query: str) -> str:
    lower = (query or "").lower()
    for keywords, consulting_type in _CONSULTING_TYPE_KEYWORDS:
        if any(k in lower for k in keywords):
            return consulting_type
    return "general_consulting"


def extract_constraints(request: dict) -> list[str]:
    constraints = []
    if request.get("timeframe"):
        constraints.append(f"Timeline: {request['timeframe']}")
    if request.get("budget"):
        constraints.append(f"Budget: {request['budget']}")
    if request.get("urgency"):
        constraints.append(f"Urgency: {request['urgency']}")
    return constraints or ["Standard timeline and budget"]


def check_feasibility_warning(request: dict) -> bool:
    """Week/day timeframe combined with broad-scope language."""
    timeframe = (request.get("timeframe") or "").lower()
    query = (request.get("query") or "").lower()
    short_window = "week" in timeframe or "day" in timeframe
    return short_window and any(w in query for w in _BROAD_SCOPE_WORDS)


def parse_budget_amount(budget) -> float | None:
    """Dollar amount in a budget string ("$5,000", "$8k"), or None."""
    match = _BUDGET_RE.search(str(budget or ""))
    if not match:
        return None
    try:
        amount = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    suffix = (match.group(2) or "").lower()
    if suffix == "k":
        amount *= 1_000
    elif suffix == "m":
        amount *= 1_000_000
    return amount


def identify_constraint_issues(request: dict) -> list[str]:
    issues = []
    if check_feasibility_warning(request):
        issues.append("Timeline may be too aggressive for scope")
    amount = parse_budget_amount(request.get("budget"))
    if (amount is not None and amount < LOW_BUDGET_THRESHOLD
            and "comprehensive" in (request.get("query") or "").lower()):
        issues.append("Budget may be insufficient for comprehensive analysis")
    return issues


def extract_technical_context(request: dict) -> dict:
    text = f"{request.get('context') or ''} {request.get('query') or ''}"
    lower = text.lower()
    context = {}
    for needle, label in _PLATFORMS.items():
        if re.search(rf"(?<![\w.]){re.escape(needle)}(?![\w])", lower):
            context["platform"] = label
            break
    for needle, label in _INFRASTRUCTURE.items():
        if re.search(rf"\b{re.escape(needle)}\b", lower):
            context["infrastructure"] = label
            break
    match = _SCALE_RE.search(text)
    if match:
        context["scale"] = f"{match.group(1).replace(' ', '')} users"
    return context


# ── Assistant ────────────────────────────────────────────────────────────────


class RequirementsAnalyst:
    """Structured requirements from a client request, with a heuristic fallback."""

    def __init__(self, gateway=None):
        self.gateway = gateway

    def analyze(self, request: dict) -> dict:
        """
        Args:
            request: ClientRequest {query, context, expectedDeliverables,
                     timeframe, budget, stakeholders, urgency}.

        Returns:
            StructuredRequirements dict, with ``fallbackUsed`` set when the
            heuristics produced it.

        Raises:
            ValidationError: request is not a mapping or has no query.
        """
        self._validate(request)

        parsed = ask_for_json(
            self.gateway, self._instruction(), self._context(request),
            purpose="requirements_analyst",
        )
        if parsed is None:
            requirements = self.fallback_requirements(request)
        else:
            requirements = self._from_parsed(parsed, request)

        if request.get("executionPlan"):
            requirements["executionPlan"] = request["executionPlan"]
        return self._enrich(requirements, request)

    # ── Validation ────────────────────────────────────────────────────────

    @staticmethod
    def _validate(request):
        if not isinstance(request, dict):
            raise ValidationError("Client request must be an object")
        query = request.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query is required", details={"query": "required"})
        deliverables = request.get("expectedDeliverables")
        if deliverables is not None and not isinstance(deliverables, (list, tuple)):
            raise ValidationError(
                "expectedDeliverables must be a list",
                details={"expectedDeliverables": type(deliverables).__name__},
            )

    # ── Prompt ────────────────────────────────────────────────────────────

    @staticmethod
    def _instruction() -> str:
        return (
            "You are the engagement partner of an advisory firm acting as requirements analyst.\n"
            "Turn the client request into structured requirements. Flag feasibility problems "
            "when the timeline or budget cannot support the scope, and ask for clarification "
            "when the request is too vague to plan.\n\n"
            "Respond ONLY with a JSON object with keys: consultingType, scope, objectives, "
            "constraints, successCriteria, complexity (low|medium|high), estimatedEffort, "
            "targetAudience, deliverableFormat, keyStakeholders, feasibilityWarning, "
            "constraintIssues, suggestedAlternatives, clarificationNeeded, suggestedQuestions, "
            "technicalContext."
        )

    @staticmethod
    def _context(request: dict) -> str:
        payload = {
            "query": request.get("query"),
            "context": request.get("context") or "",
            "expectedDeliverables": list(request.get("expectedDeliverables") or []),
            "timeframe": request.get("timeframe") or "",
            "budget": request.get("budget") or "",
            "stakeholders": as_list(request.get("stakeholders")),
            "urgency": request.get("urgency") or "normal",
        }
        return "Client request:\n" + json.dumps(payload, indent=2)

    # ── Parsing ───────────────────────────────────────────────────────────

    @staticmethod
    def _from_parsed(parsed: dict, request: dict) -> dict:
        def listed(key, default):
            value = parsed.get(key)
            return value if isinstance(value, list) else default

        scope = parsed.get("scope") or request["query"]
        return {
            "consultingType": parsed.get("consultingType") or infer_consulting_type(request["query"]),
            "scope": scope,
            "objectives": listed("objectives", [scope or "Complete the requested analysis"]),
            "constraints": listed("constraints", extract_constraints(request)),
            "successCriteria": listed("successCriteria", ["Deliverables meet client expectations"]),
            "complexity": parsed.get("complexity") or "medium",
            "estimatedEffort": parsed.get("estimatedEffort") or "2-4 weeks",
            "targetAudience": parsed.get("targetAudience") or "Business stakeholders",
            "deliverableFormat": (
                parsed.get("deliverableFormat") or "Professional report with executive summary"
            ),
            "keyStakeholders": listed("keyStakeholders", ["Client leadership team"]),
            "feasibilityWarning": bool(parsed.get("feasibilityWarning", False)),
            "constraintIssues": listed("constraintIssues", []),
            "suggestedAlternatives": listed("suggestedAlternatives", []),
            "clarificationNeeded": bool(parsed.get("clarificationNeeded", False)),
            "suggestedQuestions": listed("suggestedQuestions", []),
            "technicalContext": (
                parsed.get("technicalContext") if isinstance(parsed.get("technicalContext"), dict)
                else {}
            ),
            "fallbackUsed": False,
        }

    @staticmethod
    def fallback_requirements(request: dict) -> dict:
        query = request.get("query") or ""
        is_vague = len(query.strip()) < VAGUE_QUERY_LENGTH
        return {
            "consultingType": infer_consulting_type(query),
            "scope": query or "Business consulting engagement",
            "objectives": ["Complete requested analysis", "Provide actionable recommendations"],
            "constraints": extract_constraints(request),
            "successCriteria": ["Client satisfaction", "Actionable deliverables"],
            "complexity": "medium",
            "estimatedEffort": "2-4 weeks",
            "targetAudience": "Business stakeholders",
            "deliverableFormat": "Professional report",
            "keyStakeholders": ["Client leadership team"],
            "feasibilityWarning": check_feasibility_warning(request),
            "constraintIssues": identify_constraint_issues(request),
            "suggestedAlternatives": [],
            "clarificationNeeded": is_vague,
            "suggestedQuestions": list(DEFAULT_SUGGESTED_QUESTIONS) if is_vague else [],
            "technicalContext": extract_technical_context(request),
            "fallbackUsed": True,
        }

    @staticmethod
    def _enrich(requirements: dict, request: dict) -> dict:
        urgency = (request.get("urgency") or "normal").lower()
        if urgency == "high" or "urgent" in (request.get("timeframe") or "").lower():
            urgency = "high"
        requirements["urgency"] = urgency

        stakeholders = request.get("stakeholders")
        if stakeholders:
            requirements["keyStakeholders"] = as_list(stakeholders)
        return requirements
