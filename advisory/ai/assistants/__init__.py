"""
Advisory Engagement Platform
AI Assistants package.

Assistants:
    - requirements_analyst: client request → structured requirements
    - scope_clarifier: clarification questions and scope refinements
    - feasibility_analyst: feasible / infeasible verdict with alternatives
    - work_planner: dependency-ordered work-module breakdown
    - module_specialist: per-module deliverables + sandbox code review
    - report_compiler: deliverables → client report
    - deliverable_validator: quality gate with resubmission guidance
"""

from advisory.ai.assistants.deliverable_validator import DeliverableValidator
from advisory.ai.assistants.feasibility_analyst import FeasibilityAnalyst
from advisory.ai.assistants.module_specialist import CodeReviewer, ModuleSpecialist
from advisory.ai.assistants.report_compiler import ReportCompiler
from advisory.ai.assistants.requirements_analyst import RequirementsAnalyst
from advisory.ai.assistants.scope_clarifier import ScopeClarifier
from advisory.ai.assistants.work_planner import WorkPlanner

__all__ = [
    "RequirementsAnalyst",
    "ScopeClarifier",
    "FeasibilityAnalyst",
    "WorkPlanner",
    "ModuleSpecialist",
    "CodeReviewer",
    "ReportCompiler",
    "DeliverableValidator",
]
