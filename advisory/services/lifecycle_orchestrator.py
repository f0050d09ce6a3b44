"""
Lifecycle Orchestrator — Service Layer.

Drives an engagement through its lifecycle:
    initiated ──► in_progress ──► completed
        │              │
        └──────────────┴──────► cancelled

Intake:      requirements → (clarification) → feasibility → work plan → project
Execution:   dependency-ordered module fan-out on a thread pool, sandbox runs
             for code modules, report compilation, validation with bounded
             resubmission
Progress:    every phase appends to the ledger, then notifies ``on_update``

Workers only compute. All database writes happen on the coordinating thread
so a run uses the caller's scoped session.
"""

import logging
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime, timezone

from advisory.ai.assistants.work_planner import CODE_MODULE_TYPES
from advisory.core.exceptions import ConflictError, ValidationError
from advisory.models.consulting import (
    MODULE_STATUSES,
    TERMINAL_PROJECT_STATUSES,
    validate_project_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESUBMISSIONS = 3
DEFAULT_MAX_PARALLEL = 4
DEFAULT_CANCEL_REASON = "User requested cancellation"
STATUS_UPDATE_LIMIT = 10

# Ledger progress per phase
PHASE_PROGRESS = {
    "requirements_gathering": 5,
    "scope_clarification": 10,
    "feasibility_analysis": 15,
    "work_breakdown": 25,
    "project_initiated": 30,
    "execution_started": 35,
    "executing_modules": 50,
    "integrating_results": 80,
    "validation": 90,
    "completed": 100,
}

OUTCOME_COMPLETED = "completed"
OUTCOME_MANUAL_REVIEW = "manual_review_required"
OUTCOME_CANCELLED = "cancelled"

APPROVED_CODE_QUALITY = 0.9
REJECTED_CODE_QUALITY = 0.4


def _utcnow():
    return datetime.now(timezone.utc)


def _label(module: dict) -> str:
    return module.get("module_key") or module["id"]


class ExecutionRun:
    """State of one execute/start call. Created per call, never shared."""

    def __init__(self, project_id: str, on_update=None):
        self.project_id = project_id
        self.on_update = on_update
        self.updates: list[dict] = []
        self.deliverables: dict[str, dict] = {}
        self.completed: set[str] = set()
        self.failed: set[str] = set()
        self.skipped: set[str] = set()
        self.cancelled = False
        self.attempts = 0


class LifecycleOrchestrator:
    """
    Runs intake, execution, validation and cancellation for projects.

    Assistants are injected so tests (and alternative deployments) can swap
    any of them.
    """

    def __init__(
        self,
        store,
        *,
        analyst,
        clarifier,
        feasibility,
        planner,
        specialist,
        reviewer,
        compiler,
        validator,
        sandbox,
        max_resubmissions: int = DEFAULT_MAX_RESUBMISSIONS,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
    ):
        self.store = store
        self.analyst = analyst
        self.clarifier = clarifier
        self.feasibility = feasibility
        self.planner = planner
        self.specialist = specialist
        self.reviewer = reviewer
        self.compiler = compiler
        self.validator = validator
        self.sandbox = sandbox
        self.max_resubmissions = max(0, int(max_resubmissions))
        self.max_parallel = max(1, int(max_parallel))

    # ── Progress ─────────────────────────────────────────────────────────

    def _emit(self, run: ExecutionRun, phase: str, message: str, *, progress=None,
              agent=None, role=None, metadata=None) -> dict:
        """Append a ledger row, then hand it to the caller's callback."""
        if progress is None:
            progress = PHASE_PROGRESS.get(phase, 0)
        entry = self.store.add_progress_update(run.project_id, {
            "phase": phase,
            "message": message,
            "progress": progress,
            "agent": agent,
            "role": role,
            "metadata": metadata or {},
        })
        run.updates.append(entry)
        if run.on_update is not None:
            try:
                run.on_update(entry)
            except Exception:
                logger.exception(
                    "Progress callback failed for phase %s", phase,
                    extra={"project_id": run.project_id, "phase": phase},
                )
        return entry

    # ── Intake ───────────────────────────────────────────────────────────

    def start_project(self, request: dict, on_update=None, auto_execute: bool = False,
                      clarify: bool = False) -> dict:
        """
        Analyse a client request and persist the resulting project.

        Returns:
            {project, feasible, requirements, feasibility, progressUpdates}
            plus ``reason``/``suggestedAlternative`` when infeasible and
            ``execution`` when ``auto_execute`` ran it.

        Raises:
            ValidationError: malformed request (nothing is persisted).
            NotFoundError: unknown ``clientId``.
        """
        requirements = self.analyst.analyze(request)

        clarification = None
        if clarify or requirements.get("clarificationNeeded"):
            clarification = self.clarifier.clarify(requirements)
            requirements["clarification"] = clarification

        feasibility = self.feasibility.assess(requirements)
        feasible = feasibility.get("feasible") is not False
        modules = self.planner.plan(requirements) if feasible else []

        project = self.store.create_project({
            "query": request["query"],
            "title": request.get("title"),
            "context": request.get("context"),
            "timeframe": request.get("timeframe"),
            "budget": request.get("budget"),
            "urgency": requirements.get("urgency") or "normal",
            "expectedDeliverables": list(request.get("expectedDeliverables") or []),
            "requirements": requirements,
            "feasibilityAnalysis": feasibility,
            "clientId": request.get("clientId"),
            "workModules": modules,
        })
        project_id = project["id"]
        logger.info(
            "Project %s initiated (feasible=%s, modules=%d)", project_id, feasible, len(modules),
            extra={"project_id": project_id},
        )

        run = ExecutionRun(project_id, on_update)
        self._emit(
            run, "requirements_gathering",
            f"Requirements analysed ({requirements.get('consultingType', 'general_consulting')})",
            agent="requirements_analyst", role="analysis",
            metadata={"fallbackUsed": bool(requirements.get("fallbackUsed"))},
        )
        if clarification is not None:
            self._emit(
                run, "scope_clarification",
                f"{len(clarification.get('clarificationQuestions') or [])} clarification questions raised",
                agent="scope_clarifier", role="analysis",
            )
        self._emit(
            run, "feasibility_analysis",
            "Engagement assessed as feasible" if feasible
            else f"Engagement assessed as infeasible: {feasibility.get('reason') or 'scope exceeds constraints'}",
            agent="feasibility_analyst", role="analysis",
            metadata={"feasible": feasible, "complexity": feasibility.get("complexity")},
        )

        result = {
            "project": project,
            "feasible": feasible,
            "requirements": requirements,
            "feasibility": feasibility,
        }
        if not feasible:
            self._emit(run, "project_initiated", "Project recorded without work modules")
            result["reason"] = feasibility.get("reason") or ""
            result["suggestedAlternative"] = feasibility.get("suggestedAlternative") or ""
            result["progressUpdates"] = run.updates
            return result

        self._emit(
            run, "work_breakdown", f"Work broken down into {len(modules)} modules",
            agent="work_planner", role="planning",
        )
        self._emit(run, "project_initiated", "Project initiated")

        if auto_execute:
            execution = self.execute_project(project_id, on_update=on_update)
            run.updates.extend(execution.pop("progressUpdates", []))
            result["execution"] = execution
            result["project"] = self.store.get_project(project_id)

        result["progressUpdates"] = run.updates
        return result

    # ── Execution ────────────────────────────────────────────────────────

    def execute_project(self, project_id: str, on_update=None) -> dict:
        """
        Run (or resume) a project's modules, then compile and validate.

        Returns:
            {projectId, outcome, status, attempts, modules, report, validation,
             progressUpdates}. ``outcome`` is completed, manual_review_required
             or cancelled.

        Raises:
            NotFoundError: unknown project.
            ConflictError: project is completed or cancelled.
            ValidationError: project was assessed as infeasible.
        """
        status = self.store.get_project_status(project_id)
        if status in TERMINAL_PROJECT_STATUSES:
            raise ConflictError("Project", "status", status)
        project = self.store.get_project(project_id)
        feasibility = project.get("feasibility_analysis") or {}
        if feasibility.get("feasible") is False:
            raise ValidationError(
                "Project was assessed as infeasible and cannot be executed",
                details={
                    "reason": feasibility.get("reason"),
                    "suggestedAlternative": feasibility.get("suggestedAlternative"),
                },
            )

        run = ExecutionRun(project_id, on_update)
        modules = sorted(project.get("modules") or [], key=lambda m: m.get("position", 0))
        requirements = project.get("requirements") or {}

        if status == "initiated":
            self._transition(project_id, status, "in_progress", {"execution_start": _utcnow()})
            self._emit(run, "execution_started", f"Execution started with {len(modules)} modules")
        else:
            for module in modules:
                if module["status"] == "completed":
                    run.completed.add(module["id"])
                    run.deliverables[module["id"]] = (module.get("deliverables") or {}).get("result") or {}
            self._emit(
                run, "execution_started",
                f"Execution resumed; {len(run.completed)} of {len(modules)} modules already complete",
            )

        guidance = None
        report = validation = None
        while True:
            run.attempts += 1
            if run.attempts > 1:
                # resubmission re-runs every module with the validator's guidance
                run.completed.clear()
                run.deliverables.clear()

            outcome = self._run_modules(run, modules, requirements, guidance)
            if outcome is not None:
                return self._finish(run, outcome, report, validation)

            deliverables = [run.deliverables[m["id"]] for m in modules if m["id"] in run.deliverables]
            report = self.compiler.compile(deliverables, requirements=requirements, guidance=guidance)
            self._emit(
                run, "integrating_results",
                f"Compiled report from {len(deliverables)} deliverables",
                agent="report_compiler", role="integration",
                metadata={"qualityScore": report.get("qualityScore"), "attempt": run.attempts},
            )

            validation = self.validator.validate(report)
            if self._is_cancelled(run):
                return self._finish(run, OUTCOME_CANCELLED, report, validation)

            if validation.get("approved"):
                saved = self.store.save_project_report(
                    project_id, {**report, "approved": True, "validation": validation},
                )
                self._transition(project_id, "in_progress", "completed", {
                    "quality_score": report.get("qualityScore"),
                    "actual_completion": _utcnow(),
                })
                self._emit(
                    run, "completed", "Deliverables approved and delivered",
                    agent="deliverable_validator", role="quality",
                    metadata={"qualityAssessment": validation.get("qualityAssessment")},
                )
                return self._finish(run, OUTCOME_COMPLETED, saved, validation)

            guidance = validation.get("resubmissionGuidance") or "Address the validator feedback"
            if run.attempts > self.max_resubmissions:
                break
            self._emit(
                run, "resubmission",
                f"Deliverables rejected; resubmission {run.attempts} of {self.max_resubmissions}",
                progress=PHASE_PROGRESS["validation"],
                agent="deliverable_validator", role="quality",
                metadata={"guidance": guidance, "attempt": run.attempts},
            )

        saved = self.store.save_project_report(
            project_id, {**report, "approved": False, "validation": validation},
        )
        self._emit(
            run, "manual_review",
            f"Deliverables still rejected after {self.max_resubmissions} resubmissions",
            progress=PHASE_PROGRESS["validation"],
            agent="deliverable_validator", role="quality",
            metadata={"reportVersion": saved.get("version")},
        )
        return self._finish(run, OUTCOME_MANUAL_REVIEW, saved, validation)

    def _transition(self, project_id, old_status, new_status, extra=None):
        if not validate_project_transition(old_status, new_status):
            raise ConflictError("Project", "status", old_status)
        self.store.update_project(project_id, {"status": new_status, **(extra or {})})
        logger.info(
            "Project %s: %s → %s", project_id, old_status, new_status,
            extra={"project_id": project_id},
        )

    def _is_cancelled(self, run: ExecutionRun) -> bool:
        if not run.cancelled and self.store.get_project_status(run.project_id) == "cancelled":
            run.cancelled = True
        return run.cancelled

    def _run_modules(self, run, modules, requirements, guidance):
        """
        Execute every module not yet completed, honouring dependencies.

        Returns None when all modules completed, otherwise the run outcome.
        """
        by_id = {m["id"]: m for m in modules}
        pending = [m for m in modules if m["id"] not in run.completed]
        total = len(modules)
        if not pending:
            return None

        self._emit(
            run, "executing_modules",
            f"Executing {len(pending)} work modules"
            + (" with resubmission guidance" if guidance else ""),
            metadata={"attempt": run.attempts},
        )

        in_flight = {}
        with ThreadPoolExecutor(
            max_workers=self.max_parallel, thread_name_prefix="advisory-module",
        ) as pool:
            while True:
                if not run.cancelled:
                    ready = [
                        m for m in pending
                        if all(dep in run.completed for dep in m.get("dependencies") or [] if dep in by_id)
                    ]
                    for module in ready:
                        if self._is_cancelled(run):
                            break
                        pending.remove(module)
                        self.store.update_work_module(module["id"], {
                            "status": "in_progress", "started_at": _utcnow(),
                        })
                        logger.info(
                            "Scheduling module %s", _label(module),
                            extra={"project_id": run.project_id, "module_id": module["id"]},
                        )
                        future = pool.submit(self._execute_module, module, requirements, guidance)
                        in_flight[future] = module

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    module = in_flight.pop(future)
                    self._record_module(run, module, future, total)

        if run.cancelled:
            return OUTCOME_CANCELLED
        if run.failed or pending:
            self._skip_blocked(run, pending, total)
            return OUTCOME_MANUAL_REVIEW
        return None

    def _execute_module(self, module: dict, requirements: dict, guidance):
        """Worker body. Must not touch the database."""
        if module.get("module_type") in CODE_MODULE_TYPES:
            return self._execute_code_module(module, requirements)
        return self.specialist.execute(module, requirements=requirements, guidance=guidance)

    def _execute_code_module(self, module: dict, requirements: dict) -> dict:
        plan = self.specialist.plan_code(module, requirements=requirements)
        execution = self.sandbox.execute_plan(plan)
        try:
            review = self.reviewer.review(plan, execution)
        finally:
            self.sandbox.remove_workspace(execution.get("workspacePath"))

        approved = review["approved"]
        return {
            "moduleId": module["id"],
            "moduleKey": module.get("module_key"),
            "type": module.get("module_type"),
            "title": module.get("title") or "Code Delivery",
            "findings": [review["summary"]],
            "insights": [f"Sandbox exit code {review['testExitCode']}"],
            "recommendations": (
                [] if approved else ["Fix the failing tests before handing the code over"]
            ),
            "analysis": review["summary"],
            "data": review["stdoutPreview"],
            "qualityScore": APPROVED_CODE_QUALITY if approved else REJECTED_CODE_QUALITY,
            "specialist": module.get("specialist_type"),
            "review": review,
            "completedAt": _utcnow().isoformat(),
            "fallbackUsed": False,
        }

    def _record_module(self, run, module, future, total):
        module_id = module["id"]
        try:
            deliverable = future.result()
        except Exception as exc:
            logger.exception(
                "Module %s failed", _label(module),
                extra={"project_id": run.project_id, "module_id": module_id},
            )
            run.failed.add(module_id)
            self.store.update_work_module(module_id, {
                "status": "failed",
                "completed_at": _utcnow(),
                "deliverables": {**(module.get("deliverables") or {}), "error": str(exc)},
            })
            self._emit(
                run, "module_failed", f"Module {module.get('title')} failed: {exc}",
                progress=self._module_progress(run, total),
                agent=module.get("specialist_type"), role="specialist",
                metadata={"moduleId": module_id, "error": exc.__class__.__name__},
            )
            return

        run.completed.add(module_id)
        run.deliverables[module_id] = deliverable
        self.store.update_work_module(module_id, {
            "status": "completed",
            "quality_score": deliverable.get("qualityScore"),
            "deliverables": {**(module.get("deliverables") or {}), "result": deliverable},
            "completed_at": _utcnow(),
        })
        self._emit(
            run, "module_completed", f"Module {module.get('title')} completed",
            progress=self._module_progress(run, total),
            agent=module.get("specialist_type"), role="specialist",
            metadata={"moduleId": module_id, "qualityScore": deliverable.get("qualityScore")},
        )

    @staticmethod
    def _module_progress(run, total) -> int:
        start = PHASE_PROGRESS["executing_modules"]
        span = PHASE_PROGRESS["integrating_results"] - start
        return start + int(span * len(run.completed) / max(total, 1))

    def _skip_blocked(self, run, pending, total):
        for module in pending:
            run.skipped.add(module["id"])
            self.store.update_work_module(module["id"], {"status": "skipped"})
        self._emit(
            run, "manual_review",
            f"{len(run.failed)} module(s) failed; {len(pending)} dependent module(s) skipped",
            progress=self._module_progress(run, total),
            metadata={"failed": sorted(run.failed), "skipped": sorted(run.skipped)},
        )

    def _finish(self, run, outcome, report, validation) -> dict:
        if outcome == OUTCOME_CANCELLED:
            self._emit(
                run, "execution_cancelled", "Execution stopped after cancellation",
                progress=run.updates[-1]["progress"] if run.updates else 0,
            )
        logger.info(
            "Project %s execution finished: %s after %d attempt(s)",
            run.project_id, outcome, run.attempts, extra={"project_id": run.project_id},
        )
        return {
            "projectId": run.project_id,
            "outcome": outcome,
            "status": self.store.get_project_status(run.project_id),
            "attempts": run.attempts,
            "modules": {
                "completed": len(run.completed),
                "failed": len(run.failed),
                "skipped": len(run.skipped),
            },
            "report": report,
            "validation": validation,
            "progressUpdates": run.updates,
        }

    # ── Cancellation ─────────────────────────────────────────────────────

    def cancel_project(self, project_id: str, reason: str = DEFAULT_CANCEL_REASON) -> dict:
        """
        Cancel an initiated or in-progress project.

        Raises:
            NotFoundError: unknown project.
            ConflictError: project already completed or cancelled.
        """
        status = self.store.get_project_status(project_id)
        if status in TERMINAL_PROJECT_STATUSES:
            raise ConflictError("Project", "status", status)
        reason = (reason or "").strip() or DEFAULT_CANCEL_REASON

        self._transition(project_id, status, "cancelled", {"cancellation_reason": reason})
        latest = self.store.get_progress_updates(project_id, limit=1)
        entry = self.store.add_progress_update(project_id, {
            "phase": "cancelled",
            "message": f"Project cancelled: {reason}",
            "progress": latest[-1]["progress"] if latest else 0,
            "metadata": {"previousStatus": status},
        })
        return {
            "projectId": project_id,
            "status": "cancelled",
            "previousStatus": status,
            "reason": reason,
            "cancelledAt": entry["created_at"],
        }

    # ── Status ───────────────────────────────────────────────────────────

    def get_status(self, project_id: str) -> dict:
        project = self.store.get_project(project_id)
        counts = Counter(m["status"] for m in project.get("modules") or [])
        updates = self.store.get_progress_updates(project_id, limit=STATUS_UPDATE_LIMIT)
        return {
            "projectId": project_id,
            "title": project["title"],
            "status": project["status"],
            "feasible": (project.get("feasibility_analysis") or {}).get("feasible") is not False,
            "progress": updates[-1]["progress"] if updates else 0,
            "qualityScore": project.get("quality_score"),
            "modules": {
                "total": len(project.get("modules") or []),
                **{status: counts.get(status, 0) for status in sorted(MODULE_STATUSES)},
            },
            "executionStart": project.get("execution_start"),
            "actualCompletion": project.get("actual_completion"),
            "cancellationReason": project.get("cancellation_reason"),
            "reportId": project.get("report_id"),
            "latestUpdates": updates,
        }
