"""
Project Store — Service Layer.

Source of truth for engagements, fronted by the project cache:
    - Intake:        create a project and all of its work modules in one transaction
    - Reads:         cache-first project lookup and client project listing
    - Updates:       whitelisted project / work-module updates, cache invalidated after commit
    - Ledger:        append-only progress updates, read back in chronological order
    - Reports:       versioned report persistence
    - Operations:    demo client bootstrap, health check, shutdown

Cache failures never fail a store call. Database failures roll back and are
re-raised as TransientBackendError, except id collisions on insert, which
raise ConflictError.
"""

import logging
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import FlushError

from advisory.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransientBackendError,
    ValidationError,
)
from advisory.models import db
from advisory.models.consulting import (
    DEMO_CLIENT,
    MODULE_STATUSES,
    PROJECT_STATUSES,
    URGENCY_LEVELS,
    Client,
    Project,
    ProgressUpdate,
    ProjectReport,
    WorkModule,
    find_dependency_cycle,
)
from advisory.services.cache_service import (
    CLIENT_PROJECTS_TTL,
    PROJECT_TTL,
    ProjectCache,
    client_projects_key,
    project_key,
)

logger = logging.getLogger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_LEADING_NUMBER_RE = re.compile(r"^\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+))")

PROJECT_UPDATE_FIELDS = {
    "status", "quality_score", "execution_start", "actual_completion", "cancellation_reason",
}
MODULE_UPDATE_FIELDS = {
    "status", "actual_hours", "quality_score", "deliverables", "started_at", "completed_at",
}
_DATETIME_FIELDS = {"execution_start", "actual_completion", "started_at", "completed_at"}

DEFAULT_MODULE_HOURS = 2
TITLE_MAX = 100
MODULE_TITLE_MAX = 250
DEFAULT_PROGRESS_LIMIT = 50
DEFAULT_CLIENT_PROJECTS_LIMIT = 100


# ── Helpers ──────────────────────────────────────────────────────────────────


def is_canonical_uuid(value) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value.strip()))


def coerce_estimated_hours(value) -> int:
    """
    Positive integer hours, rounding half up (2.4 → 2, 2.5 → 3).

    Absent, non-numeric or non-positive values give the default of 2;
    positive values that would round to 0 give 1. A leading number is
    accepted from strings such as "3h".
    """
    if value is None or isinstance(value, bool):
        return DEFAULT_MODULE_HOURS
    match = _LEADING_NUMBER_RE.match(str(value))
    if not match:
        return DEFAULT_MODULE_HOURS
    try:
        hours = Decimal(match.group(1))
    except InvalidOperation:
        return DEFAULT_MODULE_HOURS
    if not hours.is_finite() or hours <= 0:
        return DEFAULT_MODULE_HOURS
    return max(1, int(hours.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def derive_project_title(data: dict) -> str:
    title = (data.get("title") or "").strip()
    if title:
        return title[:500]
    query = data["query"].strip()
    if len(query) > TITLE_MAX:
        return query[:TITLE_MAX] + "..."
    return query


def derive_module_title(item: dict) -> str:
    title = (item.get("title") or "").strip()
    if title:
        return title[:500]
    description = (item.get("description") or "").strip()
    if not description:
        return "Untitled Module"
    if len(description) > MODULE_TITLE_MAX:
        return description[:MODULE_TITLE_MAX] + "..."
    return description


def _as_datetime(field, value):
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO-8601 timestamp", details={field: value})


def _pick(data: dict, *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _utcnow():
    return datetime.now(timezone.utc)


# ── Work-module plan preparation ─────────────────────────────────────────────


def prepare_work_modules(items) -> list[dict]:
    """
    Normalise planner output into insertable rows, without touching the DB.

    - ``id`` is kept when it is a canonical UUID; otherwise a UUID is minted
      and the original value is remembered as ``module_key``.
    - Dependencies naming a sibling's ``module_key`` are translated to that
      sibling's UUID. Other non-UUID references are dropped with a warning.
    - A UUID dependency outside this plan, or any cycle, raises ValidationError.
    """
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("workModules must be a list")

    prepared = []
    aliases: dict[str, str] = {}
    ids: set[str] = set()

    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"workModules[{idx}] must be an object")
        raw_id = item.get("id")
        if is_canonical_uuid(raw_id):
            module_id = raw_id.strip().lower()
            module_key = item.get("key") or None
        else:
            module_id = str(uuid.uuid4())
            module_key = str(raw_id).strip() if raw_id not in (None, "") else None
        if module_id in ids:
            raise ValidationError("Duplicate work module id", details={"id": module_id})
        if module_key:
            if module_key in aliases:
                raise ValidationError("Duplicate work module key", details={"id": module_key})
            aliases[module_key] = module_id
        ids.add(module_id)

        raw_deps = _pick(item, "dependencies", "dependsOn", default=[])
        if not isinstance(raw_deps, (list, tuple)):
            raw_deps = [raw_deps]

        prepared.append({
            "id": module_id,
            "module_key": module_key,
            "position": idx,
            "module_type": item.get("type") or item.get("module_type") or "analysis",
            "title": derive_module_title(item),
            "description": item.get("description") or "",
            "specialist_type": item.get("specialist") or item.get("specialist_type") or "general",
            "estimated_hours": coerce_estimated_hours(
                _pick(item, "estimatedHours", "estimated_hours")
            ),
            "execution_plan": _pick(item, "executionPlan", "execution_plan"),
            "deliverables": {
                "expected": item.get("deliverables") or [],
                "successCriteria": item.get("successCriteria") or [],
            },
            "_raw_deps": list(raw_deps),
        })

    for row in prepared:
        resolved = []
        for ref in row.pop("_raw_deps"):
            ref_s = str(ref).strip() if ref is not None else ""
            if ref_s in aliases:
                dep_id = aliases[ref_s]
            elif is_canonical_uuid(ref_s):
                dep_id = ref_s.lower()
                if dep_id not in ids:
                    raise ValidationError(
                        "Work module depends on a module outside this project",
                        details={"module": row["module_key"] or row["id"], "dependency": ref_s},
                    )
            else:
                logger.warning(
                    "Dropping unresolvable dependency %r on module %s",
                    ref, row["module_key"] or row["id"],
                )
                continue
            if dep_id not in resolved:
                resolved.append(dep_id)
        row["dependencies"] = resolved

    culprit = find_dependency_cycle({row["id"]: row["dependencies"] for row in prepared})
    if culprit is not None:
        label = next(r["module_key"] or r["id"] for r in prepared if r["id"] == culprit)
        raise ValidationError(
            "Work module dependencies form a cycle", details={"module": label},
        )
    return prepared


# ═════════════════════════════════════════════════════════════════════════════
# ProjectStore
# ═════════════════════════════════════════════════════════════════════════════


class ProjectStore:
    """Persistence boundary for projects, modules, ledger entries and reports."""

    def __init__(self, cache=None, project_ttl=PROJECT_TTL, client_projects_ttl=CLIENT_PROJECTS_TTL):
        self.cache = cache or ProjectCache()
        self.project_ttl = project_ttl
        self.client_projects_ttl = client_projects_ttl

    @contextmanager
    def _db_guard(self, action):
        try:
            yield
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Project store: %s failed: %s", action, exc)
            raise TransientBackendError(f"{action} failed: {exc.__class__.__name__}") from exc

    @staticmethod
    def _flush_new(resource, row_id):
        """Flush one pending insert; an id already in the table is a 409, not a retry."""
        try:
            db.session.flush()
        except (IntegrityError, FlushError) as exc:
            logger.warning("%s id %s already exists: %s", resource, row_id, exc)
            raise ConflictError(resource, "id", row_id) from exc

    # ── Clients ──────────────────────────────────────────────────────────

    def _demo_client(self):
        client = Client.query.filter_by(email=DEMO_CLIENT["email"]).first()
        if client:
            return client
        client = Client(**DEMO_CLIENT)
        db.session.add(client)
        db.session.flush()
        logger.info("Created demo client %s", client.id, extra={"client_id": client.id})
        return client

    def get_or_create_demo_client(self) -> dict:
        try:
            with self._db_guard("get_or_create_demo_client"):
                client = self._demo_client()
                db.session.commit()
                return client.to_dict()
        except TransientBackendError as exc:
            # lost a creation race on the unique email; the row exists now
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            return Client.query.filter_by(email=DEMO_CLIENT["email"]).one().to_dict()

    # ── Intake ───────────────────────────────────────────────────────────

    def create_project(self, data: dict) -> dict:
        """
        Insert a project and its work modules atomically.

        Args:
            data: query (required), title, context, timeframe, budget, urgency,
                  expectedDeliverables, requirements, feasibilityAnalysis,
                  estimatedCompletion, clientId, id, workModules.

        Returns:
            Project dict including ``modules``.
        """
        if not isinstance(data, dict):
            raise ValidationError("Project data must be an object")
        query = data.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query is required", details={"query": "required"})
        urgency = (data.get("urgency") or "normal").lower()
        if urgency not in URGENCY_LEVELS:
            raise ValidationError(
                f"urgency must be one of {sorted(URGENCY_LEVELS)}", details={"urgency": urgency},
            )
        modules = prepare_work_modules(_pick(data, "workModules", "work_modules", default=[]))
        estimated_completion = _as_datetime(
            "estimatedCompletion", _pick(data, "estimatedCompletion", "estimated_completion"),
        )
        project_id = data.get("id") if is_canonical_uuid(data.get("id")) else str(uuid.uuid4())

        with self._db_guard("create_project"):
            try:
                client_id = _pick(data, "clientId", "client_id")
                if client_id:
                    client = db.session.get(Client, client_id)
                    if client is None:
                        raise NotFoundError("Client", client_id)
                else:
                    client = self._demo_client()

                project = Project(
                    id=project_id,
                    client_id=client.id,
                    title=derive_project_title(data),
                    query_text=query.strip(),
                    context=data.get("context"),
                    timeframe=data.get("timeframe"),
                    budget=data.get("budget"),
                    urgency=urgency,
                    expected_deliverables=list(
                        _pick(data, "expectedDeliverables", "expected_deliverables", default=[])
                    ),
                    requirements=data.get("requirements") or {},
                    feasibility_analysis=_pick(
                        data, "feasibilityAnalysis", "feasibility_analysis", default={}
                    ),
                    estimated_completion=estimated_completion,
                    status="initiated",
                )
                db.session.add(project)
                self._flush_new("Project", project_id)

                for row in modules:
                    db.session.add(WorkModule(project_id=project.id, status="pending", **row))
                    self._flush_new("WorkModule", row["id"])
                db.session.commit()
            except (NotFoundError, ConflictError):
                db.session.rollback()
                raise

        logger.info(
            "Created project %s with %d work modules", project.id, len(modules),
            extra={"project_id": project.id, "client_id": project.client_id},
        )
        self.cache.delete(client_projects_key(project.client_id))
        return project.to_dict(include_modules=True)

    # ── Reads ────────────────────────────────────────────────────────────

    def _load(self, project_id) -> Project:
        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    def get_project(self, project_id) -> dict:
        """Cache-first read of a project with its modules."""
        key = project_key(project_id)
        cached = self.cache.get_json(key)
        if cached is not None:
            return cached

        with self._db_guard("get_project"):
            project = self._load(project_id)
            data = project.to_dict(include_modules=True)
            latest = project.reports.first()
            data["report_id"] = latest.id if latest else None

        self.cache.set_json(key, data, self.project_ttl)
        return data

    def get_project_status(self, project_id) -> str:
        """Status straight from the database (bypasses the cache)."""
        with self._db_guard("get_project_status"):
            status = db.session.execute(
                select(Project.status).where(Project.id == project_id)
            ).scalar_one_or_none()
        if status is None:
            raise NotFoundError("Project", project_id)
        return status

    def get_client_projects(self, client_id, limit=DEFAULT_CLIENT_PROJECTS_LIMIT) -> list[dict]:
        """Newest-first projects of a client, each with its latest report summary."""
        limit = _positive_limit(limit)
        cacheable = limit == DEFAULT_CLIENT_PROJECTS_LIMIT
        key = client_projects_key(client_id)
        if cacheable:
            cached = self.cache.get_json(key)
            if cached is not None:
                return cached

        with self._db_guard("get_client_projects"):
            projects = (
                Project.query.filter_by(client_id=client_id)
                .order_by(Project.created_at.desc())
                .limit(limit)
                .all()
            )
            rows = []
            for p in projects:
                data = p.to_dict()
                latest = p.reports.first()
                data["executive_summary"] = latest.executive_summary if latest else None
                data["report_quality_score"] = latest.quality_score if latest else None
                rows.append(data)

        if cacheable:
            self.cache.set_json(key, rows, self.client_projects_ttl)
        return rows

    # ── Updates ──────────────────────────────────────────────────────────

    def update_project(self, project_id, updates: dict) -> dict | None:
        """
        Apply whitelisted fields; anything else is ignored.

        Returns the updated project dict, or None when no whitelisted field
        was supplied.
        """
        allowed = {k: v for k, v in (updates or {}).items() if k in PROJECT_UPDATE_FIELDS}
        if not allowed:
            return None
        if "status" in allowed and allowed["status"] not in PROJECT_STATUSES:
            raise ValidationError(
                f"status must be one of {sorted(PROJECT_STATUSES)}",
                details={"status": allowed["status"]},
            )
        for field in _DATETIME_FIELDS & allowed.keys():
            allowed[field] = _as_datetime(field, allowed[field])

        with self._db_guard("update_project"):
            project = self._load(project_id)
            for field, value in allowed.items():
                setattr(project, field, value)
            project.updated_at = _utcnow()
            db.session.commit()
            client_id = project.client_id
            result = project.to_dict(include_modules=True)

        self.cache.delete(project_key(project_id))
        self.cache.delete(client_projects_key(client_id))
        return result

    def update_work_module(self, module_id, updates: dict) -> dict | None:
        allowed = {k: v for k, v in (updates or {}).items() if k in MODULE_UPDATE_FIELDS}
        if not allowed:
            return None
        if "status" in allowed and allowed["status"] not in MODULE_STATUSES:
            raise ValidationError(
                f"status must be one of {sorted(MODULE_STATUSES)}",
                details={"status": allowed["status"]},
            )
        for field in _DATETIME_FIELDS & allowed.keys():
            allowed[field] = _as_datetime(field, allowed[field])

        with self._db_guard("update_work_module"):
            module = db.session.get(WorkModule, module_id)
            if module is None:
                raise NotFoundError("WorkModule", module_id)
            for field, value in allowed.items():
                setattr(module, field, value)
            module.updated_at = _utcnow()
            db.session.commit()
            project_id = module.project_id
            result = module.to_dict()

        self.cache.delete(project_key(project_id))
        return result

    # ── Progress ledger ──────────────────────────────────────────────────

    def add_progress_update(self, project_id, data: dict) -> dict:
        """Append one ledger row. Progress is clamped to 0–100."""
        data = data or {}
        try:
            progress = int(round(float(data.get("progress") or 0)))
        except (TypeError, ValueError):
            progress = 0
        progress = max(0, min(100, progress))

        with self._db_guard("add_progress_update"):
            if db.session.get(Project, project_id) is None:
                raise NotFoundError("Project", project_id)
            entry = ProgressUpdate(
                project_id=project_id,
                phase=data.get("phase") or "update",
                message=data.get("message"),
                progress_percentage=progress,
                agent_name=data.get("agent"),
                agent_role=data.get("role"),
                extra=data.get("metadata") or {},
            )
            db.session.add(entry)
            db.session.commit()
            return entry.to_dict()

    def get_progress_updates(self, project_id, limit=DEFAULT_PROGRESS_LIMIT) -> list[dict]:
        """The ``limit`` most recent ledger rows, oldest first."""
        limit = _positive_limit(limit)
        with self._db_guard("get_progress_updates"):
            rows = (
                ProgressUpdate.query.filter_by(project_id=project_id)
                .order_by(ProgressUpdate.created_at.desc(), ProgressUpdate.id.desc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in reversed(rows)]

    # ── Reports ──────────────────────────────────────────────────────────

    def save_project_report(self, project_id, data: dict) -> dict:
        """Insert the next report version for a project."""
        data = data or {}
        with self._db_guard("save_project_report"):
            project = self._load(project_id)
            current = db.session.execute(
                select(func.max(ProjectReport.version)).where(ProjectReport.project_id == project_id)
            ).scalar()
            report = ProjectReport(
                project_id=project_id,
                version=(current or 0) + 1,
                executive_summary=_pick(data, "executiveSummary", "executive_summary"),
                key_findings=_pick(data, "keyFindings", "key_findings", default=[]),
                recommendations=_pick(data, "recommendations", default=[]),
                implementation_roadmap=_pick(
                    data, "implementationRoadmap", "implementation_roadmap", default={}
                ),
                risk_mitigation=_pick(data, "riskMitigation", "risk_mitigation", default=[]),
                success_metrics=_pick(data, "successMetrics", "success_metrics", default=[]),
                quality_score=_pick(data, "qualityScore", "quality_score"),
                deliverables=_pick(data, "deliverables", default=[]),
                approved=bool(data.get("approved", False)),
                validation=data.get("validation") or {},
            )
            db.session.add(report)
            db.session.commit()
            client_id = project.client_id
            result = report.to_dict()

        self.cache.delete(project_key(project_id))
        self.cache.delete(client_projects_key(client_id))
        return result

    def get_latest_report(self, project_id) -> dict | None:
        with self._db_guard("get_latest_report"):
            project = self._load(project_id)
            latest = project.reports.first()
            return latest.to_dict() if latest else None

    # ── Operations ───────────────────────────────────────────────────────

    def health_check(self) -> dict:
        try:
            db.session.execute(db.text("SELECT 1"))
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Health check — database failed: %s", exc)
            raise TransientBackendError("database unreachable") from exc
        return {
            "database": True,
            "cache": self.cache.health_check(),
            "timestamp": _utcnow().isoformat(),
        }

    def close(self):
        db.session.remove()
        db.engine.dispose()
        self.cache.close()
        logger.info("Project store closed")


def _positive_limit(limit) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        raise ValidationError("limit must be a positive integer", details={"limit": limit})
    if value < 1:
        raise ValidationError("limit must be a positive integer", details={"limit": limit})
    return value
