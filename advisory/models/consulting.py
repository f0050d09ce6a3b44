"""
Advisory Engagement Platform
Engagement domain models.

Models:
    - Client:          the organisation commissioning advisory work
    - Project:         one engagement, from intake through delivery or cancellation
    - WorkModule:      unit of work with a specialist type, hour estimate and dependencies
    - ProgressUpdate:  append-only progress ledger entry
    - ProjectReport:   compiled, validated deliverable (versioned per project)

Architecture:
    Client ──1:N──▶ Project ──1:N──▶ WorkModule
    Project ──1:N──▶ ProgressUpdate
    Project ──1:N──▶ ProjectReport
    WorkModule ──N:M──▶ WorkModule  (dependencies, JSON array of module ids)

Lifecycle states:
    Project:     initiated → in_progress → completed  |  initiated/in_progress → cancelled
    WorkModule:  pending → in_progress → completed | failed  |  pending → skipped
"""

import uuid
from datetime import datetime, timezone

from advisory.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"initiated", "in_progress", "completed", "cancelled"}

TERMINAL_PROJECT_STATUSES = {"completed", "cancelled"}

URGENCY_LEVELS = {"low", "normal", "high", "critical"}

MODULE_STATUSES = {"pending", "in_progress", "completed", "failed", "skipped"}

DEMO_CLIENT = {
    "email": "demo@example.com",
    "name": "Demo Client",
    "organization": "Demo Organization",
}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

PROJECT_TRANSITIONS = {
    "initiated":   ["in_progress", "cancelled"],
    "in_progress": ["completed", "cancelled"],
    "completed":   [],
    "cancelled":   [],
}


def validate_project_transition(old_status, new_status):
    """Return True if Project status transition is valid."""
    return new_status in PROJECT_TRANSITIONS.get(old_status, [])


def find_dependency_cycle(edges):
    """
    Return one module id that sits on a dependency cycle, or None.

    ``edges`` maps module id → list of prerequisite module ids. Uses Kahn's
    algorithm: anything left unsorted after draining zero-indegree nodes is
    part of (or downstream of) a cycle.
    """
    indegree = {node: 0 for node in edges}
    dependents = {node: [] for node in edges}
    for node, prereqs in edges.items():
        for pre in prereqs:
            if pre not in indegree:
                continue
            indegree[node] += 1
            dependents[pre].append(node)

    ready = [node for node, deg in indegree.items() if deg == 0]
    seen = 0
    while ready:
        node = ready.pop()
        seen += 1
        for nxt in dependents[node]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                ready.append(nxt)

    if seen == len(indegree):
        return None
    return next(node for node, deg in indegree.items() if deg > 0)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Client
# ═════════════════════════════════════════════════════════════════════════════


class Client(db.Model):
    """Organisation that commissions engagements. One demo client is shared."""

    __tablename__ = "clients"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    organization = db.Column(db.String(255), nullable=True)
    tier = db.Column(db.String(30), nullable=False, default="standard")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    projects = db.relationship(
        "Project", backref="client", lazy="dynamic",
        order_by="Project.created_at.desc()",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "organization": self.organization,
            "tier": self.tier,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Client {self.email}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Project
# ═════════════════════════════════════════════════════════════════════════════


class Project(db.Model):
    """
    One advisory engagement.

    Status is only changed through ProjectStore.update_project, which the
    lifecycle orchestrator drives after checking PROJECT_TRANSITIONS.
    """

    __tablename__ = "consulting_projects"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    client_id = db.Column(
        db.String(36), db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(500), nullable=False)
    # stored as column "query"; the attribute must not shadow Model.query
    query_text = db.Column("query", db.Text, nullable=False)
    context = db.Column(db.Text, nullable=True)
    timeframe = db.Column(db.String(100), nullable=True)
    budget = db.Column(db.String(100), nullable=True)
    urgency = db.Column(
        db.String(20), nullable=False, default="normal",
        comment="low | normal | high | critical",
    )
    expected_deliverables = db.Column(db.JSON, default=list)
    requirements = db.Column(db.JSON, default=dict)
    feasibility_analysis = db.Column(db.JSON, default=dict)
    status = db.Column(
        db.String(30), nullable=False, default="initiated", index=True,
        comment="initiated | in_progress | completed | cancelled",
    )
    quality_score = db.Column(db.Float, nullable=True)
    estimated_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    execution_start = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('initiated','in_progress','completed','cancelled')",
            name="ck_consulting_project_status",
        ),
        db.CheckConstraint(
            "urgency IN ('low','normal','high','critical')",
            name="ck_consulting_project_urgency",
        ),
    )

    modules = db.relationship(
        "WorkModule", backref="project", lazy="select",
        cascade="all, delete-orphan", order_by="WorkModule.position",
    )
    progress_updates = db.relationship(
        "ProgressUpdate", backref="project", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    reports = db.relationship(
        "ProjectReport", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProjectReport.version.desc()",
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_PROJECT_STATUSES

    def to_dict(self, include_modules=False):
        result = {
            "id": self.id,
            "client_id": self.client_id,
            "title": self.title,
            "query": self.query_text,
            "context": self.context,
            "timeframe": self.timeframe,
            "budget": self.budget,
            "urgency": self.urgency,
            "expected_deliverables": self.expected_deliverables or [],
            "requirements": self.requirements or {},
            "feasibility_analysis": self.feasibility_analysis or {},
            "status": self.status,
            "quality_score": self.quality_score,
            "estimated_completion": _iso(self.estimated_completion),
            "execution_start": _iso(self.execution_start),
            "actual_completion": _iso(self.actual_completion),
            "cancellation_reason": self.cancellation_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_modules:
            result["modules"] = [m.to_dict() for m in self.modules]
        return result

    def __repr__(self):
        return f"<Project {self.id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. WorkModule
# ═════════════════════════════════════════════════════════════════════════════


class WorkModule(db.Model):
    """
    Unit of advisory work inside a project.

    ``dependencies`` holds ids of other WorkModules in the same project.
    ``module_key`` keeps the planner's local identifier (e.g. ``wm_initial_analysis``)
    after it has been swapped for a UUID.
    """

    __tablename__ = "work_modules"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    project_id = db.Column(
        db.String(36), db.ForeignKey("consulting_projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    module_key = db.Column(db.String(100), nullable=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    module_type = db.Column(db.String(50), nullable=False, default="analysis")
    title = db.Column(db.String(500), nullable=False)
    description = db.Column(db.Text, nullable=True)
    specialist_type = db.Column(db.String(100), nullable=False, default="general")
    estimated_hours = db.Column(db.Integer, nullable=False, default=2)
    actual_hours = db.Column(db.Float, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed | failed | skipped",
    )
    quality_score = db.Column(db.Float, nullable=True)
    deliverables = db.Column(db.JSON, default=dict)
    execution_plan = db.Column(db.JSON, nullable=True)
    dependencies = db.Column(db.JSON, default=list)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint("estimated_hours >= 1", name="ck_work_module_hours"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "module_key": self.module_key,
            "position": self.position,
            "module_type": self.module_type,
            "title": self.title,
            "description": self.description,
            "specialist_type": self.specialist_type,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "status": self.status,
            "quality_score": self.quality_score,
            "deliverables": self.deliverables or {},
            "execution_plan": self.execution_plan,
            "dependencies": list(self.dependencies or []),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkModule {self.module_key or self.id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ProgressUpdate (ledger)
# ═════════════════════════════════════════════════════════════════════════════


class ProgressUpdate(db.Model):
    """Append-only ledger row. Never updated or deleted by the application."""

    __tablename__ = "project_progress"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    project_id = db.Column(
        db.String(36), db.ForeignKey("consulting_projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase = db.Column(db.String(100), nullable=False)
    message = db.Column(db.Text, nullable=True)
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)
    agent_name = db.Column(db.String(100), nullable=True)
    agent_role = db.Column(db.String(100), nullable=True)
    # "metadata" is reserved on declarative classes
    extra = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    __table_args__ = (
        db.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_project_progress_range",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "phase": self.phase,
            "message": self.message,
            "progress": self.progress_percentage,
            "agent": self.agent_name,
            "role": self.agent_role,
            "metadata": self.extra or {},
            "created_at": _iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 5. ProjectReport
# ═════════════════════════════════════════════════════════════════════════════


class ProjectReport(db.Model):
    """Compiled deliverable. The highest version is the project's current report."""

    __tablename__ = "project_reports"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    project_id = db.Column(
        db.String(36), db.ForeignKey("consulting_projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    executive_summary = db.Column(db.Text, nullable=True)
    key_findings = db.Column(db.JSON, default=list)
    recommendations = db.Column(db.JSON, default=list)
    implementation_roadmap = db.Column(db.JSON, default=dict)
    risk_mitigation = db.Column(db.JSON, default=list)
    success_metrics = db.Column(db.JSON, default=list)
    quality_score = db.Column(db.Float, nullable=True)
    deliverables = db.Column(db.JSON, default=list)
    approved = db.Column(db.Boolean, nullable=False, default=False)
    validation = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("project_id", "version", name="uq_project_report_version"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version": self.version,
            "executive_summary": self.executive_summary,
            "key_findings": self.key_findings or [],
            "recommendations": self.recommendations or [],
            "implementation_roadmap": self.implementation_roadmap or {},
            "risk_mitigation": self.risk_mitigation or [],
            "success_metrics": self.success_metrics or [],
            "quality_score": self.quality_score,
            "deliverables": self.deliverables or [],
            "approved": self.approved,
            "validation": self.validation or {},
            "created_at": _iso(self.created_at),
        }
