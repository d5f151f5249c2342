"""
Workspace Registry — HTTP API.

FastAPI application exposing the registry engine:
- Table schemas and their fields
- Section tree
- Templates, template versions and rollback
- Workspace binding
- Audit log

Every mutation passes a ``RequestContext`` built from the ``X-Admin-Id``
header and the client address, and is recorded in the audit log by the
service that performs it. Registry errors are rendered as
``{"error", "message", "detail"}`` with a status derived from their
category.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from workspace_registry.audit_log import AuditTrail
from workspace_registry.config import settings
from workspace_registry.context import RequestContext
from workspace_registry.domain.codes import suggest_code
from workspace_registry.domain.schema import (
    AccessType,
    FieldChange,
    FieldDescriptor,
    SchemaCategory,
    SchemaPatch,
    SectionPatch,
    SectionScope,
    TemplateKind,
    TemplatePatch,
    TemplateState,
)
from workspace_registry.errors import (
    ConflictError,
    ImmutableViolation,
    NotFoundError,
    ReferentialIntegrityError,
    RegistryError,
    StateError,
    ValidationError,
    VersionNotFound,
)
from workspace_registry.ledger.service import VersionLedger
from workspace_registry.registry.seed import seed_system_schemas
from workspace_registry.registry.service import SchemaRegistry
from workspace_registry.sections.service import SectionTree
from workspace_registry.store.database import Database
from workspace_registry.templates.composer import TemplateComposer
from workspace_registry.workspaces.binder import WorkspaceBinder

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class SchemaCreateRequest(BaseModel):
    code: str | None = None
    name: str
    category: SchemaCategory
    description: str | None = None
    fields: list[FieldDescriptor] = Field(default_factory=list)


class FieldChangeSetRequest(BaseModel):
    changes: list[FieldChange]


class TranslateRequest(BaseModel):
    text: str


class SectionCreateRequest(BaseModel):
    name: str
    description: str | None = None
    parent_id: int | None = None
    bound_schema: str | None = None
    access_type: AccessType = AccessType.OPEN
    scope: SectionScope = SectionScope.LOCAL
    enabled: bool = True


class TemplateCreateRequest(BaseModel):
    name: str
    kind: TemplateKind
    description: str | None = None
    schema_bindings: list[str] = Field(default_factory=list)
    section_bindings: list[int] = Field(default_factory=list)
    disabled_schemas: list[str] = Field(default_factory=list)
    disabled_sections: list[int] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    is_default: bool = False
    replace_default: bool = False


class TemplateUpdateRequest(TemplatePatch):
    replace_default: bool = False


class CommitRequest(BaseModel):
    """Proposed state to commit; omitted means the template's working state."""

    state: TemplateState | None = None


class RollbackRequest(BaseModel):
    version_id: int


class WorkspaceCreateRequest(BaseModel):
    name: str


class BindRequest(BaseModel):
    version_id: int
    used_schemas: list[str] | None = None


class RegistryState:
    """Services wired at startup, or injected directly by tests."""

    def __init__(self) -> None:
        self.db: Database | None = None
        self.registry: SchemaRegistry | None = None
        self.sections: SectionTree | None = None
        self.composer: TemplateComposer | None = None
        self.ledger: VersionLedger | None = None
        self.binder: WorkspaceBinder | None = None
        self.audit: AuditTrail | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)

    def bind(self, db: Database) -> None:
        self.db = db
        self.registry = SchemaRegistry(db)
        self.sections = SectionTree(db)
        self.composer = TemplateComposer(db)
        self.ledger = VersionLedger(db)
        self.binder = WorkspaceBinder(db, self.ledger)
        self.audit = AuditTrail(db)


state = RegistryState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect to the registry store unless a store was injected beforehand."""
    owns_db = state.db is None
    if owns_db:
        db = Database(settings.database_url_sync, echo=settings.database_echo)
        db.initialize()
        state.bind(db)
        logger.info("Registry API connected to store: %s", db.engine.dialect.name)
        if settings.seed_system_schemas:
            seed_system_schemas(state.registry)

    yield

    if owns_db and state.db is not None:
        state.db.dispose()
        state.db = None
    logger.info("Registry API shut down")


app = FastAPI(
    title="Workspace Registry",
    description="Versioned table-schema and workspace template registry",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Errors ─────────────────────────────────────────────────────


def status_for(exc: RegistryError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ImmutableViolation):
        return 403
    if isinstance(exc, (ConflictError, ReferentialIntegrityError, StateError)):
        return 409
    return 400


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    status = status_for(exc)
    logger.warning(
        "Request rejected: %s %s -> %d %s", request.method, request.url.path, status, exc.code,
    )
    return JSONResponse(status_code=status, content=jsonable(exc.to_dict()))


def jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


# ── Dependencies ───────────────────────────────────────────────


def services() -> RegistryState:
    if state.db is None:
        raise HTTPException(status_code=503, detail="Registry store not initialized")
    return state


def request_context(request: Request) -> RequestContext:
    admin_header = request.headers.get("x-admin-id")
    admin_id = int(admin_header) if admin_header and admin_header.isdigit() else None
    return RequestContext(
        admin_id=admin_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def page_size(limit: int | None = Query(default=None, ge=1)) -> int:
    if limit is None:
        return settings.default_page_size
    return min(limit, settings.max_page_size)


# ── Routes: Table schemas ──────────────────────────────────────


@app.get("/api/table-schemas")
def list_schemas(
    category: SchemaCategory | None = None,
    search: str | None = None,
    limit: int = Depends(page_size),
    offset: int = Query(default=0, ge=0),
    svc: RegistryState = Depends(services),
):
    items, total = svc.registry.list_schemas(category, search, limit, offset)
    return {"items": items, "total": total}


@app.post("/api/table-schemas", status_code=201)
def create_schema(
    req: SchemaCreateRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    code = req.code or suggest_code(req.name)
    if not code:
        raise ValidationError("Could not derive a schema code from the name; pass one explicitly")
    return svc.registry.create_schema(
        code=code,
        name=req.name,
        category=req.category,
        fields=req.fields,
        description=req.description,
        ctx=ctx,
    )


@app.post("/api/table-schemas/translate")
def translate_name(req: TranslateRequest, svc: RegistryState = Depends(services)):
    """Suggest a schema code for a display name and report whether it is free."""
    code = suggest_code(req.text)
    return {"code": code, "available": bool(code) and not svc.registry.exists(code)}


@app.get("/api/table-schemas/{code}")
def get_schema(code: str, svc: RegistryState = Depends(services)):
    return svc.registry.get_schema(code)


@app.put("/api/table-schemas/{code}")
def update_schema(
    code: str,
    patch: SchemaPatch,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.registry.update_schema(code, patch, ctx)


@app.delete("/api/table-schemas/{code}", status_code=204)
def delete_schema(
    code: str,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    svc.registry.delete_schema(code, ctx)
    return Response(status_code=204)


@app.get("/api/table-schemas/{code}/fields")
def list_fields(code: str, history: bool = False, svc: RegistryState = Depends(services)):
    if history:
        return svc.registry.field_history(code)
    return svc.registry.get_fields(code)


@app.post("/api/table-schemas/{code}/fields", status_code=201)
def create_field(
    code: str,
    field: FieldDescriptor,
    position: int | None = Query(default=None, ge=0),
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.registry.create_field(code, field, position, ctx)


@app.put("/api/table-schemas/{code}/fields/{name}")
def update_field(
    code: str,
    name: str,
    field: FieldDescriptor,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.registry.update_field(code, name, field, ctx)


@app.delete("/api/table-schemas/{code}/fields/{name}")
def delete_field(
    code: str,
    name: str,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.registry.delete_field(code, name, ctx)


@app.post("/api/table-schemas/{code}/field-changes")
def apply_field_changes(
    code: str,
    req: FieldChangeSetRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.registry.apply_field_changes(code, req.changes, ctx)


# ── Routes: Sections ───────────────────────────────────────────


@app.get("/api/sections")
def list_sections(
    search: str | None = None,
    parent_id: int | None = None,
    roots: bool = False,
    limit: int = Depends(page_size),
    offset: int = Query(default=0, ge=0),
    svc: RegistryState = Depends(services),
):
    kwargs: dict[str, Any] = {"search": search, "limit": limit, "offset": offset}
    if roots:
        kwargs["parent_id"] = None
    elif parent_id is not None:
        kwargs["parent_id"] = parent_id
    items, total = svc.sections.list_nodes(**kwargs)
    return {"items": items, "total": total}


@app.post("/api/sections", status_code=201)
def create_section(
    req: SectionCreateRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.sections.create_node(
        name=req.name,
        parent_id=req.parent_id,
        bound_schema=req.bound_schema,
        access_type=req.access_type,
        scope=req.scope,
        description=req.description,
        enabled=req.enabled,
        ctx=ctx,
    )


@app.get("/api/sections/{node_id}")
def get_section(node_id: int, svc: RegistryState = Depends(services)):
    node = svc.sections.get_node(node_id)
    return {
        **node.model_dump(mode="json"),
        "children": [c.id for c in svc.sections.children(node_id)],
        "ancestors": [a.id for a in svc.sections.ancestors(node_id)],
    }


@app.put("/api/sections/{node_id}")
def update_section(
    node_id: int,
    patch: SectionPatch,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.sections.update_node(node_id, patch, ctx)


@app.delete("/api/sections/{node_id}", status_code=204)
def delete_section(
    node_id: int,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    svc.sections.delete_node(node_id, ctx)
    return Response(status_code=204)


@app.post("/api/sections/{node_id}/toggle")
def toggle_section(
    node_id: int,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.sections.toggle_enabled(node_id, ctx)


# ── Routes: Templates ──────────────────────────────────────────


@app.get("/api/templates")
def list_templates(
    kind: TemplateKind | None = None,
    active: bool | None = None,
    limit: int = Depends(page_size),
    offset: int = Query(default=0, ge=0),
    svc: RegistryState = Depends(services),
):
    items, total = svc.composer.list_templates(kind, active, limit, offset)
    return {"items": items, "total": total}


@app.post("/api/templates", status_code=201)
def create_template(
    req: TemplateCreateRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.composer.create_template(
        name=req.name,
        kind=req.kind,
        schema_bindings=req.schema_bindings,
        section_bindings=req.section_bindings,
        config=req.config,
        is_default=req.is_default,
        description=req.description,
        replace_default=req.replace_default,
        disabled_schemas=req.disabled_schemas,
        disabled_sections=req.disabled_sections,
        ctx=ctx,
    )


@app.get("/api/templates/{template_id}")
def get_template(template_id: int, svc: RegistryState = Depends(services)):
    return svc.composer.get_template(template_id)


@app.put("/api/templates/{template_id}")
def update_template(
    template_id: int,
    req: TemplateUpdateRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    patch = TemplatePatch(**req.model_dump(exclude_unset=True, exclude={"replace_default"}))
    return svc.composer.update_template(template_id, patch, req.replace_default, ctx)


@app.delete("/api/templates/{template_id}", status_code=204)
def delete_template(
    template_id: int,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    svc.composer.delete_template(template_id, ctx)
    return Response(status_code=204)


@app.post("/api/templates/{template_id}/schemas/{code}/toggle")
def toggle_template_schema(
    template_id: int,
    code: str,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.composer.toggle_schema(template_id, code, ctx)


@app.post("/api/templates/{template_id}/sections/{section_id}/toggle")
def toggle_template_section(
    template_id: int,
    section_id: int,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.composer.toggle_section(template_id, section_id, ctx)


# ── Routes: Template versions ──────────────────────────────────


@app.get("/api/templates/{template_id}/versions")
def list_versions(
    template_id: int,
    limit: int = Depends(page_size),
    offset: int = Query(default=0, ge=0),
    svc: RegistryState = Depends(services),
):
    items, total = svc.ledger.get_history(template_id, limit, offset)
    return {"items": items, "total": total}


@app.post("/api/templates/{template_id}/versions", status_code=201)
def commit_version(
    template_id: int,
    req: CommitRequest | None = None,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    proposed = req.state if req is not None else None
    if proposed is None:
        proposed = svc.composer.working_state(template_id)
    return svc.ledger.commit(template_id, proposed, ctx)


@app.post("/api/templates/{template_id}/rollback", status_code=201)
def rollback_template(
    template_id: int,
    req: RollbackRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.ledger.rollback(template_id, req.version_id, ctx)


@app.get("/api/templates/{template_id}/diff")
def diff_versions(
    template_id: int,
    from_version: int = Query(alias="from"),
    to_version: int = Query(alias="to"),
    svc: RegistryState = Depends(services),
):
    for version_id in (from_version, to_version):
        if svc.ledger.get_version(version_id).template_id != template_id:
            raise VersionNotFound(
                f"Version {version_id} does not belong to template {template_id}",
                version_id=version_id,
                template_id=template_id,
            )
    return svc.ledger.diff_versions(from_version, to_version)


# ── Routes: Workspaces ─────────────────────────────────────────


@app.post("/api/workspaces", status_code=201)
def create_workspace(
    req: WorkspaceCreateRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.binder.create_workspace(req.name, ctx)


@app.get("/api/workspaces/{workspace_id}")
def get_workspace(workspace_id: int, svc: RegistryState = Depends(services)):
    return svc.binder.get_workspace(workspace_id)


@app.post("/api/workspaces/{workspace_id}/bind")
def bind_workspace(
    workspace_id: int,
    req: BindRequest,
    svc: RegistryState = Depends(services),
    ctx: RequestContext = Depends(request_context),
):
    return svc.binder.bind_workspace(workspace_id, req.version_id, req.used_schemas, ctx)


@app.get("/api/workspaces/{workspace_id}/snapshot")
def workspace_snapshot(workspace_id: int, svc: RegistryState = Depends(services)):
    return svc.binder.get_active_snapshot(workspace_id)


# ── Routes: Audit log ──────────────────────────────────────────


@app.get("/api/audit-logs")
def list_audit_logs(
    resource_type: str | None = None,
    resource_id: str | None = None,
    limit: int = Depends(page_size),
    offset: int = Query(default=0, ge=0),
    svc: RegistryState = Depends(services),
):
    items, total = svc.audit.list_entries(resource_type, resource_id, limit, offset)
    return {"items": items, "total": total}


# ── Health Check ───────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "store_available": state.db is not None,
        "dialect": state.db.engine.dialect.name if state.db is not None else None,
    })
