"""Workspace Binder — pins workspaces to committed template versions."""

from __future__ import annotations

import logging

from workspace_registry import audit_log
from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import TemplateState, Workspace
from workspace_registry.errors import ValidationError, WorkspaceUnbound
from workspace_registry.ledger.service import VersionLedger, load_version, load_workspace
from workspace_registry.store.convert import to_workspace
from workspace_registry.store.database import Database
from workspace_registry.store.models import WorkspaceDB

logger = logging.getLogger(__name__)


class WorkspaceBinder:
    """
    Usage:
        binder = WorkspaceBinder(db, ledger)
        ws = binder.create_workspace("acme", ctx)
        binder.bind_workspace(ws.id, version.id, used_schemas=["orders"], ctx=ctx)
        state = binder.get_active_snapshot(ws.id)
    """

    def __init__(self, db: Database, ledger: VersionLedger | None = None) -> None:
        self.db = db
        self.ledger = ledger or VersionLedger(db)

    def create_workspace(self, name: str, ctx: RequestContext | None = None) -> Workspace:
        ctx = ctx or RequestContext.system()
        if not name or not name.strip():
            raise ValidationError("Workspace name must not be empty")
        with self.db.transaction() as session:
            row = WorkspaceDB(name=name, used_schemas=[])
            session.add(row)
            session.flush()
            audit_log.record(session, ctx, "create", "workspace", row.id, {"name": name})
            result = to_workspace(row)

        logger.info("Workspace created: id=%d name='%s'", result.id, name)
        return result

    def get_workspace(self, workspace_id: int) -> Workspace:
        with self.db.session() as session:
            return to_workspace(load_workspace(session, workspace_id))

    def bind_workspace(
        self,
        workspace_id: int,
        version_id: int,
        used_schemas: list[str] | None = None,
        ctx: RequestContext | None = None,
    ) -> Workspace:
        """Bind through the ledger so the version is flagged applied and gating updates."""
        self.ledger.mark_applied(version_id, workspace_id, used_schemas=used_schemas, ctx=ctx)
        return self.get_workspace(workspace_id)

    def get_active_snapshot(self, workspace_id: int) -> TemplateState:
        """
        The snapshot of the version the workspace is bound to.

        Raises:
            WorkspaceNotFound: No such workspace.
            WorkspaceUnbound: The workspace has never been bound.
        """
        with self.db.session() as session:
            workspace = load_workspace(session, workspace_id)
            if workspace.template_version_id is None:
                raise WorkspaceUnbound(
                    f"Workspace {workspace_id} is not bound to a template version",
                    workspace_id=workspace_id,
                )
            version = load_version(session, workspace.template_version_id)
            return TemplateState.model_validate(version.snapshot)
