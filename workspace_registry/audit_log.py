"""
Audit trail — one row per mutating registry operation.

Services call ``record()`` with the session of the transaction they are
already in, so an operation and its audit row commit or roll back together.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import AuditEntry
from workspace_registry.store.database import Database
from workspace_registry.store.models import AuditLogDB

logger = logging.getLogger(__name__)


def record(
    session: Session,
    ctx: RequestContext,
    action: str,
    resource_type: str,
    resource_id: Any = None,
    details: dict[str, Any] | None = None,
) -> AuditLogDB:
    """Add an audit row to ``session``; the caller's transaction commits it."""
    row = AuditLogDB(
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        admin_id=ctx.admin_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        details=details or {},
    )
    session.add(row)
    logger.debug(
        "Audit: %s %s/%s admin=%s", action, resource_type, resource_id, ctx.admin_id,
    )
    return row


class AuditTrail:
    """Read side of the audit log."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def list_entries(
        self,
        resource_type: str | None = None,
        resource_id: Any = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        """Return a page of audit entries, newest first, and the total count."""
        with self.db.session() as session:
            stmt = select(AuditLogDB)
            count_stmt = select(func.count()).select_from(AuditLogDB)
            if resource_type:
                stmt = stmt.where(AuditLogDB.resource_type == resource_type)
                count_stmt = count_stmt.where(AuditLogDB.resource_type == resource_type)
            if resource_id is not None:
                stmt = stmt.where(AuditLogDB.resource_id == str(resource_id))
                count_stmt = count_stmt.where(AuditLogDB.resource_id == str(resource_id))
            rows = session.execute(
                stmt.order_by(AuditLogDB.id.desc()).limit(limit).offset(offset)
            ).scalars().all()
            total = session.execute(count_stmt).scalar() or 0
            return [_to_entry(row) for row in rows], total


def _to_entry(row: AuditLogDB) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        admin_id=row.admin_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=row.details or {},
        created_at=row.created_at,
    )
