"""
Section Tree — the hierarchy of platform feature nodes.

Invariants enforced server-side, independent of any client checks:

- The parent graph is a forest: every ``parent_id`` names an existing node
  and re-parenting never closes a cycle.
- System nodes can be toggled but never deleted.
- A node with children cannot be deleted; callers re-parent or delete the
  children first, so nothing is ever orphaned silently.
- A node bound by a template, or by the version a workspace runs, cannot be
  deleted.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from workspace_registry import audit_log
from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import (
    AccessType,
    SectionNode,
    SectionPatch,
    SectionScope,
)
from workspace_registry.errors import (
    CycleDetected,
    HasChildren,
    ParentNotFound,
    SectionInUse,
    SectionNotFound,
    SystemNodeLocked,
    UnknownSchema,
    ValidationError,
)
from workspace_registry.store import queries
from workspace_registry.store.convert import to_section
from workspace_registry.store.database import Database
from workspace_registry.store.models import SectionDB

logger = logging.getLogger(__name__)

_UNSET = object()


class SectionTree:
    """CRUD and structural operations over the section forest."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── Reads ───────────────────────────────────────────────────

    def list_nodes(
        self,
        search: str | None = None,
        parent_id: int | None | object = _UNSET,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[SectionNode], int]:
        """
        Return a page of nodes ordered by name, and the total count.

        ``parent_id=None`` restricts the page to root nodes; leaving it unset
        lists nodes at every depth.
        """
        with self.db.session() as session:
            stmt = select(SectionDB)
            count_stmt = select(func.count()).select_from(SectionDB)
            filters = []
            if search:
                filters.append(SectionDB.name.ilike(f"%{search}%"))
            if parent_id is None:
                filters.append(SectionDB.parent_id.is_(None))
            elif parent_id is not _UNSET:
                filters.append(SectionDB.parent_id == parent_id)
            for clause in filters:
                stmt = stmt.where(clause)
                count_stmt = count_stmt.where(clause)
            rows = session.execute(
                stmt.order_by(SectionDB.name, SectionDB.id).limit(limit).offset(offset)
            ).scalars().all()
            total = session.execute(count_stmt).scalar() or 0
            return [to_section(row) for row in rows], total

    def get_node(self, node_id: int) -> SectionNode:
        with self.db.session() as session:
            return to_section(self._load(session, node_id))

    def children(self, node_id: int) -> list[SectionNode]:
        with self.db.session() as session:
            self._load(session, node_id)
            rows = session.execute(
                select(SectionDB).where(SectionDB.parent_id == node_id).order_by(SectionDB.name)
            ).scalars().all()
            return [to_section(row) for row in rows]

    def ancestors(self, node_id: int) -> list[SectionNode]:
        """Parent first, root last."""
        with self.db.session() as session:
            node = self._load(session, node_id)
            chain = []
            for ancestor_id in self._ancestor_ids(session, node.parent_id):
                chain.append(to_section(self._load(session, ancestor_id)))
            return chain

    # ── Mutations ───────────────────────────────────────────────

    def create_node(
        self,
        name: str,
        parent_id: int | None = None,
        bound_schema: str | None = None,
        access_type: AccessType = AccessType.OPEN,
        scope: SectionScope = SectionScope.LOCAL,
        system: bool = False,
        description: str | None = None,
        enabled: bool = True,
        ctx: RequestContext | None = None,
    ) -> SectionNode:
        """
        Raises:
            ParentNotFound: ``parent_id`` does not name an existing node.
            UnknownSchema: ``bound_schema`` is not in the registry.
        """
        ctx = ctx or RequestContext.system()
        _require_name(name)
        with self.db.transaction() as session:
            if parent_id is not None:
                self._require_parent(session, parent_id)
            if bound_schema is not None:
                self._require_schema(session, bound_schema)

            row = SectionDB(
                name=name,
                description=description,
                parent_id=parent_id,
                bound_schema=bound_schema,
                access_type=AccessType(access_type).value,
                scope=SectionScope(scope).value,
                is_system=system,
                is_enabled=enabled,
            )
            session.add(row)
            session.flush()
            audit_log.record(
                session, ctx, "create", "section", row.id,
                {"name": name, "parent_id": parent_id, "bound_schema": bound_schema},
            )
            result = to_section(row)

        logger.info("Section created: id=%d name='%s' parent=%s", result.id, name, parent_id)
        return result

    def update_node(
        self,
        node_id: int,
        patch: SectionPatch,
        ctx: RequestContext | None = None,
    ) -> SectionNode:
        """Edit node attributes; a ``parent_id`` in the patch is checked like ``reparent``."""
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, node_id, lock=True)
            changed = patch.model_dump(exclude_unset=True, mode="json")
            if "parent_id" in patch.model_fields_set and patch.parent_id != row.parent_id:
                self._move(session, row, patch.parent_id)
            if patch.name is not None:
                _require_name(patch.name)
                row.name = patch.name
            if patch.description is not None:
                row.description = patch.description
            if "bound_schema" in patch.model_fields_set:
                if patch.bound_schema is not None:
                    self._require_schema(session, patch.bound_schema)
                row.bound_schema = patch.bound_schema
            if patch.access_type is not None:
                row.access_type = patch.access_type.value
            if patch.scope is not None:
                row.scope = patch.scope.value
            session.flush()
            audit_log.record(session, ctx, "update", "section", node_id, changed)
            result = to_section(row)

        logger.info("Section updated: id=%d keys=%s", node_id, sorted(changed))
        return result

    def reparent(
        self,
        node_id: int,
        new_parent_id: int | None,
        ctx: RequestContext | None = None,
    ) -> SectionNode:
        """
        Move a node under ``new_parent_id`` (``None`` makes it a root).

        Walks the ancestors of the new parent; if ``node_id`` is among them
        (or is the new parent itself) the move would close a cycle.

        Raises:
            ParentNotFound: The new parent does not exist.
            CycleDetected: The move would make the node its own ancestor.
        """
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, node_id, lock=True)
            old_parent_id = row.parent_id
            self._move(session, row, new_parent_id)
            session.flush()
            audit_log.record(
                session, ctx, "update", "section", node_id,
                {"parent_id": {"old": old_parent_id, "new": new_parent_id}},
            )
            result = to_section(row)

        logger.info("Section re-parented: id=%d %s -> %s", node_id, old_parent_id, new_parent_id)
        return result

    def toggle_enabled(self, node_id: int, ctx: RequestContext | None = None) -> SectionNode:
        """Flip ``enabled``. Allowed on system nodes."""
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, node_id, lock=True)
            row.is_enabled = not row.is_enabled
            session.flush()
            audit_log.record(session, ctx, "toggle", "section", node_id, {"enabled": row.is_enabled})
            result = to_section(row)

        logger.info("Section toggled: id=%d enabled=%s", node_id, result.enabled)
        return result

    def delete_node(self, node_id: int, ctx: RequestContext | None = None) -> None:
        """
        Raises:
            SystemNodeLocked: The node is a system node.
            HasChildren: Some node still has this node as its parent.
            SectionInUse: A template or an active workspace snapshot binds the node.
        """
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, node_id, lock=True)
            if row.is_system:
                raise SystemNodeLocked(f"System section {node_id} cannot be deleted", node_id=node_id)

            child_ids = session.execute(
                select(SectionDB.id).where(SectionDB.parent_id == node_id)
            ).scalars().all()
            if child_ids:
                raise HasChildren(
                    f"Section {node_id} has {len(child_ids)} child section(s)",
                    node_id=node_id,
                    children=sorted(child_ids),
                )

            templates = queries.templates_binding_section(session, node_id)
            workspaces = queries.workspaces_binding_section(session, node_id)
            if templates or workspaces:
                raise SectionInUse(
                    f"Section {node_id} is bound by template(s) {templates} "
                    f"and workspace(s) {workspaces}",
                    node_id=node_id,
                    templates=templates,
                    workspaces=workspaces,
                )

            session.delete(row)
            audit_log.record(session, ctx, "delete", "section", node_id)

        logger.info("Section deleted: id=%d", node_id)

    delete = delete_node

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _load(session: Session, node_id: int, lock: bool = False) -> SectionDB:
        stmt = select(SectionDB).where(SectionDB.id == node_id)
        if lock:
            stmt = stmt.with_for_update()
        row = session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise SectionNotFound(f"Section {node_id} not found", node_id=node_id)
        return row

    def _move(self, session: Session, row: SectionDB, new_parent_id: int | None) -> None:
        if new_parent_id is not None:
            self._require_parent(session, new_parent_id)
            if new_parent_id == row.id or row.id in self._ancestor_ids(session, new_parent_id):
                raise CycleDetected(
                    f"Moving section {row.id} under {new_parent_id} would create a cycle",
                    node_id=row.id,
                    new_parent_id=new_parent_id,
                )
        row.parent_id = new_parent_id

    @staticmethod
    def _require_parent(session: Session, parent_id: int) -> None:
        if session.get(SectionDB, parent_id) is None:
            raise ParentNotFound(f"Parent section {parent_id} not found", parent_id=parent_id)

    @staticmethod
    def _require_schema(session: Session, code: str) -> None:
        if queries.missing_schema_codes(session, [code], lock=True):
            raise UnknownSchema(f"Schema '{code}' not found", code=code)

    @staticmethod
    def _ancestor_ids(session: Session, start_id: int | None) -> list[int]:
        """IDs from ``start_id`` up to its root, ``start_id`` included."""
        chain: list[int] = []
        seen: set[int] = set()
        current = start_id
        while current is not None:
            if current in seen:
                # Only reachable if the stored forest was corrupted outside this service.
                raise CycleDetected(f"Existing cycle through section {current}", node_id=current)
            seen.add(current)
            chain.append(current)
            current = session.execute(
                select(SectionDB.parent_id).where(SectionDB.id == current)
            ).scalar_one_or_none()
        return chain


def _require_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("Section name must not be empty")
