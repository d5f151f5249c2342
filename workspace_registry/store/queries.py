"""Cross-entity lookups shared by the registry, section tree and composer."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from workspace_registry.store.models import (
    SectionDB,
    TableFieldDB,
    TableSchemaDB,
    TemplateDB,
    TemplateVersionDB,
    WorkspaceDB,
)


def known_schema_codes(session: Session) -> set[str]:
    return set(session.execute(select(TableSchemaDB.code)).scalars().all())


def missing_schema_codes(
    session: Session, codes: Iterable[str], lock: bool = False,
) -> list[str]:
    """Codes from ``codes`` with no schema row; found rows are share-locked."""
    wanted = sorted(set(codes))
    if not wanted:
        return []
    stmt = select(TableSchemaDB.code).where(TableSchemaDB.code.in_(wanted))
    if lock:
        stmt = stmt.with_for_update(read=True)
    found = set(session.execute(stmt).scalars().all())
    return [code for code in wanted if code not in found]


def missing_section_ids(
    session: Session, section_ids: Iterable[int], lock: bool = False,
) -> list[int]:
    wanted = sorted(set(section_ids))
    if not wanted:
        return []
    stmt = select(SectionDB.id).where(SectionDB.id.in_(wanted))
    if lock:
        stmt = stmt.with_for_update(read=True)
    found = set(session.execute(stmt).scalars().all())
    return [sid for sid in wanted if sid not in found]


def latest_snapshots(session: Session) -> dict[int, dict]:
    """Snapshot of the newest committed version of every template."""
    latest: dict[int, tuple[int, dict]] = {}
    rows = session.execute(
        select(
            TemplateVersionDB.template_id,
            TemplateVersionDB.sequence,
            TemplateVersionDB.snapshot,
        )
    ).all()
    for template_id, sequence, snapshot in rows:
        current = latest.get(template_id)
        if current is None or sequence > current[0]:
            latest[template_id] = (sequence, snapshot)
    return {template_id: snapshot for template_id, (_, snapshot) in latest.items()}


def templates_binding_schema(session: Session, code: str) -> list[int]:
    """Templates whose working bindings or latest version bind ``code``."""
    template_ids = set()
    for template_id, bindings in session.execute(
        select(TemplateDB.id, TemplateDB.schema_bindings)
    ).all():
        if code in (bindings or []):
            template_ids.add(template_id)
    for template_id, snapshot in latest_snapshots(session).items():
        if code in snapshot.get("schema_bindings", []):
            template_ids.add(template_id)
    return sorted(template_ids)


def templates_binding_section(session: Session, section_id: int) -> list[int]:
    template_ids = set()
    for template_id, bindings in session.execute(
        select(TemplateDB.id, TemplateDB.section_bindings)
    ).all():
        if section_id in (bindings or []):
            template_ids.add(template_id)
    for template_id, snapshot in latest_snapshots(session).items():
        if section_id in snapshot.get("section_bindings", []):
            template_ids.add(template_id)
    return sorted(template_ids)


def active_snapshots(session: Session) -> list[tuple[int, dict]]:
    """``(workspace_id, snapshot)`` for every workspace bound to a version."""
    return [
        (workspace_id, snapshot)
        for workspace_id, snapshot in session.execute(
            select(WorkspaceDB.id, TemplateVersionDB.snapshot)
            .join(TemplateVersionDB, WorkspaceDB.template_version_id == TemplateVersionDB.id)
            .order_by(WorkspaceDB.id)
        ).all()
    ]


def workspaces_binding_schema(session: Session, code: str) -> list[int]:
    """Workspaces whose active snapshot binds ``code``."""
    return [
        workspace_id
        for workspace_id, snapshot in active_snapshots(session)
        if code in snapshot.get("schema_bindings", [])
    ]


def workspaces_binding_section(session: Session, section_id: int) -> list[int]:
    return [
        workspace_id
        for workspace_id, snapshot in active_snapshots(session)
        if section_id in snapshot.get("section_bindings", [])
    ]


def schema_is_published(session: Session, code: str) -> bool:
    """True once any committed template version has bound ``code``."""
    for snapshot in session.execute(select(TemplateVersionDB.snapshot)).scalars():
        if code in snapshot.get("schema_bindings", []):
            return True
    return False


def schemas_referencing(session: Session, code: str) -> list[str]:
    """Codes of other schemas with an active reference field targeting ``code``."""
    rows = session.execute(
        select(TableSchemaDB.code)
        .join(TableFieldDB, TableFieldDB.schema_id == TableSchemaDB.id)
        .where(
            TableFieldDB.reference_target == code,
            TableFieldDB.retired_at.is_(None),
            TableSchemaDB.code != code,
        )
        .distinct()
    ).scalars().all()
    return sorted(rows)


def sections_binding_schema(session: Session, code: str) -> list[int]:
    return sorted(
        session.execute(
            select(SectionDB.id).where(SectionDB.bound_schema == code)
        ).scalars().all()
    )
