"""
Template Composer — templates as named bundles of schema and section bindings.

A template row holds a *working* state (bindings plus opaque config) that
admins edit freely. Nothing is versioned until the working state, or an
explicit proposed state, is committed through the version ledger.

Rules:
    - Every bound schema code and section id must exist when bound.
    - Only bound schemas and sections can be disabled for a template.
    - At most one template per kind is the default.
    - ``kind`` is fixed at creation.
    - A template with any version bound to a workspace cannot be deleted.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from workspace_registry import audit_log
from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import (
    Template,
    TemplateKind,
    TemplatePatch,
    TemplateState,
)
from workspace_registry.errors import (
    DuplicateDefault,
    TemplateInUse,
    TemplateNotFound,
    UnknownSchema,
    UnknownSection,
    ValidationError,
)
from workspace_registry.ledger.locks import release_template_lock, template_lock
from workspace_registry.store import queries
from workspace_registry.store.convert import to_template
from workspace_registry.store.database import Database
from workspace_registry.store.models import TemplateDB, TemplateVersionDB, WorkspaceDB

logger = logging.getLogger(__name__)


def ensure_bindings_exist(session: Session, state: TemplateState) -> None:
    """
    Check every binding of ``state`` against the registry and section tree.

    Found rows are share-locked for the rest of the transaction, so a
    concurrent delete cannot slip in between the check and the write.

    Raises:
        ValidationError: A disabled schema or section is not bound.
        UnknownSchema: A bound schema code does not exist.
        UnknownSection: A bound section id does not exist.
    """
    stray = state.stray_toggles()
    if stray:
        raise ValidationError("Only bound schemas and sections can be disabled", **stray)
    missing_schemas = queries.missing_schema_codes(session, state.schema_bindings, lock=True)
    if missing_schemas:
        raise UnknownSchema(
            f"Unknown schema(s): {', '.join(missing_schemas)}", codes=missing_schemas,
        )
    missing_sections = queries.missing_section_ids(session, state.section_bindings, lock=True)
    if missing_sections:
        raise UnknownSection(
            f"Unknown section(s): {missing_sections}", section_ids=missing_sections,
        )


def load_template(session: Session, template_id: int, lock: bool = False) -> TemplateDB:
    stmt = select(TemplateDB).where(TemplateDB.id == template_id)
    if lock:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise TemplateNotFound(f"Template {template_id} not found", template_id=template_id)
    return row


class TemplateComposer:
    """
    CRUD over templates and their working state.

    Usage:
        composer = TemplateComposer(db)
        tpl = composer.create_template(
            name="Retail client",
            kind=TemplateKind.CLIENT,
            schema_bindings=["clients", "orders"],
            ctx=ctx,
        )
        ledger.commit(tpl.id, composer.working_state(tpl.id), ctx)
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── Reads ───────────────────────────────────────────────────

    def get_template(self, template_id: int) -> Template:
        with self.db.session() as session:
            return to_template(load_template(session, template_id))

    def list_templates(
        self,
        kind: TemplateKind | None = None,
        active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Template], int]:
        with self.db.session() as session:
            stmt = select(TemplateDB)
            count_stmt = select(func.count()).select_from(TemplateDB)
            filters = []
            if kind is not None:
                filters.append(TemplateDB.kind == TemplateKind(kind).value)
            if active is not None:
                filters.append(TemplateDB.is_active == active)
            for clause in filters:
                stmt = stmt.where(clause)
                count_stmt = count_stmt.where(clause)
            rows = session.execute(
                stmt.order_by(TemplateDB.id).limit(limit).offset(offset)
            ).scalars().all()
            total = session.execute(count_stmt).scalar() or 0
            return [to_template(row) for row in rows], total

    def working_state(self, template_id: int) -> TemplateState:
        return self.get_template(template_id).working_state()

    # ── Mutations ───────────────────────────────────────────────

    def create_template(
        self,
        name: str,
        kind: TemplateKind,
        schema_bindings: list[str] | None = None,
        section_bindings: list[int] | None = None,
        config: dict[str, Any] | None = None,
        is_default: bool = False,
        description: str | None = None,
        replace_default: bool = False,
        disabled_schemas: list[str] | None = None,
        disabled_sections: list[int] | None = None,
        ctx: RequestContext | None = None,
    ) -> Template:
        """
        Create a template at version ``1.0.0`` with no committed history.

        Raises:
            ValidationError: A disabled schema or section is not bound.
            UnknownSchema / UnknownSection: A binding does not exist.
            DuplicateDefault: ``is_default`` is set, another template of the
                same kind is already the default and ``replace_default`` is
                not set.
        """
        ctx = ctx or RequestContext.system()
        _require_name(name)
        kind = TemplateKind(kind)
        state = TemplateState(
            schema_bindings=schema_bindings or [],
            section_bindings=section_bindings or [],
            disabled_schemas=disabled_schemas or [],
            disabled_sections=disabled_sections or [],
            config=config or {},
        )

        with self.db.transaction() as session:
            ensure_bindings_exist(session, state)
            if is_default:
                self._claim_default(session, kind, None, replace_default, ctx)

            row = TemplateDB(
                name=name,
                description=description,
                kind=kind.value,
                is_default=is_default,
                schema_bindings=state.schema_bindings,
                section_bindings=state.section_bindings,
                disabled_schemas=state.disabled_schemas,
                disabled_sections=state.disabled_sections,
                config=state.config,
                revision=0,
            )
            session.add(row)
            _flush_default(session, kind)
            audit_log.record(
                session, ctx, "create", "template", row.id,
                {"name": name, "kind": kind.value, **state.model_dump(mode="json")},
            )
            result = to_template(row)

        logger.info(
            "Template created: id=%d name='%s' kind=%s schemas=%d sections=%d",
            result.id, name, kind.value, len(state.schema_bindings), len(state.section_bindings),
        )
        return result

    def update_template(
        self,
        template_id: int,
        patch: TemplatePatch,
        replace_default: bool = False,
        ctx: RequestContext | None = None,
    ) -> Template:
        """
        Edit the working draft; bindings are validated like on create.

        Toggles of bindings the patch drops are dropped with them unless the
        patch sets the disabled lists explicitly.
        """
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = load_template(session, template_id, lock=True)
            changed = patch.model_dump(exclude_unset=True, mode="json")

            if patch.name is not None:
                _require_name(patch.name)
                row.name = patch.name
            if patch.description is not None:
                row.description = patch.description
            if patch.active is not None:
                row.is_active = patch.active

            if any(
                value is not None
                for value in (
                    patch.schema_bindings,
                    patch.section_bindings,
                    patch.disabled_schemas,
                    patch.disabled_sections,
                    patch.config,
                )
            ):
                schemas = _pick(patch.schema_bindings, row.schema_bindings)
                sections = _pick(patch.section_bindings, row.section_bindings)
                state = TemplateState(
                    schema_bindings=schemas,
                    section_bindings=sections,
                    disabled_schemas=(
                        patch.disabled_schemas
                        if patch.disabled_schemas is not None
                        else [c for c in row.disabled_schemas or [] if c in schemas]
                    ),
                    disabled_sections=(
                        patch.disabled_sections
                        if patch.disabled_sections is not None
                        else [s for s in row.disabled_sections or [] if s in sections]
                    ),
                    config=patch.config if patch.config is not None else row.config or {},
                )
                ensure_bindings_exist(session, state)
                row.schema_bindings = state.schema_bindings
                row.section_bindings = state.section_bindings
                row.disabled_schemas = state.disabled_schemas
                row.disabled_sections = state.disabled_sections
                row.config = state.config

            if patch.is_default is not None and patch.is_default != row.is_default:
                if patch.is_default:
                    self._claim_default(
                        session, TemplateKind(row.kind), row.id, replace_default, ctx,
                    )
                row.is_default = patch.is_default

            row.revision = row.revision + 1
            _flush_default(session, TemplateKind(row.kind))
            audit_log.record(session, ctx, "update", "template", template_id, changed)
            result = to_template(row)

        logger.info("Template updated: id=%d keys=%s", template_id, sorted(changed))
        return result

    def toggle_schema(
        self, template_id: int, code: str, ctx: RequestContext | None = None,
    ) -> Template:
        """Switch a bound schema off for this template, or back on."""
        return self._toggle(template_id, "schema", code, ctx)

    def toggle_section(
        self, template_id: int, section_id: int, ctx: RequestContext | None = None,
    ) -> Template:
        """Switch a bound section off for this template, or back on."""
        return self._toggle(template_id, "section", section_id, ctx)

    def delete_template(self, template_id: int, ctx: RequestContext | None = None) -> None:
        """
        Delete a template and its version history.

        Raises:
            TemplateInUse: A workspace is bound to one of its versions.
        """
        ctx = ctx or RequestContext.system()
        with template_lock(template_id):
            with self.db.transaction() as session:
                row = load_template(session, template_id, lock=True)
                bound = session.execute(
                    select(WorkspaceDB.id)
                    .join(TemplateVersionDB, WorkspaceDB.template_version_id == TemplateVersionDB.id)
                    .where(TemplateVersionDB.template_id == template_id)
                    .with_for_update()
                ).scalars().all()
                if bound:
                    raise TemplateInUse(
                        f"Template {template_id} is bound to workspace(s) {sorted(bound)}",
                        template_id=template_id,
                        workspaces=sorted(bound),
                    )
                session.delete(row)
                audit_log.record(
                    session, ctx, "delete", "template", template_id, {"name": row.name},
                )
        release_template_lock(template_id)

        logger.info("Template deleted: id=%d", template_id)

    # ── Internal ────────────────────────────────────────────────

    def _toggle(
        self,
        template_id: int,
        what: str,
        value: str | int,
        ctx: RequestContext | None,
    ) -> Template:
        ctx = ctx or RequestContext.system()
        bindings_attr, disabled_attr = f"{what}_bindings", f"disabled_{what}s"
        with self.db.transaction() as session:
            row = load_template(session, template_id, lock=True)
            if value not in (getattr(row, bindings_attr) or []):
                raise ValidationError(
                    f"{what.capitalize()} {value!r} is not bound to template {template_id}",
                    template_id=template_id,
                    **{what: value},
                )
            disabled = set(getattr(row, disabled_attr) or [])
            enabled = value in disabled
            if enabled:
                disabled.discard(value)
            else:
                disabled.add(value)
            setattr(row, disabled_attr, sorted(disabled))
            row.revision = row.revision + 1
            session.flush()
            audit_log.record(
                session, ctx, "toggle", "template", template_id,
                {what: value, "enabled": enabled},
            )
            result = to_template(row)

        logger.info(
            "Template binding toggled: id=%d %s=%s enabled=%s", template_id, what, value, enabled,
        )
        return result

    @staticmethod
    def _claim_default(
        session: Session,
        kind: TemplateKind,
        template_id: int | None,
        replace_default: bool,
        ctx: RequestContext,
    ) -> None:
        stmt = (
            select(TemplateDB)
            .where(TemplateDB.kind == kind.value, TemplateDB.is_default.is_(True))
            .with_for_update()
        )
        if template_id is not None:
            stmt = stmt.where(TemplateDB.id != template_id)
        current = session.execute(stmt).scalars().all()
        if not current:
            return
        if not replace_default:
            raise DuplicateDefault(
                f"Template {current[0].id} is already the default {kind.value} template",
                kind=kind.value,
                current_default=current[0].id,
            )
        for other in current:
            other.is_default = False
            other.revision = other.revision + 1
            audit_log.record(
                session, ctx, "update", "template", other.id, {"is_default": False},
            )
            logger.info("Default %s template cleared: id=%d", kind.value, other.id)
        # cleared rows must hit the unique default index before the new default does
        session.flush()


def _flush_default(session: Session, kind: TemplateKind) -> None:
    """Flush pending template writes; a second default of ``kind`` is a DuplicateDefault."""
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateDefault(
            f"Another {kind.value} template became the default concurrently",
            kind=kind.value,
        ) from exc


def _pick(value: list | None, current: list | None) -> list:
    return value if value is not None else current or []


def _require_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("Template name must not be empty")
