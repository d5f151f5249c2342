"""
Schema Registry — named table schemas and their ordered field descriptors.

The registry owns the ``table_schemas`` and ``table_fields`` tables and
enforces:

1. Codes are unique and immutable.
2. Field names are unique within a schema; every field passes descriptor
   validation against the set of known schema codes.
3. System schemas are read-only after creation: no field add/remove, no
   structural field change, no category change, no delete. Names,
   descriptions and field labels stay editable.
4. A schema bound by a template, a section, or another schema's reference
   field cannot be deleted. The check and the delete share one transaction
   with the schema row locked.

Field edits are expressed as an explicit change-set (added / removed /
relabeled / updated) applied by field identity, so a pure relabel keeps the
row it relabels. Once a schema has been bound by a committed template
version, structural updates and removals retire the old descriptor row
instead of rewriting it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from workspace_registry import audit_log
from workspace_registry.context import RequestContext
from workspace_registry.domain.fields import (
    validate_descriptor,
    validate_field_list,
    validate_identifier,
)
from workspace_registry.domain.schema import (
    FieldAdded,
    FieldChange,
    FieldDescriptor,
    FieldRelabeled,
    FieldRemoved,
    FieldUpdated,
    SchemaCategory,
    SchemaPatch,
    StoredField,
    TableSchema,
)
from workspace_registry.errors import (
    DuplicateCode,
    FieldError,
    FieldNotFound,
    InvalidField,
    SchemaInUse,
    SchemaNotFound,
    SystemFieldImmutable,
    SystemSchemaImmutable,
    ValidationError,
)
from workspace_registry.store import queries
from workspace_registry.store.convert import active_field_rows, to_field, to_schema
from workspace_registry.store.database import Database
from workspace_registry.store.models import TableFieldDB, TableSchemaDB

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """
    CRUD over table schemas and their fields.

    Usage:
        registry = SchemaRegistry(db)
        clients = registry.create_schema(
            code="clients",
            name="Clients",
            category=SchemaCategory.DIRECTORY,
            fields=[FieldDescriptor(name="name", kind=FieldKind.TEXT, required=True)],
            ctx=ctx,
        )
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── Reads ───────────────────────────────────────────────────

    def list_schemas(
        self,
        category: SchemaCategory | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TableSchema], int]:
        """Return a page of schemas ordered by code, and the total count."""
        with self.db.session() as session:
            stmt = select(TableSchemaDB)
            count_stmt = select(func.count()).select_from(TableSchemaDB)
            filters = []
            if category is not None:
                filters.append(TableSchemaDB.category == SchemaCategory(category).value)
            if search:
                pattern = f"%{search}%"
                filters.append(
                    or_(TableSchemaDB.name.ilike(pattern), TableSchemaDB.code.ilike(pattern))
                )
            for clause in filters:
                stmt = stmt.where(clause)
                count_stmt = count_stmt.where(clause)
            rows = session.execute(
                stmt.order_by(TableSchemaDB.code).limit(limit).offset(offset)
            ).scalars().all()
            total = session.execute(count_stmt).scalar() or 0
            return [to_schema(row) for row in rows], total

    def get_schema(self, code: str) -> TableSchema:
        with self.db.session() as session:
            return to_schema(self._load(session, code))

    def get_fields(self, code: str) -> list[StoredField]:
        """Active fields of a schema, in order."""
        return self.get_schema(code).fields

    list_fields = get_fields

    def field_history(self, code: str) -> list[StoredField]:
        """Every descriptor the schema ever had, retired ones included."""
        with self.db.session() as session:
            row = self._load(session, code)
            return [to_field(f) for f in sorted(row.fields, key=lambda f: f.id)]

    def exists(self, code: str) -> bool:
        with self.db.session() as session:
            return session.execute(
                select(TableSchemaDB.id).where(TableSchemaDB.code == code)
            ).scalar_one_or_none() is not None

    # ── Schema mutations ────────────────────────────────────────

    def create_schema(
        self,
        code: str,
        name: str,
        category: SchemaCategory,
        system: bool = False,
        fields: Sequence[FieldDescriptor] = (),
        description: str | None = None,
        ctx: RequestContext | None = None,
    ) -> TableSchema:
        """
        Create a schema with its initial fields.

        The code is reserved before the fields are validated, so a field may
        reference the schema being created.

        Raises:
            InvalidIdentifier: ``code`` is not a valid identifier.
            DuplicateCode: A schema with ``code`` already exists.
            InvalidField: A field fails descriptor validation.
        """
        ctx = ctx or RequestContext.system()
        validate_identifier(code, "schema code")
        _require_name(name)
        category = SchemaCategory(category)

        with self.db.transaction() as session:
            if session.execute(
                select(TableSchemaDB.id).where(TableSchemaDB.code == code)
            ).scalar_one_or_none() is not None:
                raise DuplicateCode(f"Schema code '{code}' already exists", code=code)

            row = TableSchemaDB(
                code=code,
                name=name,
                description=description,
                category=category.value,
                is_system=system,
            )
            session.add(row)
            session.flush()

            known = queries.known_schema_codes(session)
            for position, descriptor in enumerate(validate_field_list(fields, known)):
                row.fields.append(_new_field_row(descriptor, position))
            session.flush()

            audit_log.record(
                session, ctx, "create", "table_schema", code,
                {"category": category.value, "system": system, "fields": len(fields)},
            )
            result = to_schema(row)

        logger.info(
            "Schema created: code=%s category=%s system=%s fields=%d",
            code, category.value, system, len(result.fields),
        )
        return result

    def update_schema(
        self,
        code: str,
        patch: SchemaPatch,
        ctx: RequestContext | None = None,
    ) -> TableSchema:
        """
        Apply a partial update.

        A ``fields`` list in the patch is the full desired field list. It is
        diffed against the current fields by name into a change-set and the
        fields are then reordered to match.

        Raises:
            SystemSchemaImmutable: The schema is a system schema and the patch
                changes the category or any field structurally.
        """
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, code, lock=True)
            changed: dict[str, object] = {}

            if patch.category is not None and patch.category.value != row.category:
                if row.is_system:
                    raise SystemSchemaImmutable(
                        f"Cannot change the category of system schema '{code}'", code=code,
                    )
                row.category = patch.category.value
                changed["category"] = patch.category.value
            if patch.name is not None:
                _require_name(patch.name)
                row.name = patch.name
                changed["name"] = patch.name
            if patch.description is not None:
                row.description = patch.description
                changed["description"] = patch.description

            if patch.fields is not None:
                current = [to_field(f) for f in active_field_rows(row)]
                changes = plan_field_changes(current, patch.fields)
                self._apply_changes(session, row, changes)
                _reorder(row, [f.name for f in patch.fields])
                changed["field_changes"] = [c.model_dump(mode="json") for c in changes]

            session.flush()
            audit_log.record(session, ctx, "update", "table_schema", code, changed)
            result = to_schema(row)

        logger.info("Schema updated: code=%s keys=%s", code, sorted(changed))
        return result

    def apply_field_changes(
        self,
        code: str,
        changes: Sequence[FieldChange],
        ctx: RequestContext | None = None,
    ) -> TableSchema:
        """Apply a field change-set atomically; any failure leaves the schema untouched."""
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, code, lock=True)
            self._apply_changes(session, row, list(changes))
            session.flush()
            audit_log.record(
                session, ctx, "update", "table_schema", code,
                {"field_changes": [c.model_dump(mode="json") for c in changes]},
            )
            result = to_schema(row)

        logger.info("Field changes applied: code=%s changes=%d", code, len(changes))
        return result

    def delete_schema(self, code: str, ctx: RequestContext | None = None) -> None:
        """
        Delete a schema and its fields.

        Raises:
            SystemSchemaImmutable: The schema is a system schema.
            SchemaInUse: A template, section, other schema or active workspace
                snapshot still binds it.
        """
        ctx = ctx or RequestContext.system()
        with self.db.transaction() as session:
            row = self._load(session, code, lock=True)
            if row.is_system:
                raise SystemSchemaImmutable(f"System schema '{code}' cannot be deleted", code=code)

            usage = {
                "templates": queries.templates_binding_schema(session, code),
                "workspaces": queries.workspaces_binding_schema(session, code),
                "sections": queries.sections_binding_schema(session, code),
                "referenced_by": queries.schemas_referencing(session, code),
            }
            if any(usage.values()):
                raise SchemaInUse(f"Schema '{code}' is still in use", code=code, **usage)

            session.delete(row)
            audit_log.record(session, ctx, "delete", "table_schema", code)

        logger.info("Schema deleted: code=%s", code)

    # ── Field mutations (one-element change-sets) ───────────────

    def create_field(
        self,
        code: str,
        field: FieldDescriptor,
        position: int | None = None,
        ctx: RequestContext | None = None,
    ) -> TableSchema:
        return self.apply_field_changes(code, [FieldAdded(field=field, position=position)], ctx)

    def update_field(
        self,
        code: str,
        name: str,
        field: FieldDescriptor,
        ctx: RequestContext | None = None,
    ) -> TableSchema:
        """Relabel or structurally update field ``name``; renaming is not supported."""
        if field.name != name:
            raise ValidationError(
                f"Field names are immutable; remove '{name}' and add '{field.name}' instead",
                field=name,
            )
        current = {f.name: f for f in self.get_fields(code)}
        if name not in current:
            raise FieldNotFound(f"Field '{name}' not found in schema '{code}'", code=code, field=name)
        if current[name].structural_key() == field.structural_key():
            change: FieldChange = FieldRelabeled(name=name, label=field.label)
        else:
            change = FieldUpdated(field=field)
        return self.apply_field_changes(code, [change], ctx)

    def delete_field(self, code: str, name: str, ctx: RequestContext | None = None) -> TableSchema:
        return self.apply_field_changes(code, [FieldRemoved(name=name)], ctx)

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _load(session: Session, code: str, lock: bool = False) -> TableSchemaDB:
        stmt = select(TableSchemaDB).where(TableSchemaDB.code == code)
        if lock:
            stmt = stmt.with_for_update()
        row = session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise SchemaNotFound(f"Schema '{code}' not found", code=code)
        return row

    def _apply_changes(
        self,
        session: Session,
        row: TableSchemaDB,
        changes: list[FieldChange],
    ) -> None:
        if row.is_system:
            structural = [c for c in changes if not isinstance(c, FieldRelabeled)]
            if structural:
                raise SystemSchemaImmutable(
                    f"System schema '{row.code}' only allows relabeling fields",
                    code=row.code,
                    rejected=[c.op for c in structural],
                )

        known = queries.known_schema_codes(session)
        published = queries.schema_is_published(session, row.code)
        now = datetime.now(timezone.utc)

        for change in changes:
            active = {f.name: f for f in active_field_rows(row)}

            if isinstance(change, FieldAdded):
                _validate(change.field, known, active)
                ordered = active_field_rows(row)
                position = len(ordered) if change.position is None else change.position
                position = max(0, min(position, len(ordered)))
                for existing in ordered[position:]:
                    existing.position += 1
                row.fields.append(_new_field_row(change.field, position))

            elif isinstance(change, FieldRemoved):
                target = _require_field(row, active, change.name)
                if target.is_system:
                    raise SystemFieldImmutable(
                        f"System field '{change.name}' cannot be removed",
                        code=row.code, field=change.name,
                    )
                if published:
                    target.retired_at = now
                else:
                    row.fields.remove(target)

            elif isinstance(change, FieldRelabeled):
                target = _require_field(row, active, change.name)
                target.label = change.label

            elif isinstance(change, FieldUpdated):
                target = _require_field(row, active, change.field.name)
                if target.is_system:
                    raise SystemFieldImmutable(
                        f"System field '{target.name}' cannot be changed structurally",
                        code=row.code, field=target.name,
                    )
                others = {name: f for name, f in active.items() if name != target.name}
                descriptor = change.field.model_copy(update={"system": target.is_system})
                _validate(descriptor, known, others)
                if published:
                    target.retired_at = now
                    row.fields.append(_new_field_row(descriptor, target.position))
                else:
                    _copy_descriptor(descriptor, target)

            _renumber(row)
            session.flush()


# ════════════════════════════════════════════════════════════════
# Change-set planning
# ════════════════════════════════════════════════════════════════


def plan_field_changes(
    current: Iterable[FieldDescriptor],
    desired: Iterable[FieldDescriptor],
) -> list[FieldChange]:
    """
    Turn a desired field list into an explicit change-set keyed by name.

    Removals come first so that a removed name can be re-added in the same
    change-set; additions keep their desired position.
    """
    current_by_name = {f.name: f for f in current}
    desired_list = list(desired)
    desired_names = [f.name for f in desired_list]
    if len(set(desired_names)) != len(desired_names):
        duplicates = sorted({n for n in desired_names if desired_names.count(n) > 1})
        raise ValidationError("Duplicate field names in field list", fields=duplicates)

    changes: list[FieldChange] = [
        FieldRemoved(name=name) for name in current_by_name if name not in desired_names
    ]
    for position, descriptor in enumerate(desired_list):
        existing = current_by_name.get(descriptor.name)
        if existing is None:
            changes.append(FieldAdded(field=descriptor, position=position))
        elif existing.structural_key() != descriptor.structural_key():
            changes.append(FieldUpdated(field=descriptor))
        elif existing.label != descriptor.label:
            changes.append(FieldRelabeled(name=descriptor.name, label=descriptor.label))
    return changes


def _validate(
    descriptor: FieldDescriptor,
    known: set[str],
    active: dict[str, TableFieldDB],
) -> None:
    try:
        validate_descriptor(descriptor, known, active.keys())
    except FieldError as exc:
        raise InvalidField(descriptor.name, exc) from exc


def _require_field(
    row: TableSchemaDB, active: dict[str, TableFieldDB], name: str,
) -> TableFieldDB:
    target = active.get(name)
    if target is None:
        raise FieldNotFound(
            f"Field '{name}' not found in schema '{row.code}'", code=row.code, field=name,
        )
    return target


def _require_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("Name must not be empty")


def _new_field_row(descriptor: FieldDescriptor, position: int) -> TableFieldDB:
    row = TableFieldDB(position=position, is_system=descriptor.system)
    _copy_descriptor(descriptor, row)
    return row


def _copy_descriptor(descriptor: FieldDescriptor, row: TableFieldDB) -> None:
    row.name = descriptor.name
    row.label = descriptor.label or descriptor.name
    row.kind = descriptor.kind.value
    row.is_required = descriptor.required
    row.reference_target = descriptor.reference_target
    row.choices = list(descriptor.choices) if descriptor.choices is not None else None


def _renumber(row: TableSchemaDB) -> None:
    for position, field_row in enumerate(active_field_rows(row)):
        field_row.position = position


def _reorder(row: TableSchemaDB, names: list[str]) -> None:
    order = {name: index for index, name in enumerate(names)}
    active = active_field_rows(row)
    active.sort(key=lambda f: order.get(f.name, len(order)))
    for position, field_row in enumerate(active):
        field_row.position = position
