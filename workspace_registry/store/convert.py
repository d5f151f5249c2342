"""Row → model conversion. Call inside an open session."""

from __future__ import annotations

from workspace_registry.domain.schema import (
    AccessType,
    FieldKind,
    Patch,
    SchemaCategory,
    SectionNode,
    SectionScope,
    StoredField,
    TableSchema,
    Template,
    TemplateKind,
    TemplateState,
    TemplateVersion,
    Workspace,
    WorkspaceStatus,
)
from workspace_registry.store.models import (
    SectionDB,
    TableFieldDB,
    TableSchemaDB,
    TemplateDB,
    TemplateVersionDB,
    WorkspaceDB,
)


def to_field(row: TableFieldDB) -> StoredField:
    return StoredField(
        id=row.id,
        position=row.position,
        name=row.name,
        label=row.label or "",
        kind=FieldKind(row.kind),
        required=row.is_required,
        system=row.is_system,
        reference_target=row.reference_target,
        choices=list(row.choices) if row.choices is not None else None,
        created_at=row.created_at,
        retired_at=row.retired_at,
    )


def active_field_rows(row: TableSchemaDB) -> list[TableFieldDB]:
    return sorted(
        (f for f in row.fields if f.retired_at is None),
        key=lambda f: (f.position, f.id or 0),
    )


def to_schema(row: TableSchemaDB) -> TableSchema:
    return TableSchema(
        id=row.id,
        code=row.code,
        name=row.name,
        description=row.description,
        category=SchemaCategory(row.category),
        system=row.is_system,
        fields=[to_field(f) for f in active_field_rows(row)],
        created_at=row.created_at,
    )


def to_section(row: SectionDB) -> SectionNode:
    return SectionNode(
        id=row.id,
        name=row.name,
        description=row.description,
        parent_id=row.parent_id,
        bound_schema=row.bound_schema,
        access_type=AccessType(row.access_type),
        scope=SectionScope(row.scope),
        system=row.is_system,
        enabled=row.is_enabled,
        created_at=row.created_at,
    )


def to_template(row: TemplateDB) -> Template:
    return Template(
        id=row.id,
        name=row.name,
        description=row.description,
        kind=TemplateKind(row.kind),
        current_version=row.current_version,
        active=row.is_active,
        is_default=row.is_default,
        schema_bindings=list(row.schema_bindings or []),
        section_bindings=list(row.section_bindings or []),
        disabled_schemas=list(row.disabled_schemas or []),
        disabled_sections=list(row.disabled_sections or []),
        config=dict(row.config or {}),
        revision=row.revision,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_version(row: TemplateVersionDB) -> TemplateVersion:
    return TemplateVersion(
        id=row.id,
        template_id=row.template_id,
        sequence=row.sequence,
        version=row.version,
        snapshot=TemplateState.model_validate(row.snapshot),
        snapshot_hash=row.snapshot_hash,
        diff_from_previous=Patch.model_validate(row.diff_from_previous),
        applied=row.applied,
        rollbackable=row.rollbackable,
        rollback_of=row.rollback_of,
        created_at=row.created_at,
        created_by=row.created_by,
    )


def to_workspace(row: WorkspaceDB) -> Workspace:
    return Workspace(
        id=row.id,
        name=row.name,
        status=WorkspaceStatus(row.status),
        template_version_id=row.template_version_id,
        used_schemas=list(row.used_schemas or []),
        created_at=row.created_at,
    )
