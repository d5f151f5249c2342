"""
Registry Schema — Pydantic models for table schemas, sections, templates and
template versions.

These models are the canonical in-memory shapes of every registry entity.
The SQLAlchemy rows in ``workspace_registry.store.models`` are converted to
and from them at the service boundary, and the HTTP layer serializes them
directly.

Conventions:
    - Enumerations are ``str`` enums so they round-trip through JSON columns.
    - Binding sets are kept sorted and de-duplicated so that snapshots, diffs
      and snapshot hashes are deterministic.
"""

from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, computed_field, field_validator


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class FieldKind(str, enum.Enum):
    """Value type of a table field."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    REFERENCE = "reference"
    SELECT = "select"


class SchemaCategory(str, enum.Enum):
    """Kind of record a table schema describes."""

    DIRECTORY = "directory"
    DOCUMENT = "document"
    REGISTER = "register"
    JOURNAL = "journal"
    REPORT = "report"
    PROCEDURE = "procedure"


class AccessType(str, enum.Enum):
    OPEN = "open"
    RESTRICTED = "restricted"


class SectionScope(str, enum.Enum):
    """Whether a section applies platform-wide or to a single workspace."""

    GLOBAL = "global"
    LOCAL = "local"


class TemplateKind(str, enum.Enum):
    CLIENT = "client"
    SUPPLIER = "supplier"


class WorkspaceStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


# ════════════════════════════════════════════════════════════════
# Table schemas
# ════════════════════════════════════════════════════════════════


class FieldDescriptor(BaseModel):
    """
    A typed field of a table schema.

    ``reference_target`` is only meaningful for ``reference`` fields and
    ``choices`` only for ``select`` fields; consistency is checked by
    ``workspace_registry.domain.fields.validate_descriptor``.
    """

    name: str
    label: str = ""
    kind: FieldKind
    required: bool = False
    system: bool = False
    reference_target: str | None = None
    choices: list[str] | None = None

    @property
    def display_label(self) -> str:
        return self.label or self.name

    def structural_key(self) -> tuple[Any, ...]:
        """What a relabel must leave untouched (``system`` is fixed at creation)."""
        return (
            self.kind,
            self.required,
            self.reference_target,
            tuple(self.choices) if self.choices is not None else None,
        )


class StoredField(FieldDescriptor):
    """A field descriptor as persisted, with its row identity."""

    id: int
    position: int
    created_at: datetime | None = None
    retired_at: datetime | None = None


class TableSchema(BaseModel):
    """A named record type: an ordered list of typed fields."""

    id: int | None = None
    code: str
    name: str
    description: str | None = None
    category: SchemaCategory
    system: bool = False
    fields: list[StoredField] = Field(default_factory=list)
    created_at: datetime | None = None

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


class SchemaPatch(BaseModel):
    """Partial update of a table schema.

    ``fields`` is the full desired field list; it is turned into an explicit
    per-field change-set rather than replacing every row.
    """

    name: str | None = None
    description: str | None = None
    category: SchemaCategory | None = None
    fields: list[FieldDescriptor] | None = None


# ── Field change-set ────────────────────────────────────────────


class FieldAdded(BaseModel):
    op: Literal["added"] = "added"
    field: FieldDescriptor
    position: int | None = None


class FieldRemoved(BaseModel):
    op: Literal["removed"] = "removed"
    name: str


class FieldRelabeled(BaseModel):
    op: Literal["relabeled"] = "relabeled"
    name: str
    label: str


class FieldUpdated(BaseModel):
    """Structural change to an existing field (kind, required, choices, target)."""

    op: Literal["updated"] = "updated"
    field: FieldDescriptor


FieldChange = Annotated[
    Union[FieldAdded, FieldRemoved, FieldRelabeled, FieldUpdated],
    Field(discriminator="op"),
]


# ════════════════════════════════════════════════════════════════
# Section tree
# ════════════════════════════════════════════════════════════════


class SectionNode(BaseModel):
    """A node of the platform feature tree."""

    id: int
    name: str
    description: str | None = None
    parent_id: int | None = None
    bound_schema: str | None = None
    access_type: AccessType = AccessType.OPEN
    scope: SectionScope = SectionScope.LOCAL
    system: bool = False
    enabled: bool = True
    created_at: datetime | None = None


class SectionPatch(BaseModel):
    """Partial update of a section; a ``parent_id`` change is a re-parent."""

    name: str | None = None
    description: str | None = None
    parent_id: int | None = None
    bound_schema: str | None = None
    access_type: AccessType | None = None
    scope: SectionScope | None = None


# ════════════════════════════════════════════════════════════════
# Templates
# ════════════════════════════════════════════════════════════════


class TemplateState(BaseModel):
    """
    The versioned part of a template: its bindings, per-binding enable
    toggles and opaque config.

    This is the shape stored as a version snapshot. Bindings are normalized
    to sorted, unique lists so equal states compare and hash equal. A
    binding listed in ``disabled_schemas`` / ``disabled_sections`` stays
    attached to the template but is switched off for it; those lists must
    be subsets of the bindings (see ``stray_toggles``).
    """

    schema_bindings: list[str] = Field(default_factory=list)
    section_bindings: list[int] = Field(default_factory=list)
    disabled_schemas: list[str] = Field(default_factory=list)
    disabled_sections: list[int] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "schema_bindings", "section_bindings", "disabled_schemas", "disabled_sections",
        mode="after",
    )
    @classmethod
    def _normalize(cls, value: list) -> list:
        return sorted(set(value))

    @property
    def enabled_schemas(self) -> list[str]:
        disabled = set(self.disabled_schemas)
        return [code for code in self.schema_bindings if code not in disabled]

    @property
    def enabled_sections(self) -> list[int]:
        disabled = set(self.disabled_sections)
        return [sid for sid in self.section_bindings if sid not in disabled]

    def stray_toggles(self) -> dict[str, list]:
        """Disabled entries that are not bindings; empty when the state is consistent."""
        stray = {
            "schemas": sorted(set(self.disabled_schemas) - set(self.schema_bindings)),
            "sections": sorted(set(self.disabled_sections) - set(self.section_bindings)),
        }
        return {key: value for key, value in stray.items() if value}

    def canonical_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    def compute_hash(self) -> str:
        """SHA-256 of the canonical JSON form of this state."""
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


class Template(BaseModel):
    """A named, typed bundle of schema and section bindings."""

    id: int
    name: str
    description: str | None = None
    kind: TemplateKind
    current_version: str = "1.0.0"
    active: bool = True
    is_default: bool = False
    schema_bindings: list[str] = Field(default_factory=list)
    section_bindings: list[int] = Field(default_factory=list)
    disabled_schemas: list[str] = Field(default_factory=list)
    disabled_sections: list[int] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    revision: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def working_state(self) -> TemplateState:
        return TemplateState(
            schema_bindings=self.schema_bindings,
            section_bindings=self.section_bindings,
            disabled_schemas=self.disabled_schemas,
            disabled_sections=self.disabled_sections,
            config=self.config,
        )


class TemplatePatch(BaseModel):
    name: str | None = None
    description: str | None = None
    active: bool | None = None
    is_default: bool | None = None
    schema_bindings: list[str] | None = None
    section_bindings: list[int] | None = None
    disabled_schemas: list[str] | None = None
    disabled_sections: list[int] | None = None
    config: dict[str, Any] | None = None


# ════════════════════════════════════════════════════════════════
# Versions
# ════════════════════════════════════════════════════════════════


class Patch(BaseModel):
    """
    Structural delta between two template states.

    ``config_delta`` maps JSON-pointer key paths to ``{"old": ..., "new": ...}``;
    a missing ``old`` means the key was added, a missing ``new`` means it was
    removed. ``disabled_*`` / ``enabled_*`` list bindings whose toggle was
    switched off / back on.
    """

    added_schemas: list[str] = Field(default_factory=list)
    removed_schemas: list[str] = Field(default_factory=list)
    added_sections: list[int] = Field(default_factory=list)
    removed_sections: list[int] = Field(default_factory=list)
    disabled_schemas: list[str] = Field(default_factory=list)
    enabled_schemas: list[str] = Field(default_factory=list)
    disabled_sections: list[int] = Field(default_factory=list)
    enabled_sections: list[int] = Field(default_factory=list)
    config_delta: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @computed_field
    @property
    def is_empty(self) -> bool:
        return not (
            self.added_schemas
            or self.removed_schemas
            or self.added_sections
            or self.removed_sections
            or self.toggles_changed
            or self.config_delta
        )

    @property
    def toggles_changed(self) -> bool:
        return bool(
            self.disabled_schemas
            or self.enabled_schemas
            or self.disabled_sections
            or self.enabled_sections
        )

    @computed_field
    @property
    def is_breaking(self) -> bool:
        """A removal of any binding is breaking."""
        return bool(self.removed_schemas or self.removed_sections)

    @property
    def is_additive(self) -> bool:
        return bool(self.added_schemas or self.added_sections)


class TemplateVersion(BaseModel):
    """
    An immutable point in a template's history.

    ``snapshot``, ``snapshot_hash`` and ``diff_from_previous`` never change
    after the version is appended; only ``applied`` and ``rollbackable`` flip.
    """

    id: int
    template_id: int
    sequence: int
    version: str
    snapshot: TemplateState
    snapshot_hash: str
    diff_from_previous: Patch
    applied: bool = False
    rollbackable: bool = True
    rollback_of: int | None = None
    created_at: datetime | None = None
    created_by: int | None = None


# ════════════════════════════════════════════════════════════════
# Workspaces and audit
# ════════════════════════════════════════════════════════════════


class Workspace(BaseModel):
    id: int
    name: str
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    template_version_id: int | None = None
    used_schemas: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


class AuditEntry(BaseModel):
    id: int
    action: str
    resource_type: str
    resource_id: str | None = None
    admin_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
