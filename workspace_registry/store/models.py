"""
Registry store — SQLAlchemy models for schemas, sections, templates,
template versions, workspaces and the audit log.

Column types are kept portable (``JSON``, integer surrogate keys) so the same
models run against PostgreSQL in production and SQLite in tests.

``template_versions`` is APPEND-ONLY for its content columns: ``snapshot``,
``snapshot_hash`` and ``diff_from_previous`` are written once at insert.
Only the ``applied`` and ``rollbackable`` flags are ever updated.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all registry models."""
    pass


class TableSchemaDB(Base):
    """A global table schema (directory, document, register, ...)."""

    __tablename__ = "table_schemas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(
        String(63), nullable=False, unique=True,
        comment="Immutable identifier referenced by fields, sections and templates",
    )
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(20), nullable=False, index=True)
    is_system = Column(
        Boolean, nullable=False, default=False,
        comment="System schemas are read-only after creation",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    fields = relationship(
        "TableFieldDB",
        back_populates="schema",
        order_by="TableFieldDB.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<TableSchema code={self.code} category={self.category}>"


class TableFieldDB(Base):
    """
    A field descriptor row.

    Rows are never rewritten structurally once their schema is bound by a
    committed template version: the old row gets ``retired_at`` and a new
    row takes its place.
    """

    __tablename__ = "table_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    schema_id = Column(
        Integer, ForeignKey("table_schemas.id", ondelete="CASCADE"), nullable=False,
    )
    name = Column(String(63), nullable=False)
    label = Column(String(200), nullable=False, default="")
    kind = Column(String(20), nullable=False)
    is_required = Column(Boolean, nullable=False, default=False)
    is_system = Column(Boolean, nullable=False, default=False)
    reference_target = Column(String(63), nullable=True, index=True)
    choices = Column(JSON, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    retired_at = Column(
        DateTime(timezone=True), nullable=True,
        comment="Set when a structural update replaced this descriptor",
    )

    schema = relationship("TableSchemaDB", back_populates="fields")

    __table_args__ = (
        Index("ix_table_fields_schema_name", "schema_id", "name"),
    )


class SectionDB(Base):
    """A node of the platform feature tree."""

    __tablename__ = "sections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    parent_id = Column(Integer, ForeignKey("sections.id"), nullable=True, index=True)
    bound_schema = Column(String(63), nullable=True, index=True)
    access_type = Column(String(20), nullable=False, default="open")
    scope = Column(String(20), nullable=False, default="local")
    is_system = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class TemplateDB(Base):
    """
    A workspace template.

    ``revision`` is the compare-and-swap counter for the single-writer rule:
    every write to the row (draft edit, commit, rollback) moves it forward by one.
    """

    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(String(20), nullable=False, comment="client or supplier")
    current_version = Column(String(32), nullable=False, default="1.0.0")
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    schema_bindings = Column(JSON, nullable=False, default=list)
    section_bindings = Column(JSON, nullable=False, default=list)
    disabled_schemas = Column(
        JSON, nullable=False, default=list,
        comment="Bound schemas switched off for this template",
    )
    disabled_sections = Column(JSON, nullable=False, default=list)
    config = Column(JSON, nullable=False, default=dict)
    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    versions = relationship(
        "TemplateVersionDB",
        back_populates="template",
        order_by="TemplateVersionDB.sequence",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_templates_kind_default", "kind", "is_default"),
        Index(
            "uq_templates_one_default_per_kind",
            "kind",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )


class TemplateVersionDB(Base):
    """A committed template state. Content columns are append-only."""

    __tablename__ = "template_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(
        Integer, ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sequence = Column(
        Integer, nullable=False,
        comment="Monotonically increasing per template, starting at 1",
    )
    version = Column(String(32), nullable=False)
    snapshot = Column(JSON, nullable=False)
    snapshot_hash = Column(String(64), nullable=False)
    diff_from_previous = Column(JSON, nullable=False)
    applied = Column(Boolean, nullable=False, default=False)
    rollbackable = Column(Boolean, nullable=False, default=True)
    rollback_of = Column(
        Integer, nullable=True,
        comment="Version whose snapshot this rollback restored",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    created_by = Column(Integer, nullable=True, comment="Admin ID of the author")

    template = relationship("TemplateDB", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("template_id", "sequence", name="uq_template_versions_sequence"),
        UniqueConstraint("template_id", "version", name="uq_template_versions_version"),
    )

    def __repr__(self) -> str:
        return (
            f"<TemplateVersion template={self.template_id} seq={self.sequence} "
            f"version={self.version} hash={self.snapshot_hash[:12]}...>"
        )


class WorkspaceDB(Base):
    """Minimal workspace record: the consumer of template versions."""

    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    template_version_id = Column(
        Integer, ForeignKey("template_versions.id"), nullable=True, index=True,
    )
    used_schemas = Column(
        JSON, nullable=False, default=list,
        comment="Bound schemas the workspace actually holds data in",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class AuditLogDB(Base):
    """One row per mutating registry operation."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(30), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(100), nullable=True)
    admin_id = Column(Integer, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
        Index("ix_audit_logs_created", "created_at"),
    )
