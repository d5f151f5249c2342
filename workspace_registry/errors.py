"""
Registry error taxonomy.

Every rejection raised by the schema registry, section tree, template
composer, version ledger and workspace binder is a subclass of one of six
categories:

- ValidationError            — malformed input (field kind/choices/reference)
- ConflictError              — duplicate code/name, duplicate default
- ImmutableViolation         — system schema/section mutation attempt
- ReferentialIntegrityError  — dangling reference, in-use deletion, cycles
- NotFoundError              — unknown entity
- StateError                 — operation not valid in the current state

Infrastructure failures (store unavailable, driver errors) are not part of
this hierarchy and propagate unchanged.
"""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base class for typed, caller-recoverable registry failures."""

    code = "registry_error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "detail": self.detail}


# ════════════════════════════════════════════════════════════════
# Taxonomy
# ════════════════════════════════════════════════════════════════


class ValidationError(RegistryError):
    code = "validation_error"


class ConflictError(RegistryError):
    code = "conflict"


class ImmutableViolation(RegistryError):
    code = "immutable_violation"


class ReferentialIntegrityError(RegistryError):
    code = "referential_integrity"


class NotFoundError(RegistryError):
    code = "not_found"


class StateError(RegistryError):
    code = "state_error"


# ════════════════════════════════════════════════════════════════
# Field descriptor failures
# ════════════════════════════════════════════════════════════════


class FieldError(ValidationError):
    """A field descriptor violates its own invariants."""

    code = "field_error"


class InvalidIdentifier(FieldError):
    code = "invalid_identifier"


class InvalidReference(FieldError):
    code = "invalid_reference"


class InvalidChoices(FieldError):
    code = "invalid_choices"


class DuplicateFieldName(FieldError):
    code = "duplicate_field_name"


class InvalidField(ValidationError):
    """Wraps a FieldError raised while validating a schema's fields."""

    code = "invalid_field"

    def __init__(self, field_name: str, cause: FieldError) -> None:
        super().__init__(
            f"Invalid field '{field_name}': {cause.message}",
            field=field_name,
            cause=cause.code,
        )
        self.field_name = field_name
        self.cause = cause


# ════════════════════════════════════════════════════════════════
# Schema registry
# ════════════════════════════════════════════════════════════════


class DuplicateCode(ConflictError):
    code = "duplicate_code"


class SystemSchemaImmutable(ImmutableViolation):
    code = "system_schema_immutable"


class SystemFieldImmutable(ImmutableViolation):
    code = "system_field_immutable"


class SchemaInUse(ReferentialIntegrityError):
    code = "schema_in_use"


class SchemaNotFound(NotFoundError):
    code = "schema_not_found"


class FieldNotFound(NotFoundError):
    code = "field_not_found"


# ════════════════════════════════════════════════════════════════
# Section tree
# ════════════════════════════════════════════════════════════════


class SectionNotFound(NotFoundError):
    code = "section_not_found"


class ParentNotFound(ReferentialIntegrityError):
    code = "parent_not_found"


class CycleDetected(ReferentialIntegrityError):
    code = "cycle_detected"


class HasChildren(ReferentialIntegrityError):
    code = "has_children"


class SectionInUse(ReferentialIntegrityError):
    code = "section_in_use"


class SystemNodeLocked(ImmutableViolation):
    code = "system_node_locked"


class UnknownSchema(ReferentialIntegrityError):
    code = "unknown_schema"


class UnknownSection(ReferentialIntegrityError):
    code = "unknown_section"


# ════════════════════════════════════════════════════════════════
# Templates, versions, workspaces
# ════════════════════════════════════════════════════════════════


class DuplicateDefault(ConflictError):
    code = "duplicate_default"


class TemplateNotFound(NotFoundError, StateError):
    code = "template_not_found"


class TemplateInUse(ReferentialIntegrityError):
    code = "template_in_use"


class VersionNotFound(NotFoundError):
    code = "version_not_found"


class NotRollbackable(StateError):
    code = "not_rollbackable"


class PatchConflict(StateError):
    code = "patch_conflict"


class ConcurrentModification(StateError):
    code = "concurrent_modification"


class WorkspaceNotFound(NotFoundError):
    code = "workspace_not_found"


class WorkspaceUnbound(StateError):
    code = "workspace_unbound"
