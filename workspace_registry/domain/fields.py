"""Field descriptor validation."""

from __future__ import annotations

import re
from collections.abc import Collection, Iterable

from workspace_registry.domain.schema import FieldDescriptor, FieldKind
from workspace_registry.errors import (
    DuplicateFieldName,
    FieldError,
    InvalidChoices,
    InvalidField,
    InvalidIdentifier,
    InvalidReference,
)

IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 63


def validate_identifier(value: str, what: str = "identifier") -> str:
    """Return ``value`` if it is a valid schema/field identifier."""
    if not value or len(value) > MAX_IDENTIFIER_LENGTH or not IDENTIFIER_RE.match(value):
        raise InvalidIdentifier(
            f"Invalid {what} '{value}': must start with a letter, contain only "
            f"letters, digits and underscores, and be at most "
            f"{MAX_IDENTIFIER_LENGTH} characters",
            value=value,
        )
    return value


def validate_descriptor(
    descriptor: FieldDescriptor,
    known_codes: Collection[str],
    existing_names: Iterable[str] = (),
) -> None:
    """
    Check a field descriptor against its invariants.

    Args:
        descriptor: The field to check.
        known_codes: Schema codes that a reference field may target. Callers
            creating a schema include the new schema's own code so that
            self-references pass.
        existing_names: Names of the other fields of the owning schema.

    Raises:
        InvalidIdentifier: The field name is not a valid identifier.
        DuplicateFieldName: ``existing_names`` already contains the name.
        InvalidReference: Reference target missing, unknown, or set on a
            non-reference field.
        InvalidChoices: Select choices missing, empty or duplicated, or set
            on a non-select field.
    """
    validate_identifier(descriptor.name, "field name")

    if descriptor.name in set(existing_names):
        raise DuplicateFieldName(
            f"Field '{descriptor.name}' already exists in this schema",
            field=descriptor.name,
        )

    if descriptor.kind == FieldKind.REFERENCE:
        if not descriptor.reference_target:
            raise InvalidReference(
                f"Reference field '{descriptor.name}' has no reference target",
                field=descriptor.name,
            )
        if descriptor.reference_target not in known_codes:
            raise InvalidReference(
                f"Reference field '{descriptor.name}' targets unknown schema "
                f"'{descriptor.reference_target}'",
                field=descriptor.name,
                target=descriptor.reference_target,
            )
    elif descriptor.reference_target is not None:
        raise InvalidReference(
            f"Field '{descriptor.name}' of kind {descriptor.kind.value} cannot "
            f"carry a reference target",
            field=descriptor.name,
        )

    if descriptor.kind == FieldKind.SELECT:
        choices = descriptor.choices or []
        if not choices:
            raise InvalidChoices(
                f"Select field '{descriptor.name}' needs at least one choice",
                field=descriptor.name,
            )
        if len(set(choices)) != len(choices):
            raise InvalidChoices(
                f"Select field '{descriptor.name}' has duplicate choices",
                field=descriptor.name,
                choices=choices,
            )
        if any(not str(choice).strip() for choice in choices):
            raise InvalidChoices(
                f"Select field '{descriptor.name}' has a blank choice",
                field=descriptor.name,
            )
    elif descriptor.choices is not None:
        raise InvalidChoices(
            f"Field '{descriptor.name}' of kind {descriptor.kind.value} cannot "
            f"carry choices",
            field=descriptor.name,
        )


def validate_field_list(
    fields: Iterable[FieldDescriptor],
    known_codes: Collection[str],
) -> list[FieldDescriptor]:
    """Validate an ordered field list; the first bad field raises InvalidField."""
    seen: list[str] = []
    validated = []
    for descriptor in fields:
        try:
            validate_descriptor(descriptor, known_codes, seen)
        except FieldError as exc:
            raise InvalidField(descriptor.name, exc) from exc
        seen.append(descriptor.name)
        validated.append(descriptor)
    return validated
