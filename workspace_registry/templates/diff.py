"""
Structural diff and patch for template states, plus version numbering.

``diff`` and ``apply_patch`` are pure and satisfy, for any states ``a``
and ``b``::

    apply_patch(a, diff(a, b)) == b

Config is compared recursively through nested objects; every other value
(scalars, lists) is a leaf compared as a whole by its JSON form, so ``1``,
``1.0`` and ``true`` are all different values. Leaf paths are RFC 6901
JSON pointers (``/limits/max_rows``).

Usage:
    patch = diff(previous, proposed)
    version = bump_version("1.2.0", patch)   # "2.0.0" if anything was removed
"""

from __future__ import annotations

import copy
import json
from typing import Any

from workspace_registry.domain.schema import Patch, TemplateState
from workspace_registry.errors import PatchConflict, ValidationError

INITIAL_VERSION = "1.0.0"

_MISSING = object()


# ════════════════════════════════════════════════════════════════
# Diff
# ════════════════════════════════════════════════════════════════


def diff(old: TemplateState, new: TemplateState) -> Patch:
    """Compute the delta that turns ``old`` into ``new``."""
    old_schemas, new_schemas = set(old.schema_bindings), set(new.schema_bindings)
    old_sections, new_sections = set(old.section_bindings), set(new.section_bindings)

    old_off_schemas, new_off_schemas = set(old.disabled_schemas), set(new.disabled_schemas)
    old_off_sections, new_off_sections = set(old.disabled_sections), set(new.disabled_sections)

    config_delta: dict[str, dict[str, Any]] = {}
    _diff_objects(old.config, new.config, [], config_delta)

    return Patch(
        added_schemas=sorted(new_schemas - old_schemas),
        removed_schemas=sorted(old_schemas - new_schemas),
        added_sections=sorted(new_sections - old_sections),
        removed_sections=sorted(old_sections - new_sections),
        disabled_schemas=sorted(new_off_schemas - old_off_schemas),
        enabled_schemas=sorted(old_off_schemas - new_off_schemas),
        disabled_sections=sorted(new_off_sections - old_off_sections),
        enabled_sections=sorted(old_off_sections - new_off_sections),
        config_delta=dict(sorted(config_delta.items())),
    )


def _diff_objects(
    old: dict[str, Any],
    new: dict[str, Any],
    path: list[str],
    out: dict[str, dict[str, Any]],
) -> None:
    for key in sorted(set(old) | set(new)):
        here = path + [key]
        before = old.get(key, _MISSING)
        after = new.get(key, _MISSING)
        if isinstance(before, dict) and isinstance(after, dict):
            _diff_objects(before, after, here, out)
            continue
        if before is not _MISSING and after is not _MISSING and same_value(before, after):
            continue
        entry: dict[str, Any] = {}
        if before is not _MISSING:
            entry["old"] = before
        if after is not _MISSING:
            entry["new"] = after
        out[to_pointer(here)] = entry


# ════════════════════════════════════════════════════════════════
# Apply
# ════════════════════════════════════════════════════════════════


def apply_patch(state: TemplateState, patch: Patch) -> TemplateState:
    """
    Apply ``patch`` to ``state`` and return the resulting state.

    Application is strict: the patch must have been computed against an
    equivalent state.

    Raises:
        PatchConflict: A removed binding is not bound, an added binding is
            already bound, a toggle is switched to the state it already has,
            or a config entry's ``old`` side does not match.
    """
    schemas = _apply_set(
        "schema", set(state.schema_bindings), patch.added_schemas, patch.removed_schemas,
    )
    sections = _apply_set(
        "section", set(state.section_bindings), patch.added_sections, patch.removed_sections,
    )
    disabled_schemas = _apply_set(
        "disabled schema", set(state.disabled_schemas),
        patch.disabled_schemas, patch.enabled_schemas,
    )
    disabled_sections = _apply_set(
        "disabled section", set(state.disabled_sections),
        patch.disabled_sections, patch.enabled_sections,
    )

    config = copy.deepcopy(state.config)
    for pointer, entry in patch.config_delta.items():
        _apply_config_entry(config, pointer, entry)

    return TemplateState(
        schema_bindings=schemas,
        section_bindings=sections,
        disabled_schemas=disabled_schemas,
        disabled_sections=disabled_sections,
        config=config,
    )


def _apply_set(what: str, current: set, added: list, removed: list) -> list:
    key = what.replace(" ", "_")
    for item in removed:
        if item not in current:
            raise PatchConflict(f"Cannot remove {what} {item!r}: not present", **{key: item})
        current.discard(item)
    for item in added:
        if item in current:
            raise PatchConflict(f"Cannot add {what} {item!r}: already present", **{key: item})
        current.add(item)
    return sorted(current)


def _apply_config_entry(config: dict[str, Any], pointer: str, entry: dict[str, Any]) -> None:
    *parents, leaf = from_pointer(pointer)
    target = config
    for key in parents:
        child = target.get(key, _MISSING)
        if not isinstance(child, dict):
            raise PatchConflict(f"Config path {pointer} has no parent object", path=pointer)
        target = child

    current = target.get(leaf, _MISSING)
    if "old" in entry:
        if current is _MISSING or not same_value(current, entry["old"]):
            raise PatchConflict(
                f"Config value at {pointer} does not match the patch",
                path=pointer,
                expected=entry["old"],
                actual=None if current is _MISSING else current,
            )
    elif current is not _MISSING:
        raise PatchConflict(f"Config key {pointer} already exists", path=pointer)

    if "new" in entry:
        target[leaf] = copy.deepcopy(entry["new"])
    else:
        del target[leaf]


# ── JSON values ─────────────────────────────────────────────────


def same_value(a: Any, b: Any) -> bool:
    """JSON equality: unlike ``==``, ``true`` never equals ``1`` and ``1`` is not ``1.0``."""
    return _canonical(a) == _canonical(b)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


# ── JSON pointers ───────────────────────────────────────────────


def to_pointer(parts: list[str]) -> str:
    return "".join("/" + str(p).replace("~", "~0").replace("/", "~1") for p in parts)


def from_pointer(pointer: str) -> list[str]:
    if not pointer.startswith("/"):
        raise PatchConflict(f"Malformed config path {pointer!r}", path=pointer)
    return [p.replace("~1", "/").replace("~0", "~") for p in pointer[1:].split("/")]


# ════════════════════════════════════════════════════════════════
# Version numbering
# ════════════════════════════════════════════════════════════════


def parse_version(version: str) -> tuple[int, int, int]:
    parts = version.split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValidationError(f"Invalid version string {version!r}", version=version)
    major, minor, patch = (int(p) for p in parts)
    return major, minor, patch


def bump_version(previous: str | None, patch: Patch) -> str:
    """
    Next version after ``previous`` given the delta being committed.

    No previous version gives ``1.0.0``. A removal bumps the major number,
    an addition the minor number, and anything else (toggles, config or empty)
    the patch number.
    """
    if previous is None:
        return INITIAL_VERSION
    major, minor, micro = parse_version(previous)
    if patch.is_breaking:
        return f"{major + 1}.0.0"
    if patch.is_additive:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{micro + 1}"
