"""
In-process writer locks, one per template.

Commits, rollbacks and binds of the same template are serialized on its
lock. The entry is dropped when the template is deleted, so the registry
only holds locks for templates that exist.
"""

from __future__ import annotations

import threading

_locks_guard = threading.Lock()
_template_locks: dict[int, threading.Lock] = {}


def template_lock(template_id: int) -> threading.Lock:
    with _locks_guard:
        lock = _template_locks.get(template_id)
        if lock is None:
            lock = _template_locks[template_id] = threading.Lock()
        return lock


def release_template_lock(template_id: int) -> None:
    with _locks_guard:
        _template_locks.pop(template_id, None)


def tracked_templates() -> set[int]:
    with _locks_guard:
        return set(_template_locks)
