"""
Version Ledger — append-only history of template states.

Every commit appends an immutable ``template_versions`` row holding the full
snapshot, its SHA-256 hash and the structural diff from the previous
snapshot. Rows are never updated except for two flags:

- ``applied``       — some workspace has been bound to the version.
- ``rollbackable``  — cleared (and never set again) once restoring the
                      version would drop a schema that a workspace bound to
                      a later applied version is using.

Version numbers follow the diff: the first commit is ``1.0.0``; a removed
binding bumps the major number, an added binding the minor number, and a
toggle, config-only or empty change the patch number. Empty diffs still append.

Writers are serialized per template by an in-process lock, then by a
compare-and-swap on ``templates.revision`` and the unique
``(template_id, sequence)`` constraint, so a lost race across processes
surfaces as ``ConcurrentModification`` instead of a forked history.

Usage:
    ledger = VersionLedger(db)
    v1 = ledger.commit(template_id, TemplateState(schema_bindings=["clients"]), ctx)
    ledger.mark_applied(v1.id, workspace_id, used_schemas=["clients"], ctx=ctx)
    ok, checked, message = ledger.verify_history(template_id)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from workspace_registry import audit_log
from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import Patch, TemplateState, TemplateVersion
from workspace_registry.errors import (
    ConcurrentModification,
    NotRollbackable,
    PatchConflict,
    ValidationError,
    VersionNotFound,
    WorkspaceNotFound,
)
from workspace_registry.ledger.locks import template_lock
from workspace_registry.store.convert import to_version
from workspace_registry.store.database import Database
from workspace_registry.store.models import TemplateDB, TemplateVersionDB, WorkspaceDB
from workspace_registry.templates.composer import ensure_bindings_exist, load_template
from workspace_registry.templates.diff import apply_patch, bump_version, diff

logger = logging.getLogger(__name__)


def load_version(session: Session, version_id: int, lock: bool = False) -> TemplateVersionDB:
    stmt = select(TemplateVersionDB).where(TemplateVersionDB.id == version_id)
    if lock:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise VersionNotFound(f"Template version {version_id} not found", version_id=version_id)
    return row


def load_workspace(session: Session, workspace_id: int, lock: bool = False) -> WorkspaceDB:
    stmt = select(WorkspaceDB).where(WorkspaceDB.id == workspace_id)
    if lock:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise WorkspaceNotFound(f"Workspace {workspace_id} not found", workspace_id=workspace_id)
    return row


class VersionLedger:
    """Commits, applies, rolls back and audits template versions."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── Writes ──────────────────────────────────────────────────

    def commit(
        self,
        template_id: int,
        new_state: TemplateState,
        ctx: RequestContext | None = None,
    ) -> TemplateVersion:
        """
        Append ``new_state`` as the next version of the template.

        The template's ``current_version``, working bindings and revision
        are updated in the same transaction as the version insert.

        Raises:
            TemplateNotFound: No such template.
            UnknownSchema / UnknownSection: A binding does not exist.
            ConcurrentModification: Another writer committed first.
        """
        ctx = ctx or RequestContext.system()
        with template_lock(template_id):
            with self.db.transaction() as session:
                template = load_template(session, template_id, lock=True)
                result = self._append(session, template, new_state, ctx)

        self._log_commit(result)
        return result

    def rollback(
        self,
        template_id: int,
        target_version_id: int,
        ctx: RequestContext | None = None,
    ) -> TemplateVersion:
        """
        Restore the snapshot of an earlier version as a new forward commit.

        History is never rewritten: the restored state is appended with
        ``rollback_of`` pointing at the target.

        Raises:
            VersionNotFound: The target is not a version of this template.
            NotRollbackable: A workspace on a later version uses a schema
                the target does not bind.
            UnknownSchema / UnknownSection: A binding of the target has been
                deleted since it was committed.
        """
        ctx = ctx or RequestContext.system()
        with template_lock(template_id):
            with self.db.transaction() as session:
                template = load_template(session, template_id, lock=True)
                target = load_version(session, target_version_id)
                if target.template_id != template_id:
                    raise VersionNotFound(
                        f"Version {target_version_id} does not belong to template {template_id}",
                        version_id=target_version_id,
                        template_id=template_id,
                    )
                if not target.rollbackable:
                    raise NotRollbackable(
                        f"Version {target.version} of template {template_id} cannot be "
                        f"restored: schemas in use by later workspaces would be dropped",
                        template_id=template_id,
                        version_id=target.id,
                        version=target.version,
                    )
                state = TemplateState.model_validate(target.snapshot)
                result = self._append(session, template, state, ctx, rollback_of=target.id)

        logger.info(
            "Template rolled back: id=%d to=%s as=%s",
            template_id, target.version, result.version,
        )
        self._log_commit(result)
        return result

    def mark_applied(
        self,
        version_id: int,
        workspace_id: int,
        used_schemas: list[str] | None = None,
        ctx: RequestContext | None = None,
    ) -> TemplateVersion:
        """
        Bind a workspace to a version and flag the version as applied.

        ``used_schemas`` defaults to every schema the version binds and must
        be a subset of them. Rollback gating for the template is recomputed
        in the same transaction.

        Raises:
            ValidationError: ``used_schemas`` names a schema the version does
                not bind.
            UnknownSchema / UnknownSection: A binding of the version has been
                deleted since it was committed.
        """
        ctx = ctx or RequestContext.system()
        with self.db.session() as session:
            template_id = load_version(session, version_id).template_id

        with template_lock(template_id):
            with self.db.transaction() as session:
                version = load_version(session, version_id, lock=True)
                workspace = load_workspace(session, workspace_id, lock=True)

                bound = set(version.snapshot.get("schema_bindings", []))
                used = sorted(set(used_schemas) if used_schemas is not None else bound)
                stray = [code for code in used if code not in bound]
                if stray:
                    raise ValidationError(
                        f"Version {version.version} does not bind schema(s) {stray}",
                        version_id=version_id,
                        schemas=stray,
                    )
                ensure_bindings_exist(session, TemplateState.model_validate(version.snapshot))

                previous_version_id = workspace.template_version_id
                version.applied = True
                workspace.template_version_id = version.id
                workspace.used_schemas = used
                session.flush()

                gated = self._recompute_gating(session, template_id)
                audit_log.record(
                    session, ctx, "bind", "template_version", version_id,
                    {
                        "workspace_id": workspace_id,
                        "previous_version_id": previous_version_id,
                        "used_schemas": used,
                        "gated_versions": gated,
                    },
                )
                result = to_version(version)

        logger.info(
            "Version applied: template=%d version=%s workspace=%d gated=%s",
            template_id, result.version, workspace_id, gated,
        )
        return result

    # ── Reads ───────────────────────────────────────────────────

    def get_version(self, version_id: int) -> TemplateVersion:
        with self.db.session() as session:
            return to_version(load_version(session, version_id))

    def latest_version(self, template_id: int) -> TemplateVersion | None:
        with self.db.session() as session:
            load_template(session, template_id)
            row = self._latest(session, template_id)
            return to_version(row) if row is not None else None

    def get_history(
        self,
        template_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TemplateVersion], int]:
        """Return a page of versions, newest first, and the total count."""
        with self.db.session() as session:
            load_template(session, template_id)
            rows = session.execute(
                select(TemplateVersionDB)
                .where(TemplateVersionDB.template_id == template_id)
                .order_by(TemplateVersionDB.sequence.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total = session.execute(
                select(func.count())
                .select_from(TemplateVersionDB)
                .where(TemplateVersionDB.template_id == template_id)
            ).scalar() or 0
            return [to_version(row) for row in rows], total

    def iter_history(self, template_id: int, page_size: int = 100) -> Iterator[TemplateVersion]:
        """Yield every version, newest first, fetching one page at a time."""
        offset = 0
        while True:
            page, _ = self.get_history(template_id, limit=page_size, offset=offset)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def diff_versions(self, from_version_id: int, to_version_id: int) -> Patch:
        with self.db.session() as session:
            old = load_version(session, from_version_id)
            new = load_version(session, to_version_id)
            if old.template_id != new.template_id:
                raise ValidationError(
                    "Versions belong to different templates",
                    from_version_id=from_version_id,
                    to_version_id=to_version_id,
                )
            return diff(
                TemplateState.model_validate(old.snapshot),
                TemplateState.model_validate(new.snapshot),
            )

    def verify_history(self, template_id: int) -> tuple[bool, int, str]:
        """
        Replay the template's history from the empty state.

        For every version in sequence order, checks that the sequence is
        contiguous, that the stored hash matches the snapshot, that applying
        the stored diff to the previous snapshot reproduces the snapshot,
        and that the version number follows from the diff.

        Returns:
            Tuple of (is_valid, versions_verified, message).
        """
        with self.db.session() as session:
            load_template(session, template_id)
            rows = session.execute(
                select(TemplateVersionDB)
                .where(TemplateVersionDB.template_id == template_id)
                .order_by(TemplateVersionDB.sequence.asc())
            ).scalars().all()

            if not rows:
                return True, 0, f"Template {template_id} has no committed versions"

            state = TemplateState()
            previous_version = None
            for i, row in enumerate(rows):
                if row.sequence != i + 1:
                    return False, i, f"Sequence gap: expected {i + 1}, found {row.sequence}"

                snapshot = TemplateState.model_validate(row.snapshot)
                computed = snapshot.compute_hash()
                if computed != row.snapshot_hash:
                    return (
                        False, i,
                        f"Hash mismatch at {row.version}: "
                        f"stored={row.snapshot_hash[:16]}... computed={computed[:16]}...",
                    )

                patch = Patch.model_validate(row.diff_from_previous)
                try:
                    replayed = apply_patch(state, patch)
                except PatchConflict as exc:
                    return False, i, f"Diff of {row.version} does not apply: {exc.message}"
                if replayed.canonical_json() != snapshot.canonical_json():
                    return False, i, f"Replaying the diff of {row.version} does not reproduce its snapshot"

                expected = bump_version(previous_version, patch)
                if row.version != expected:
                    return False, i, f"Version {row.version} should be {expected}"

                state = snapshot
                previous_version = row.version

            return True, len(rows), f"History verified: {len(rows)} versions, integrity intact"

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _latest(session: Session, template_id: int) -> TemplateVersionDB | None:
        return session.execute(
            select(TemplateVersionDB)
            .where(TemplateVersionDB.template_id == template_id)
            .order_by(TemplateVersionDB.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _append(
        self,
        session: Session,
        template: TemplateDB,
        new_state: TemplateState,
        ctx: RequestContext,
        rollback_of: int | None = None,
    ) -> TemplateVersion:
        ensure_bindings_exist(session, new_state)

        latest = self._latest(session, template.id)
        previous_state = (
            TemplateState.model_validate(latest.snapshot) if latest is not None else TemplateState()
        )
        patch = diff(previous_state, new_state)
        version = bump_version(latest.version if latest is not None else None, patch)
        sequence = latest.sequence + 1 if latest is not None else 1

        swapped = session.execute(
            update(TemplateDB)
            .where(TemplateDB.id == template.id, TemplateDB.revision == template.revision)
            .values(
                revision=template.revision + 1,
                current_version=version,
                schema_bindings=new_state.schema_bindings,
                section_bindings=new_state.section_bindings,
                disabled_schemas=new_state.disabled_schemas,
                disabled_sections=new_state.disabled_sections,
                config=new_state.config,
            )
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount != 1:
            raise ConcurrentModification(
                f"Template {template.id} was modified concurrently",
                template_id=template.id,
                expected_revision=template.revision,
            )

        row = TemplateVersionDB(
            template_id=template.id,
            sequence=sequence,
            version=version,
            snapshot=new_state.model_dump(mode="json"),
            snapshot_hash=new_state.compute_hash(),
            diff_from_previous=patch.model_dump(mode="json", exclude={"is_empty", "is_breaking"}),
            applied=False,
            rollbackable=True,
            rollback_of=rollback_of,
            created_by=ctx.admin_id,
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConcurrentModification(
                f"Version {sequence} of template {template.id} already exists",
                template_id=template.id,
                sequence=sequence,
            ) from exc

        action = "rollback" if rollback_of is not None else "commit"
        audit_log.record(
            session, ctx, action, "template", template.id,
            {
                "version_id": row.id,
                "version": version,
                "sequence": sequence,
                "rollback_of": rollback_of,
                "diff": row.diff_from_previous,
            },
        )
        return to_version(row)

    @staticmethod
    def _recompute_gating(session: Session, template_id: int) -> list[int]:
        """
        Clear ``rollbackable`` on every version whose restoration would drop
        a schema used by a workspace bound to a later applied version.
        """
        versions = session.execute(
            select(TemplateVersionDB)
            .where(TemplateVersionDB.template_id == template_id)
            .order_by(TemplateVersionDB.sequence.asc())
        ).scalars().all()

        in_use: dict[int, set[str]] = {}
        for version_id, used in session.execute(
            select(WorkspaceDB.template_version_id, WorkspaceDB.used_schemas).where(
                WorkspaceDB.template_version_id.in_([v.id for v in versions])
            )
        ).all():
            in_use.setdefault(version_id, set()).update(used or [])

        gated = []
        for candidate in versions:
            if not candidate.rollbackable:
                continue
            restored = TemplateState.model_validate(candidate.snapshot)
            for later in versions:
                if later.sequence <= candidate.sequence or not later.applied:
                    continue
                used = in_use.get(later.id)
                if not used:
                    continue
                dropped = diff(TemplateState.model_validate(later.snapshot), restored).removed_schemas
                if used.intersection(dropped):
                    candidate.rollbackable = False
                    gated.append(candidate.id)
                    logger.info(
                        "Version gated: template=%d version=%s drops %s used on %s",
                        template_id, candidate.version, sorted(used.intersection(dropped)),
                        later.version,
                    )
                    break
        session.flush()
        return gated

    @staticmethod
    def _log_commit(version: TemplateVersion) -> None:
        patch = version.diff_from_previous
        logger.info(
            "Template version committed: template=%d seq=%d version=%s +%d/-%d schemas "
            "+%d/-%d sections config=%d hash=%s",
            version.template_id, version.sequence, version.version,
            len(patch.added_schemas), len(patch.removed_schemas),
            len(patch.added_sections), len(patch.removed_sections),
            len(patch.config_delta), version.snapshot_hash[:16],
        )
