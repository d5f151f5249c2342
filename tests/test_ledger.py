"""
Tests for the Version Ledger.

Validates:
- Version numbering across commits (1.0.0 -> 1.1.0 -> 2.0.0)
- Empty diffs still append; JSON type changes and toggles are recorded
- Rollback as a forward commit, and rollback gating
- History replay and tamper detection
- Compare-and-swap on the template revision
"""

from __future__ import annotations

import pytest
from sqlalchemy import select, update

from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import SchemaCategory, TemplateKind, TemplateState
from workspace_registry.errors import (
    ConcurrentModification,
    NotRollbackable,
    TemplateNotFound,
    UnknownSchema,
    ValidationError,
    VersionNotFound,
)
from workspace_registry.ledger.service import VersionLedger
from workspace_registry.registry.service import SchemaRegistry
from workspace_registry.store.database import Database
from workspace_registry.store.models import TemplateDB, TemplateVersionDB
from workspace_registry.templates.composer import TemplateComposer, load_template
from workspace_registry.workspaces.binder import WorkspaceBinder


def bindings(*codes: str, config=None) -> TemplateState:
    return TemplateState(schema_bindings=list(codes), config=config or {})


class LedgerCase:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.registry = SchemaRegistry(self.db)
        for code in ("s1", "s2", "s3"):
            self.registry.create_schema(code, code.upper(), SchemaCategory.DIRECTORY)
        self.composer = TemplateComposer(self.db)
        self.ledger = VersionLedger(self.db)
        self.binder = WorkspaceBinder(self.db, self.ledger)
        self.template = self.composer.create_template("Retail", TemplateKind.CLIENT)


class TestCommit(LedgerCase):

    def test_version_progression(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s1"))
        v2 = self.ledger.commit(tid, bindings("s1", "s2"))
        v3 = self.ledger.commit(tid, bindings("s2"))
        assert [v1.version, v2.version, v3.version] == ["1.0.0", "1.1.0", "2.0.0"]
        assert [v.sequence for v in (v1, v2, v3)] == [1, 2, 3]
        assert v3.diff_from_previous.removed_schemas == ["s1"]

        tpl = self.composer.get_template(tid)
        assert tpl.current_version == "2.0.0"
        assert tpl.schema_bindings == ["s2"]

    def test_config_only_is_patch_bump(self):
        tid = self.template.id
        self.ledger.commit(tid, bindings("s1"))
        version = self.ledger.commit(tid, bindings("s1", config={"theme": "dark"}))
        assert version.version == "1.0.1"
        assert version.diff_from_previous.config_delta == {"/theme": {"new": "dark"}}

    def test_json_type_change_is_recorded(self):
        tid = self.template.id
        first = self.ledger.commit(tid, bindings("s1", config={"flag": 1}))
        second = self.ledger.commit(tid, bindings("s1", config={"flag": True}))
        assert second.version == "1.0.1"
        assert not second.diff_from_previous.is_empty
        assert second.diff_from_previous.config_delta == {"/flag": {"old": 1, "new": True}}
        assert second.snapshot_hash != first.snapshot_hash
        assert second.snapshot.config == {"flag": True}
        ok, checked, message = self.ledger.verify_history(tid)
        assert ok and checked == 2, message

    def test_toggle_is_patch_bump(self):
        tid = self.template.id
        self.ledger.commit(tid, bindings("s1", "s2"))
        off = bindings("s1", "s2").model_copy(update={"disabled_schemas": ["s2"]})
        version = self.ledger.commit(tid, off)
        assert version.version == "1.0.1"
        assert version.diff_from_previous.disabled_schemas == ["s2"]
        assert self.composer.get_template(tid).disabled_schemas == ["s2"]
        ok, _, message = self.ledger.verify_history(tid)
        assert ok, message

    def test_disabled_binding_must_be_bound(self):
        stray = bindings("s1").model_copy(update={"disabled_schemas": ["s2"]})
        with pytest.raises(ValidationError):
            self.ledger.commit(self.template.id, stray)
        assert self.ledger.latest_version(self.template.id) is None

    def test_empty_diff_still_appends(self):
        tid = self.template.id
        first = self.ledger.commit(tid, bindings("s1"))
        again = self.ledger.commit(tid, bindings("s1"))
        assert again.diff_from_previous.is_empty
        assert again.version == "1.0.1"
        assert again.snapshot_hash == first.snapshot_hash
        assert self.ledger.get_history(tid)[1] == 2

    def test_snapshot_hash(self):
        version = self.ledger.commit(self.template.id, bindings("s2", "s1"))
        assert version.snapshot.schema_bindings == ["s1", "s2"]
        assert version.snapshot_hash == version.snapshot.compute_hash()
        assert not version.applied and version.rollbackable

    def test_unknown_binding(self):
        with pytest.raises(UnknownSchema):
            self.ledger.commit(self.template.id, bindings("ghost"))
        assert self.ledger.latest_version(self.template.id) is None

    def test_missing_template(self):
        with pytest.raises(TemplateNotFound):
            self.ledger.commit(999, bindings("s1"))

    def test_author_recorded(self):
        version = self.ledger.commit(self.template.id, bindings("s1"), RequestContext(admin_id=7))
        assert version.created_by == 7

    def test_stale_revision_raises_concurrent_modification(self):
        tid = self.template.id
        with self.db.transaction() as session:
            template = load_template(session, tid)
            session.execute(
                update(TemplateDB)
                .where(TemplateDB.id == tid)
                .values(revision=TemplateDB.revision + 1)
                .execution_options(synchronize_session=False)
            )
            with pytest.raises(ConcurrentModification):
                self.ledger._append(session, template, bindings("s1"), RequestContext.system())


class TestHistory(LedgerCase):

    def test_newest_first_and_pagination(self):
        tid = self.template.id
        for codes in (("s1",), ("s1", "s2"), ("s2",), ("s2", "s3")):
            self.ledger.commit(tid, bindings(*codes))
        page, total = self.ledger.get_history(tid, limit=2)
        assert total == 4
        assert [v.version for v in page] == ["2.1.0", "2.0.0"]
        assert [v.sequence for v in self.ledger.iter_history(tid, page_size=3)] == [4, 3, 2, 1]
        assert self.ledger.latest_version(tid).version == "2.1.0"

    def test_diff_versions(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s1"))
        v2 = self.ledger.commit(tid, bindings("s2", "s3"))
        patch = self.ledger.diff_versions(v1.id, v2.id)
        assert patch.added_schemas == ["s2", "s3"]
        assert patch.removed_schemas == ["s1"]

    def test_diff_across_templates(self):
        other = self.composer.create_template("Other", TemplateKind.SUPPLIER)
        v1 = self.ledger.commit(self.template.id, bindings("s1"))
        v2 = self.ledger.commit(other.id, bindings("s1"))
        with pytest.raises(ValidationError):
            self.ledger.diff_versions(v1.id, v2.id)

    def test_verify_history(self):
        tid = self.template.id
        self.ledger.commit(tid, bindings("s1"))
        self.ledger.commit(tid, bindings("s1", "s2", config={"a": {"b": 1}}))
        self.ledger.commit(tid, bindings("s2"))
        ok, checked, message = self.ledger.verify_history(tid)
        assert ok, message
        assert checked == 3

    def test_verify_detects_tampering(self):
        tid = self.template.id
        self.ledger.commit(tid, bindings("s1"))
        v2 = self.ledger.commit(tid, bindings("s1", "s2"))
        with self.db.transaction() as session:
            row = session.execute(
                select(TemplateVersionDB).where(TemplateVersionDB.id == v2.id)
            ).scalar_one()
            row.snapshot = {"schema_bindings": ["s1", "s3"], "section_bindings": [], "config": {}}
        ok, checked, message = self.ledger.verify_history(tid)
        assert not ok
        assert checked == 1
        assert "Hash mismatch" in message

    def test_verify_empty_history(self):
        ok, checked, _ = self.ledger.verify_history(self.template.id)
        assert ok and checked == 0


class TestRollback(LedgerCase):

    def test_rollback_is_forward_commit(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s1"))
        self.ledger.commit(tid, bindings("s1", "s2"))
        restored = self.ledger.rollback(tid, v1.id)
        assert restored.sequence == 3
        assert restored.version == "2.0.0"
        assert restored.rollback_of == v1.id
        assert restored.snapshot == v1.snapshot
        assert self.composer.get_template(tid).schema_bindings == ["s1"]
        assert self.ledger.verify_history(tid)[0]

    def test_gated_when_later_workspace_uses_dropped_schema(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s1"))
        v2 = self.ledger.commit(tid, bindings("s1", "s2"))
        workspace = self.binder.create_workspace("acme")
        self.binder.bind_workspace(workspace.id, v2.id, used_schemas=["s2"])

        assert not self.ledger.get_version(v1.id).rollbackable
        with pytest.raises(NotRollbackable):
            self.ledger.rollback(tid, v1.id)
        assert self.ledger.get_history(tid)[1] == 2

    def test_not_gated_when_dropped_schema_unused(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s1"))
        v2 = self.ledger.commit(tid, bindings("s1", "s2"))
        workspace = self.binder.create_workspace("acme")
        self.binder.bind_workspace(workspace.id, v2.id, used_schemas=["s1"])

        assert self.ledger.get_version(v1.id).rollbackable
        assert self.ledger.rollback(tid, v1.id).rollback_of == v1.id

    def test_gating_is_sticky(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s1"))
        v2 = self.ledger.commit(tid, bindings("s1", "s2"))
        v3 = self.ledger.commit(tid, bindings("s1", "s2", "s3"))
        workspace = self.binder.create_workspace("acme")
        self.binder.bind_workspace(workspace.id, v2.id, used_schemas=["s2"])
        self.binder.bind_workspace(workspace.id, v3.id, used_schemas=["s1"])
        assert not self.ledger.get_version(v1.id).rollbackable

    def test_target_from_other_template(self):
        other = self.composer.create_template("Other", TemplateKind.SUPPLIER)
        foreign = self.ledger.commit(other.id, bindings("s1"))
        with pytest.raises(VersionNotFound):
            self.ledger.rollback(self.template.id, foreign.id)

    def test_target_binding_deleted_since(self):
        tid = self.template.id
        v1 = self.ledger.commit(tid, bindings("s3"))
        self.ledger.commit(tid, bindings("s1"))
        self.registry.delete_schema("s3")
        with pytest.raises(UnknownSchema):
            self.ledger.rollback(tid, v1.id)
