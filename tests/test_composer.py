"""
Tests for the Template Composer.

Validates:
- Binding validation on create and update
- One default template per kind
- Deletion blocked while a workspace uses any version
- Per-template enable/disable toggles of bound schemas and sections
"""

from __future__ import annotations

import pytest

from workspace_registry.domain.schema import SchemaCategory, TemplateKind, TemplatePatch
from workspace_registry.errors import (
    DuplicateDefault,
    NotFoundError,
    StateError,
    TemplateInUse,
    TemplateNotFound,
    UnknownSchema,
    UnknownSection,
    ValidationError,
)
from workspace_registry.ledger.locks import tracked_templates
from workspace_registry.ledger.service import VersionLedger
from workspace_registry.registry.service import SchemaRegistry
from workspace_registry.sections.service import SectionTree
from workspace_registry.store.database import Database
from workspace_registry.templates.composer import TemplateComposer
from workspace_registry.workspaces.binder import WorkspaceBinder


class TestTemplateComposer:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        registry = SchemaRegistry(self.db)
        registry.create_schema("clients", "Clients", SchemaCategory.DIRECTORY)
        registry.create_schema("orders", "Orders", SchemaCategory.DOCUMENT)
        self.section = SectionTree(self.db).create_node("Sales")
        self.composer = TemplateComposer(self.db)

    def test_create(self):
        tpl = self.composer.create_template(
            "Retail", TemplateKind.CLIENT,
            schema_bindings=["orders", "clients", "orders"],
            section_bindings=[self.section.id],
            config={"theme": "light"},
        )
        assert tpl.current_version == "1.0.0"
        assert tpl.schema_bindings == ["clients", "orders"]
        assert self.composer.working_state(tpl.id).config == {"theme": "light"}

    def test_unknown_bindings(self):
        with pytest.raises(UnknownSchema) as info:
            self.composer.create_template("Bad", TemplateKind.CLIENT, schema_bindings=["clients", "ghost"])
        assert info.value.detail["codes"] == ["ghost"]
        with pytest.raises(UnknownSection):
            self.composer.create_template("Bad", TemplateKind.CLIENT, section_bindings=[999])
        assert self.composer.list_templates()[1] == 0

    def test_duplicate_default(self):
        first = self.composer.create_template("A", TemplateKind.CLIENT, is_default=True)
        with pytest.raises(DuplicateDefault):
            self.composer.create_template("B", TemplateKind.CLIENT, is_default=True)
        # other kinds have their own default
        self.composer.create_template("S", TemplateKind.SUPPLIER, is_default=True)
        assert self.composer.get_template(first.id).is_default

    def test_replace_default(self):
        first = self.composer.create_template("A", TemplateKind.CLIENT, is_default=True)
        second = self.composer.create_template(
            "B", TemplateKind.CLIENT, is_default=True, replace_default=True,
        )
        assert not self.composer.get_template(first.id).is_default
        assert self.composer.get_template(second.id).is_default

    def test_update_default_rule(self):
        self.composer.create_template("A", TemplateKind.CLIENT, is_default=True)
        other = self.composer.create_template("B", TemplateKind.CLIENT)
        with pytest.raises(DuplicateDefault):
            self.composer.update_template(other.id, TemplatePatch(is_default=True))
        updated = self.composer.update_template(
            other.id, TemplatePatch(is_default=True), replace_default=True,
        )
        assert updated.is_default

    def test_update_bindings(self):
        tpl = self.composer.create_template("A", TemplateKind.CLIENT, schema_bindings=["clients"])
        updated = self.composer.update_template(tpl.id, TemplatePatch(schema_bindings=["orders"]))
        assert updated.schema_bindings == ["orders"]
        assert updated.revision == tpl.revision + 1
        with pytest.raises(UnknownSchema):
            self.composer.update_template(tpl.id, TemplatePatch(schema_bindings=["ghost"]))
        assert self.composer.get_template(tpl.id).schema_bindings == ["orders"]

    def test_list_filters(self):
        self.composer.create_template("A", TemplateKind.CLIENT)
        b = self.composer.create_template("B", TemplateKind.SUPPLIER)
        self.composer.update_template(b.id, TemplatePatch(active=False))
        items, total = self.composer.list_templates(kind=TemplateKind.SUPPLIER)
        assert total == 1 and items[0].id == b.id
        items, total = self.composer.list_templates(active=True)
        assert [t.name for t in items] == ["A"]

    def test_missing_template(self):
        with pytest.raises(TemplateNotFound) as info:
            self.composer.get_template(42)
        assert isinstance(info.value, NotFoundError)
        assert isinstance(info.value, StateError)

    def test_delete(self):
        tpl = self.composer.create_template("A", TemplateKind.CLIENT, schema_bindings=["clients"])
        VersionLedger(self.db).commit(tpl.id, self.composer.working_state(tpl.id))
        self.composer.delete_template(tpl.id)
        with pytest.raises(TemplateNotFound):
            self.composer.get_template(tpl.id)

    def test_delete_in_use(self):
        tpl = self.composer.create_template("A", TemplateKind.CLIENT, schema_bindings=["clients"])
        ledger = VersionLedger(self.db)
        version = ledger.commit(tpl.id, self.composer.working_state(tpl.id))
        binder = WorkspaceBinder(self.db, ledger)
        workspace = binder.create_workspace("acme")
        binder.bind_workspace(workspace.id, version.id)
        with pytest.raises(TemplateInUse) as info:
            self.composer.delete_template(tpl.id)
        assert info.value.detail["workspaces"] == [workspace.id]

    def test_delete_releases_writer_lock(self):
        tpl = self.composer.create_template("A", TemplateKind.CLIENT, schema_bindings=["clients"])
        VersionLedger(self.db).commit(tpl.id, self.composer.working_state(tpl.id))
        assert tpl.id in tracked_templates()
        self.composer.delete_template(tpl.id)
        assert tpl.id not in tracked_templates()

    def test_concurrent_default_hits_unique_index(self, monkeypatch):
        self.composer.create_template("A", TemplateKind.CLIENT, is_default=True)
        # a writer that checked before the first default was committed
        monkeypatch.setattr(TemplateComposer, "_claim_default", staticmethod(lambda *args: None))
        with pytest.raises(DuplicateDefault):
            self.composer.create_template("B", TemplateKind.CLIENT, is_default=True)
        other = self.composer.create_template("C", TemplateKind.CLIENT)
        with pytest.raises(DuplicateDefault):
            self.composer.update_template(other.id, TemplatePatch(is_default=True))
        assert [t.name for t in self.composer.list_templates()[0] if t.is_default] == ["A"]


class TestBindingToggles:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        registry = SchemaRegistry(self.db)
        registry.create_schema("clients", "Clients", SchemaCategory.DIRECTORY)
        registry.create_schema("orders", "Orders", SchemaCategory.DOCUMENT)
        self.section = SectionTree(self.db).create_node("Sales")
        self.composer = TemplateComposer(self.db)
        self.retail = self.composer.create_template(
            "Retail", TemplateKind.CLIENT,
            schema_bindings=["clients", "orders"],
            section_bindings=[self.section.id],
        )
        self.wholesale = self.composer.create_template(
            "Wholesale", TemplateKind.CLIENT,
            schema_bindings=["clients", "orders"],
            section_bindings=[self.section.id],
        )

    def test_toggle_is_per_template(self):
        off = self.composer.toggle_schema(self.retail.id, "orders")
        assert off.disabled_schemas == ["orders"]
        assert off.working_state().enabled_schemas == ["clients"]
        assert self.composer.get_template(self.wholesale.id).disabled_schemas == []

        on = self.composer.toggle_schema(self.retail.id, "orders")
        assert on.disabled_schemas == []
        assert on.revision == self.retail.revision + 2

    def test_toggle_section(self):
        off = self.composer.toggle_section(self.wholesale.id, self.section.id)
        assert off.disabled_sections == [self.section.id]
        assert self.composer.get_template(self.retail.id).disabled_sections == []

    def test_toggle_unbound(self):
        tpl = self.composer.create_template("Bare", TemplateKind.SUPPLIER)
        with pytest.raises(ValidationError):
            self.composer.toggle_schema(tpl.id, "orders")
        with pytest.raises(ValidationError):
            self.composer.toggle_section(tpl.id, self.section.id)

    def test_disabled_must_be_bound(self):
        with pytest.raises(ValidationError) as info:
            self.composer.create_template(
                "Bad", TemplateKind.SUPPLIER,
                schema_bindings=["clients"], disabled_schemas=["orders"],
            )
        assert info.value.detail == {"schemas": ["orders"]}
        with pytest.raises(ValidationError):
            self.composer.update_template(
                self.retail.id, TemplatePatch(disabled_sections=[self.section.id + 1]),
            )

    def test_unbinding_drops_its_toggle(self):
        self.composer.toggle_schema(self.retail.id, "orders")
        updated = self.composer.update_template(
            self.retail.id, TemplatePatch(schema_bindings=["clients"]),
        )
        assert updated.schema_bindings == ["clients"]
        assert updated.disabled_schemas == []

    def test_toggles_are_versioned(self):
        ledger = VersionLedger(self.db)
        v1 = ledger.commit(self.retail.id, self.composer.working_state(self.retail.id))
        self.composer.toggle_schema(self.retail.id, "orders")
        v2 = ledger.commit(self.retail.id, self.composer.working_state(self.retail.id))
        assert v2.version == "1.0.1"
        assert v2.diff_from_previous.disabled_schemas == ["orders"]
        assert v2.snapshot.disabled_schemas == ["orders"]
        assert ledger.get_version(v1.id).snapshot.disabled_schemas == []
        ok, checked, message = ledger.verify_history(self.retail.id)
        assert ok and checked == 2, message
