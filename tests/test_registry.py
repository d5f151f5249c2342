"""
Tests for the Schema Registry.

Validates:
- Schema creation, unique codes, self-references
- System schema immutability (fields unchanged after a rejected edit)
- In-use deletion checks
- Field change-sets and retirement of published descriptors
- Idempotent seeding
"""

from __future__ import annotations

import pytest

from workspace_registry.domain.schema import (
    FieldAdded,
    FieldDescriptor,
    FieldKind,
    FieldRelabeled,
    FieldRemoved,
    FieldUpdated,
    SchemaCategory,
    SchemaPatch,
    TemplateKind,
    TemplateState,
)
from workspace_registry.errors import (
    DuplicateCode,
    FieldNotFound,
    InvalidField,
    InvalidIdentifier,
    SchemaInUse,
    SchemaNotFound,
    SystemFieldImmutable,
    SystemSchemaImmutable,
    ValidationError,
)
from workspace_registry.ledger.service import VersionLedger
from workspace_registry.registry.seed import SYSTEM_SCHEMAS, seed_system_schemas
from workspace_registry.registry.service import SchemaRegistry, plan_field_changes
from workspace_registry.sections.service import SectionTree
from workspace_registry.store.database import Database
from workspace_registry.templates.composer import TemplateComposer
from workspace_registry.workspaces.binder import WorkspaceBinder


def text(name: str, **kw) -> FieldDescriptor:
    return FieldDescriptor(name=name, kind=FieldKind.TEXT, **kw)


class TestCreateSchema:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.registry = SchemaRegistry(self.db)

    def test_create_and_get(self):
        created = self.registry.create_schema(
            "notes", "Notes", SchemaCategory.DOCUMENT, fields=[text("title", required=True), text("body")],
        )
        assert created.id is not None
        fetched = self.registry.get_schema("notes")
        assert fetched.field_names() == ["title", "body"]
        assert [f.position for f in fetched.fields] == [0, 1]
        assert fetched.fields[1].label == "body"

    def test_duplicate_code(self):
        self.registry.create_schema("notes", "Notes", SchemaCategory.DOCUMENT)
        with pytest.raises(DuplicateCode):
            self.registry.create_schema("notes", "Other", SchemaCategory.DIRECTORY)

    def test_invalid_code(self):
        with pytest.raises(InvalidIdentifier):
            self.registry.create_schema("my notes", "Notes", SchemaCategory.DOCUMENT)

    def test_self_reference(self):
        schema = self.registry.create_schema(
            "employees", "Employees", SchemaCategory.DIRECTORY,
            fields=[FieldDescriptor(name="manager_id", kind=FieldKind.REFERENCE, reference_target="employees")],
        )
        assert schema.fields[0].reference_target == "employees"

    def test_unknown_reference_rolls_back(self):
        with pytest.raises(InvalidField):
            self.registry.create_schema(
                "orders", "Orders", SchemaCategory.DOCUMENT,
                fields=[FieldDescriptor(name="client_id", kind=FieldKind.REFERENCE, reference_target="clients")],
            )
        assert not self.registry.exists("orders")

    def test_list_with_filters(self):
        self.registry.create_schema("notes", "Notes", SchemaCategory.DOCUMENT)
        self.registry.create_schema("clients", "Clients", SchemaCategory.DIRECTORY)
        items, total = self.registry.list_schemas(category=SchemaCategory.DIRECTORY)
        assert total == 1 and items[0].code == "clients"
        items, total = self.registry.list_schemas(search="not")
        assert [s.code for s in items] == ["notes"]

    def test_missing_schema(self):
        with pytest.raises(SchemaNotFound):
            self.registry.get_schema("ghost")


class TestSystemSchemas:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.registry = SchemaRegistry(self.db)
        seed_system_schemas(self.registry)

    def test_seed_is_idempotent(self):
        assert seed_system_schemas(self.registry) == []
        _, total = self.registry.list_schemas()
        assert total == len(SYSTEM_SCHEMAS)

    def test_structural_edit_rejected_and_fields_unchanged(self):
        before = self.registry.get_fields("products")
        with pytest.raises(SystemSchemaImmutable):
            self.registry.delete_field("products", "barcode")
        with pytest.raises(SystemSchemaImmutable):
            self.registry.create_field("products", text("color"))
        with pytest.raises(SystemSchemaImmutable):
            self.registry.update_field(
                "products", "sku", text("sku", required=False, system=True),
            )
        assert self.registry.get_fields("products") == before

    def test_relabel_allowed(self):
        schema = self.registry.update_field(
            "products", "sku", text("sku", label="Article", required=True, system=True),
        )
        sku = next(f for f in schema.fields if f.name == "sku")
        assert sku.label == "Article"
        assert sku.required and sku.system

    def test_category_change_rejected(self):
        with pytest.raises(SystemSchemaImmutable):
            self.registry.update_schema("products", SchemaPatch(category=SchemaCategory.REPORT))

    def test_rename_allowed(self):
        assert self.registry.update_schema("products", SchemaPatch(name="Goods")).name == "Goods"

    def test_delete_rejected(self):
        with pytest.raises(SystemSchemaImmutable):
            self.registry.delete_schema("clients")
        assert self.registry.exists("clients")

    def test_system_field_on_custom_schema(self):
        with pytest.raises(SystemFieldImmutable):
            self.registry.delete_field("sales_report", "period_start")
        schema = self.registry.delete_field("sales_report", "client_filter")
        assert "client_filter" not in schema.field_names()


class TestFieldChanges:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.registry = SchemaRegistry(self.db)
        self.registry.create_schema(
            "notes", "Notes", SchemaCategory.DOCUMENT,
            fields=[text("title"), text("body"), text("tag")],
        )

    def test_add_at_position(self):
        schema = self.registry.create_field("notes", text("author"), position=1)
        assert schema.field_names() == ["title", "author", "body", "tag"]
        assert [f.position for f in schema.fields] == [0, 1, 2, 3]

    def test_relabel_keeps_row(self):
        before = {f.name: f.id for f in self.registry.get_fields("notes")}
        schema = self.registry.update_field("notes", "body", text("body", label="Content"))
        body = next(f for f in schema.fields if f.name == "body")
        assert body.id == before["body"] and body.label == "Content"

    def test_rename_rejected(self):
        with pytest.raises(ValidationError):
            self.registry.update_field("notes", "body", text("content"))

    def test_unknown_field(self):
        with pytest.raises(FieldNotFound):
            self.registry.delete_field("notes", "ghost")

    def test_change_set_is_atomic(self):
        with pytest.raises(FieldNotFound):
            self.registry.apply_field_changes(
                "notes", [FieldRemoved(name="tag"), FieldRemoved(name="ghost")],
            )
        assert self.registry.get_schema("notes").field_names() == ["title", "body", "tag"]

    def test_update_schema_with_field_list(self):
        schema = self.registry.update_schema(
            "notes",
            SchemaPatch(fields=[text("body", required=True), text("title", label="Heading"), text("due")]),
        )
        assert schema.field_names() == ["body", "title", "due"]
        assert schema.fields[0].required
        assert schema.fields[1].label == "Heading"

    def test_published_schema_retires_rows(self):
        composer = TemplateComposer(self.db)
        ledger = VersionLedger(self.db)
        template = composer.create_template("Basic", TemplateKind.CLIENT, schema_bindings=["notes"])
        ledger.commit(template.id, composer.working_state(template.id))

        self.registry.update_field("notes", "body", text("body", required=True))
        self.registry.delete_field("notes", "tag")

        active = self.registry.get_fields("notes")
        history = self.registry.field_history("notes")
        assert [f.name for f in active] == ["title", "body"]
        assert active[1].required
        assert len(history) == 4
        retired = [f for f in history if f.retired_at is not None]
        assert sorted(f.name for f in retired) == ["body", "tag"]


class TestPlanFieldChanges:

    def test_removals_first_then_positions(self):
        current = [text("a"), text("b"), text("c")]
        desired = [text("c", label="C"), FieldDescriptor(name="a", kind=FieldKind.NUMBER), text("d")]
        changes = plan_field_changes(current, desired)
        assert changes[0] == FieldRemoved(name="b")
        assert FieldRelabeled(name="c", label="C") in changes
        assert FieldUpdated(field=desired[1]) in changes
        assert FieldAdded(field=desired[2], position=2) in changes

    def test_duplicate_names(self):
        with pytest.raises(ValidationError):
            plan_field_changes([], [text("a"), text("a")])


class TestDeleteSchema:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.registry = SchemaRegistry(self.db)
        self.registry.create_schema("clients", "Clients", SchemaCategory.DIRECTORY, fields=[text("name")])

    def test_delete_unused(self):
        self.registry.delete_schema("clients")
        assert not self.registry.exists("clients")

    def test_referenced_by_other_schema(self):
        self.registry.create_schema(
            "orders", "Orders", SchemaCategory.DOCUMENT,
            fields=[FieldDescriptor(name="client_id", kind=FieldKind.REFERENCE, reference_target="clients")],
        )
        with pytest.raises(SchemaInUse) as info:
            self.registry.delete_schema("clients")
        assert info.value.detail["referenced_by"] == ["orders"]

    def test_bound_by_template(self):
        template = TemplateComposer(self.db).create_template(
            "Retail", TemplateKind.CLIENT, schema_bindings=["clients"],
        )
        with pytest.raises(SchemaInUse) as info:
            self.registry.delete_schema("clients")
        assert info.value.detail["templates"] == [template.id]

    def test_bound_by_section(self):
        node = SectionTree(self.db).create_node("Clients", bound_schema="clients")
        with pytest.raises(SchemaInUse) as info:
            self.registry.delete_schema("clients")
        assert info.value.detail["sections"] == [node.id]

    def test_bound_by_workspace_on_older_version(self):
        self.registry.create_schema("orders", "Orders", SchemaCategory.DOCUMENT)
        template = TemplateComposer(self.db).create_template(
            "Retail", TemplateKind.CLIENT, schema_bindings=["clients"],
        )
        ledger = VersionLedger(self.db)
        v1 = ledger.commit(template.id, TemplateState(schema_bindings=["clients"]))
        binder = WorkspaceBinder(self.db, ledger)
        workspace = binder.create_workspace("acme")
        binder.bind_workspace(workspace.id, v1.id)
        ledger.commit(template.id, TemplateState(schema_bindings=["orders"]))

        with pytest.raises(SchemaInUse) as info:
            self.registry.delete_schema("clients")
        assert info.value.detail["workspaces"] == [workspace.id]
        assert info.value.detail["templates"] == []
        assert self.registry.exists("clients")
        assert binder.get_active_snapshot(workspace.id).schema_bindings == ["clients"]
