"""
Seed catalogue of system table schemas.

Seeding is idempotent: schemas whose code already exists are skipped. The
list is ordered so that every reference target is created before the
schemas that point at it.
"""

from __future__ import annotations

import logging
from typing import Any

from workspace_registry.context import RequestContext
from workspace_registry.domain.schema import FieldDescriptor, SchemaCategory
from workspace_registry.registry.service import SchemaRegistry

logger = logging.getLogger(__name__)


def _f(name: str, kind: str, required: bool = False, **extra: Any) -> dict[str, Any]:
    return {"name": name, "kind": kind, "required": required, "system": True, **extra}


SYSTEM_SCHEMAS: list[dict[str, Any]] = [
    {
        "code": "products",
        "name": "Products",
        "category": "directory",
        "fields": [
            _f("name", "text", True),
            _f("sku", "text", True),
            _f("barcode", "text"),
            _f("volume", "number"),
        ],
    },
    {
        "code": "clients",
        "name": "Clients",
        "category": "directory",
        "fields": [
            _f("name", "text", True),
            _f("inn", "text"),
            _f("region", "select", choices=["Moscow", "Saint Petersburg", "Regions"]),
        ],
    },
    {
        "code": "warehouses",
        "name": "Warehouses",
        "category": "directory",
        "fields": [
            _f("name", "text", True),
            _f("address", "text"),
            _f("manager", "text"),
        ],
    },
    {
        "code": "suppliers",
        "name": "Suppliers",
        "category": "directory",
        "fields": [
            _f("name", "text", True),
            _f("inn", "text", True),
            _f("contact_person", "text"),
            _f("phone", "text"),
        ],
    },
    {
        "code": "orders",
        "name": "Orders",
        "category": "document",
        "fields": [
            _f("order_date", "date", True),
            _f("client_id", "reference", True, reference_target="clients"),
            _f("status", "select", True, choices=["new", "processing", "completed", "cancelled"]),
            _f("total_price", "number", True),
        ],
    },
    {
        "code": "tenders",
        "name": "Tenders",
        "category": "document",
        "fields": [
            _f("title", "text", True),
            _f("deadline", "date", True),
            _f("attachments", "text"),
        ],
    },
    {
        "code": "warehouse_balance",
        "name": "Warehouse balance",
        "category": "register",
        "fields": [
            _f("product_id", "reference", True, reference_target="products"),
            _f("quantity", "number", True),
            _f("warehouse_id", "reference", True, reference_target="warehouses"),
        ],
    },
    {
        "code": "activity_log",
        "name": "Activity log",
        "category": "journal",
        "fields": [
            _f("timestamp", "date", True),
            _f("action", "text", True),
            _f("details", "text"),
        ],
    },
    {
        "code": "sales_report",
        "name": "Sales report",
        "category": "report",
        "system": False,
        "fields": [
            _f("period_start", "date", True),
            _f("period_end", "date", True),
            _f("total_amount", "number", True),
            {"name": "client_filter", "kind": "reference", "reference_target": "clients"},
        ],
    },
    {
        "code": "data_import",
        "name": "Data import",
        "category": "procedure",
        "system": False,
        "fields": [
            _f("file_path", "text", True),
            _f("import_type", "select", True, choices=["products", "clients", "orders"]),
            _f("status", "select", True, choices=["pending", "running", "done", "failed"]),
        ],
    },
]


def seed_system_schemas(
    registry: SchemaRegistry,
    ctx: RequestContext | None = None,
) -> list[str]:
    """Create every catalogue schema that does not exist yet; return created codes."""
    ctx = ctx or RequestContext.system()
    created = []
    for entry in SYSTEM_SCHEMAS:
        if registry.exists(entry["code"]):
            logger.debug("Seed schema %s already exists, skipping", entry["code"])
            continue
        registry.create_schema(
            code=entry["code"],
            name=entry["name"],
            category=SchemaCategory(entry["category"]),
            system=entry.get("system", True),
            fields=[FieldDescriptor(**field) for field in entry["fields"]],
            ctx=ctx,
        )
        created.append(entry["code"])
    logger.info("Seeded %d system schemas", len(created))
    return created
