"""Suggest a schema code from a human-readable (often Russian) table name."""

from __future__ import annotations

import re

DICTIONARY: dict[str, str] = {
    "новая": "new",
    "таблица": "table",
    "клиенты": "clients",
    "пользователи": "users",
    "заказы": "orders",
    "товары": "products",
    "продукты": "products",
    "поставщики": "suppliers",
    "склады": "warehouses",
    "отчет": "report",
    "документ": "document",
    "справочник": "directory",
    "регистр": "register",
    "журнал": "journal",
    "обработка": "procedure",
    "номенклатура": "nomenclature",
    "счета": "invoices",
    "платежи": "payments",
    "остатки": "balance",
    "движения": "movements",
    "активность": "activity",
}

_NON_SLUG = re.compile(r"[^a-z0-9_]")
_UNDERSCORES = re.compile(r"_+")


def suggest_code(text: str) -> str:
    """
    Translate known words and collapse the rest into a ``[a-z0-9_]`` slug.

    Unknown non-Latin words are dropped. Returns an empty string when nothing
    usable is left; a leading digit is prefixed with ``t_`` so the result is a
    valid identifier.
    """
    words = text.lower().split()
    joined = "_".join(DICTIONARY.get(word, word) for word in words)
    slug = _UNDERSCORES.sub("_", _NON_SLUG.sub("", joined)).strip("_")
    if slug and slug[0].isdigit():
        slug = f"t_{slug}"
    return slug
