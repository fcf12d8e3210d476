"""Named field lists for common entity types."""

from __future__ import annotations

import enum

from bridgesync.fallback import BASIC_FIELDS, MINIMAL_FIELDS


class FieldPreset(str, enum.Enum):
    MINIMAL = "minimal"
    BASIC = "basic"
    STANDARD = "standard"
    EXTENDED = "extended"
    ALL = "all"


STANDARD_FIELDS = (
    "id", "name", "display_name", "create_uid", "create_date", "write_uid", "write_date",
)

_PARTNER = {
    FieldPreset.MINIMAL: MINIMAL_FIELDS,
    FieldPreset.BASIC: (*MINIMAL_FIELDS, "email", "phone", "mobile"),
    FieldPreset.STANDARD: (
        *MINIMAL_FIELDS, "email", "phone", "mobile", "street", "city", "country_id", "is_company", "parent_id",
    ),
    FieldPreset.EXTENDED: (
        *MINIMAL_FIELDS, "email", "phone", "mobile", "street", "street2", "city", "state_id", "zip",
        "country_id", "is_company", "parent_id", "website", "vat", "comment", "create_date", "write_date",
    ),
}

_PRODUCT = {
    FieldPreset.MINIMAL: MINIMAL_FIELDS,
    FieldPreset.BASIC: (*MINIMAL_FIELDS, "default_code", "list_price", "standard_price"),
    FieldPreset.STANDARD: (
        *MINIMAL_FIELDS, "default_code", "barcode", "list_price", "standard_price", "type", "categ_id",
        "uom_id", "qty_available",
    ),
    FieldPreset.EXTENDED: (
        *MINIMAL_FIELDS, "default_code", "barcode", "list_price", "standard_price", "type", "categ_id",
        "uom_id", "uom_po_id", "qty_available", "virtual_available", "description", "description_sale",
        "weight", "volume", "active", "create_date", "write_date",
    ),
}

_SALE_ORDER = {
    FieldPreset.MINIMAL: MINIMAL_FIELDS,
    FieldPreset.BASIC: (*MINIMAL_FIELDS, "partner_id", "date_order", "amount_total", "state"),
    FieldPreset.STANDARD: (
        *MINIMAL_FIELDS, "partner_id", "date_order", "validity_date", "amount_untaxed", "amount_tax",
        "amount_total", "state", "user_id", "company_id",
    ),
    FieldPreset.EXTENDED: (
        *MINIMAL_FIELDS, "partner_id", "partner_invoice_id", "partner_shipping_id", "date_order",
        "validity_date", "amount_untaxed", "amount_tax", "amount_total", "state", "user_id", "team_id",
        "company_id", "payment_term_id", "pricelist_id", "note", "create_date", "write_date",
    ),
}

_GENERIC = {
    FieldPreset.MINIMAL: MINIMAL_FIELDS,
    FieldPreset.BASIC: BASIC_FIELDS,
    FieldPreset.STANDARD: STANDARD_FIELDS,
    FieldPreset.EXTENDED: STANDARD_FIELDS,
}

_BUILTIN: dict[str, dict[FieldPreset, tuple[str, ...]]] = {
    "res.partner": _PARTNER,
    "product.product": _PRODUCT,
    "product.template": _PRODUCT,
    "sale.order": _SALE_ORDER,
}


class PresetRegistry:
    """Built-in presets plus caller registered overrides."""

    def __init__(self) -> None:
        self._custom: dict[str, dict[FieldPreset, list[str]]] = {}

    def register(self, entity_type: str, preset: FieldPreset | str, fields: list[str]) -> None:
        self._custom.setdefault(entity_type, {})[FieldPreset(preset)] = list(fields)

    def clear(self) -> None:
        self._custom.clear()

    def fields(self, entity_type: str, preset: FieldPreset | str) -> list[str] | None:
        """Field list for ``preset``; ``None`` means "every field the backend has"."""
        preset = FieldPreset(preset)
        custom = self._custom.get(entity_type, {})
        if preset in custom:
            return list(custom[preset])
        if preset is FieldPreset.ALL:
            return None
        return list(_BUILTIN.get(entity_type, _GENERIC).get(preset, _GENERIC[preset]))


presets = PresetRegistry()


def get_fields(entity_type: str, preset: FieldPreset | str) -> list[str] | None:
    return presets.fields(entity_type, preset)
