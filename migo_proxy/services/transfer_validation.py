"""
Transfer request validation (MIGO goods movement).

Two request shapes are accepted:

* item shape — ``{"TransferItemSet": [item, ...], ...}`` with a non-empty
  list; every item must carry TRANSFER_ITEM_REQUIRED_FIELDS;
* legacy shape — one movement as flat fields, LEGACY_TRANSFER_REQUIRED_FIELDS.

Validation runs before any SAP call and reports every missing field of
every item in a single pass.
"""

from __future__ import annotations

from typing import Any

from migo_proxy.core.exceptions import ValidationError

TRANSFER_ITEM_REQUIRED_FIELDS: tuple[str, ...] = (
    "Material",
    "Plant",
    "StgeLoc",
    "Quantity",
    "EntryUom",
    "Batch",
    "SalesOrder",
    "SoItem",
    "SpecStock",
    "StgeLocTo",
    "BatchTo",
    "MoveType",
)

LEGACY_TRANSFER_REQUIRED_FIELDS: tuple[str, ...] = (
    "salesOrder",
    "salesOrderItem",
    "movementType",
    "storageLocationTo",
    "specialStock",
    "MATNR",
    "Werks",
    "LGORT",
    "QTY",
    "MEINS",
    "Charg",
)


def has_transfer_items(body: dict) -> bool:
    """True when the body uses the multi-item ``TransferItemSet`` shape."""
    items = body.get("TransferItemSet")
    return isinstance(items, list) and len(items) > 0


def missing_fields(record: Any, required: tuple[str, ...]) -> list[str]:
    """Return the required fields that are absent or falsy, in schema order."""
    if not isinstance(record, dict):
        return list(required)
    return [name for name in required if not record.get(name)]


def validate_transfer(body: Any) -> None:
    """Validate a transfer request body.

    Raises:
        ValidationError: with ``"Invalid items: Item 1 missing: ...; Item 3
            missing: ..."`` for the item shape, or ``"Missing required
            fields: ..."`` for the legacy shape. ``details`` maps each item
            label (or ``"fields"``) to its missing field names.
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    if has_transfer_items(body):
        problems: list[str] = []
        details: dict[str, list[str]] = {}
        for index, item in enumerate(body["TransferItemSet"], start=1):
            missing = missing_fields(item, TRANSFER_ITEM_REQUIRED_FIELDS)
            if missing:
                problems.append(f"Item {index} missing: {', '.join(missing)}")
                details[f"Item {index}"] = missing
        if problems:
            raise ValidationError(f"Invalid items: {'; '.join(problems)}", details=details)
        return

    missing = missing_fields(body, LEGACY_TRANSFER_REQUIRED_FIELDS)
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"fields": missing},
        )
