"""Tests for MIGO transfer request validation."""

import pytest

from migo_proxy.core.exceptions import ValidationError
from migo_proxy.services.transfer_validation import (
    LEGACY_TRANSFER_REQUIRED_FIELDS,
    TRANSFER_ITEM_REQUIRED_FIELDS,
    has_transfer_items,
    validate_transfer,
)
from sap_fakes import VALID_ITEM, VALID_LEGACY_TRANSFER


class TestShapeDetection:
    def test_non_empty_item_list_is_item_shape(self):
        assert has_transfer_items({"TransferItemSet": [VALID_ITEM]})

    @pytest.mark.parametrize("items", [[], None, "x", {"0": VALID_ITEM}])
    def test_anything_else_is_legacy_shape(self, items):
        assert not has_transfer_items({"TransferItemSet": items})


class TestItemShape:
    def test_valid_items_pass(self):
        validate_transfer({"TransferItemSet": [VALID_ITEM, dict(VALID_ITEM, Batch="B0003")]})

    def test_reports_every_missing_field_of_every_item(self):
        first = {k: v for k, v in VALID_ITEM.items() if k not in ("Batch", "Quantity")}
        third = dict(VALID_ITEM, MoveType="", BatchTo=None)
        body = {"TransferItemSet": [first, VALID_ITEM, third]}

        with pytest.raises(ValidationError) as exc_info:
            validate_transfer(body)

        err = exc_info.value
        assert err.http_status == 400
        assert err.message == (
            "Invalid items: Item 1 missing: Quantity, Batch; "
            "Item 3 missing: BatchTo, MoveType"
        )
        assert err.details == {
            "Item 1": ["Quantity", "Batch"],
            "Item 3": ["BatchTo", "MoveType"],
        }

    def test_non_object_item_misses_all_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_transfer({"TransferItemSet": ["oops"]})
        assert exc_info.value.details["Item 1"] == list(TRANSFER_ITEM_REQUIRED_FIELDS)


class TestLegacyShape:
    def test_valid_body_passes(self):
        validate_transfer(dict(VALID_LEGACY_TRANSFER))

    def test_empty_item_list_falls_back_to_legacy_rules(self):
        validate_transfer(dict(VALID_LEGACY_TRANSFER, TransferItemSet=[]))

    def test_reports_all_missing_fields(self):
        body = dict(VALID_LEGACY_TRANSFER, QTY=0, Charg="")
        del body["MATNR"]
        with pytest.raises(ValidationError) as exc_info:
            validate_transfer(body)
        assert exc_info.value.message == "Missing required fields: MATNR, QTY, Charg"
        assert exc_info.value.details == {"fields": ["MATNR", "QTY", "Charg"]}

    def test_empty_body_names_every_field(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_transfer({})
        assert exc_info.value.details["fields"] == list(LEGACY_TRANSFER_REQUIRED_FIELDS)


@pytest.mark.parametrize("body", [None, [], "text"])
def test_non_object_body_is_rejected(body):
    with pytest.raises(ValidationError) as exc_info:
        validate_transfer(body)
    assert exc_info.value.message == "Request body must be a JSON object"
