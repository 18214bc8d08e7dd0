# Overview: Pytest coverage for purchase-return bounds against the original purchase.

import pytest

from retailops.services import transaction_service
from retailops.services.return_validation_service import (
    InvalidReferenceError,
    InvalidReferenceTypeError,
    MissingReferenceError,
    ReturnQuantityExceededError,
    get_approved_return_quantities,
    validate_purchase_return,
)


def _return(purchase, variant, quantity, *, role="admin"):
    return transaction_service.create_transaction(
        "purchase_return",
        [{"variant_id": variant.id, "quantity": quantity}],
        performed_by="clerk",
        role=role,
        reference_transaction_id=purchase.id,
    )


class TestReturnBounds:
    def test_request_over_remaining_quantity_fails(self, db_session, make_variant, make_purchase):
        """Purchase 10, approved return 4: asking for 7 fails and reports 6 returnable."""
        variant = make_variant("RET-1", stock=0)
        purchase = make_purchase([{"variant_id": variant.id, "quantity": 10}])
        _return(purchase, variant, 4)

        with pytest.raises(ReturnQuantityExceededError) as exc:
            validate_purchase_return({
                "reference_transaction_id": purchase.id,
                "items": [{"variant_id": variant.id, "quantity": 7}],
            })

        violation = exc.value.violations[0]
        assert violation["requested"] == 7
        assert violation["original_quantity"] == 10
        assert violation["already_returned"] == 4
        assert violation["max_returnable"] == 6

    def test_request_for_remaining_quantity_passes(self, db_session, make_variant, make_purchase):
        variant = make_variant("RET-1", stock=0)
        purchase = make_purchase([{"variant_id": variant.id, "quantity": 10}], vendor_id=9)
        _return(purchase, variant, 4)

        result = validate_purchase_return({
            "reference_transaction_id": purchase.id,
            "items": [{"variant_id": variant.id, "quantity": 6}],
        })

        assert result["vendor_id"] == 9
        assert result["items"][0]["max_returnable"] == 6

    def test_pending_returns_do_not_count(self, db_session, make_variant, make_purchase):
        variant = make_variant("RET-1", stock=0)
        purchase = make_purchase([{"variant_id": variant.id, "quantity": 10}])
        pending = _return(purchase, variant, 8, role="staff")
        assert pending.status == "pending"

        assert get_approved_return_quantities(purchase.id) == {}
        validate_purchase_return({
            "reference_transaction_id": purchase.id,
            "items": [{"variant_id": variant.id, "quantity": 10}],
        })

    def test_rejected_returns_do_not_count(self, db_session, make_variant, make_purchase):
        variant = make_variant("RET-1", stock=0)
        purchase = make_purchase([{"variant_id": variant.id, "quantity": 5}])
        pending = _return(purchase, variant, 5, role="staff")
        transaction_service.reject_transaction(pending.id, rejected_by="manager", reason="Wrong vendor")

        validate_purchase_return({
            "reference_transaction_id": purchase.id,
            "items": [{"variant_id": variant.id, "quantity": 5}],
        })

    def test_exclude_transaction_id(self, db_session, make_variant, make_purchase):
        variant = make_variant("RET-1", stock=0)
        purchase = make_purchase([{"variant_id": variant.id, "quantity": 5}])
        approved = _return(purchase, variant, 5)

        assert get_approved_return_quantities(purchase.id) == {variant.id: 5}
        assert get_approved_return_quantities(purchase.id, exclude_transaction_id=approved.id) == {}

    def test_variant_not_on_purchase(self, db_session, make_variant, make_purchase):
        bought = make_variant("RET-1", stock=0)
        other = make_variant("RET-2", stock=5)
        purchase = make_purchase([{"variant_id": bought.id, "quantity": 5}])

        with pytest.raises(ReturnQuantityExceededError) as exc:
            validate_purchase_return({
                "reference_transaction_id": purchase.id,
                "items": [{"variant_id": other.id, "quantity": 1}],
            })
        assert exc.value.violations[0]["original_quantity"] == 0
        assert "not part of the original purchase" in str(exc.value)

    def test_all_violations_reported(self, db_session, make_variant, make_purchase):
        a = make_variant("RET-1", stock=0)
        b = make_variant("RET-2", stock=0)
        purchase = make_purchase([
            {"variant_id": a.id, "quantity": 2},
            {"variant_id": b.id, "quantity": 2},
        ])
        with pytest.raises(ReturnQuantityExceededError) as exc:
            validate_purchase_return({
                "reference_transaction_id": purchase.id,
                "items": [
                    {"variant_id": a.id, "quantity": -3},
                    {"variant_id": b.id, "quantity": 3},
                ],
            })
        assert {v["variant_id"] for v in exc.value.violations} == {a.id, b.id}


class TestReturnReference:
    def test_missing_reference(self, db_session):
        with pytest.raises(MissingReferenceError):
            validate_purchase_return({"items": [{"variant_id": 1, "quantity": 1}]})

    def test_unknown_reference(self, db_session):
        with pytest.raises(InvalidReferenceError):
            validate_purchase_return({
                "reference_transaction_id": 404,
                "items": [{"variant_id": 1, "quantity": 1}],
            })

    def test_reference_must_be_purchase(self, db_session, variant_a):
        damage = transaction_service.create_transaction(
            "damage",
            [{"variant_id": variant_a.id, "quantity": 1}],
            performed_by="clerk",
            role="staff",
            reason="Torn",
        )
        with pytest.raises(InvalidReferenceTypeError):
            validate_purchase_return({
                "reference_transaction_id": damage.id,
                "items": [{"variant_id": variant_a.id, "quantity": 1}],
            })

    def test_reference_must_be_approved(self, db_session, variant_a, make_purchase):
        purchase = make_purchase([{"variant_id": variant_a.id, "quantity": 5}])
        transaction_service.void_transaction(purchase.id, voided_by="admin", reason="Duplicate entry")

        with pytest.raises(InvalidReferenceError) as exc:
            validate_purchase_return({
                "reference_transaction_id": purchase.id,
                "items": [{"variant_id": variant_a.id, "quantity": 1}],
            })
        assert "voided" in str(exc.value)
