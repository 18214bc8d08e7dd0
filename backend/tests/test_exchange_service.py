# Overview: Pytest coverage for exchange/refund child orders and their link notes.

import pytest

from retailops.models import OrderActivity
from retailops.services import activity_service, exchange_service, order_service
from retailops.validation import NotFoundError, ValidationError


@pytest.fixture
def parent_order(db_session, variant_a, make_order):
    """Parent with 10 units of variant A (price 1000)."""
    return make_order([{"variant_id": variant_a.id, "quantity": 10}])


def _link_notes(db_session, order_id):
    return (
        db_session.query(OrderActivity)
        .filter_by(order_id=order_id, activity_type="exchange_link")
        .all()
    )


class TestClassification:
    def test_returned_only_is_refund(self):
        assert exchange_service.classify_exchange_type([{"quantity": -5}]) == "refund"

    def test_mixed_lines_are_exchange(self):
        assert exchange_service.classify_exchange_type([{"quantity": -3}, {"quantity": 2}]) == "exchange"

    def test_new_items_only_is_exchange(self):
        assert exchange_service.classify_exchange_type([{"quantity": 1}]) == "exchange"

    def test_summary_amounts(self):
        summary = exchange_service.summarize_exchange(4, [
            [{"quantity": -2, "unit_price_cents": 500}],
            [{"quantity": 1, "unit_price_cents": 800}],
        ])
        assert summary["return_amount_cents"] == 1000
        assert summary["new_amount_cents"] == 800
        assert summary["net_amount_cents"] == -200
        assert summary["is_partial_return"] is True

    def test_full_return(self):
        summary = exchange_service.summarize_exchange(3, [[{"quantity": -3}]])
        assert summary["is_full_return"] is True
        assert summary["is_partial_return"] is False
        assert summary["has_new_items"] is False


class TestRelatedOrders:
    def test_partial_exchange_summary(self, db_session, parent_order, variant_a, variant_b):
        """Parent of 10 with a child returning 3 and adding 2."""
        child, _ = order_service.create_child_order(parent_order.id, [
            {"variant_id": variant_a.id, "quantity": -3},
            {"variant_id": variant_b.id, "quantity": 2},
        ])

        related = exchange_service.get_related_orders(parent_order.id)

        summary = related["exchange_summary"]
        assert summary["parent_total_items"] == 10
        assert summary["returned_items_count"] == 3
        assert summary["new_items_count"] == 2
        assert summary["is_partial_return"] is True
        assert summary["is_full_return"] is False
        assert related["has_children"] is True
        assert related["has_parent"] is False
        assert related["child_orders"][0]["id"] == child.id
        assert related["child_orders"][0]["exchange_type"] == "exchange"
        assert [i["quantity"] for i in related["returned_items"]] == [-3]

    def test_child_sees_parent(self, db_session, parent_order, variant_a):
        child, _ = order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -5}])

        related = exchange_service.get_related_orders(child.id)

        assert related["has_parent"] is True
        assert related["parent_order"]["id"] == parent_order.id
        assert related["parent_order"]["item_count"] == 10
        assert related["exchange_summary"] is None

    def test_refund_child(self, db_session, parent_order, variant_a):
        child, _ = order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -5}])
        related = exchange_service.get_related_orders(parent_order.id)
        assert related["child_orders"][0]["exchange_type"] == "refund"
        assert child.parent_order_id == parent_order.id
        assert child.fulfillment_type == parent_order.fulfillment_type

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            exchange_service.get_related_orders(31337)


class TestChildOrderRules:
    def test_child_cannot_have_children(self, db_session, parent_order, variant_a):
        child, _ = order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -1}])
        with pytest.raises(ValidationError):
            order_service.create_child_order(child.id, [{"variant_id": variant_a.id, "quantity": -1}])

    def test_cannot_return_more_than_sold(self, db_session, parent_order, variant_a):
        with pytest.raises(ValidationError):
            order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -11}])

    def test_earlier_children_reduce_returnable(self, db_session, parent_order, variant_a):
        order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -7}])
        with pytest.raises(ValidationError):
            order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -4}])
        order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -3}])

    def test_cannot_return_variant_not_on_parent(self, db_session, parent_order, variant_b):
        with pytest.raises(ValidationError):
            order_service.create_child_order(parent_order.id, [{"variant_id": variant_b.id, "quantity": -1}])

    def test_returned_lines_never_touch_stock(self, db_session, parent_order, variant_a, variant_b, advance, fresh_variant):
        child, _ = order_service.create_child_order(parent_order.id, [
            {"variant_id": variant_a.id, "quantity": -2},
            {"variant_id": variant_b.id, "quantity": 1},
        ])
        advance(child.id, "converted")
        assert fresh_variant(variant_a.id).reserved_stock == 0
        assert fresh_variant(variant_b.id).reserved_stock == 1


class TestLinkNotes:
    def test_notes_written_on_both_sides(self, db_session, parent_order, variant_a):
        child, results = order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -2}])

        assert [r["target"] for r in results] == ["child", "parent"]
        assert all(r["success"] for r in results)

        parent_note = _link_notes(db_session, parent_order.id)[0]
        child_note = _link_notes(db_session, child.id)[0]
        assert child.order_number in parent_note.message
        assert parent_order.order_number in child_note.message
        assert parent_note.metadata_json["exchange_type"] == "refund"

    def test_one_side_failing_does_not_block_other(self, db_session, parent_order, variant_a, monkeypatch):
        real_add_activity = activity_service.add_activity
        parent_id = parent_order.id

        def flaky_add_activity(order_id, activity_type, message, **kwargs):
            # Child side of the link fails; everything else goes through.
            if activity_type == activity_service.ACTIVITY_EXCHANGE_LINK and order_id != parent_id:
                raise RuntimeError("timeline store unavailable")
            return real_add_activity(order_id, activity_type, message, **kwargs)

        monkeypatch.setattr(activity_service, "add_activity", flaky_add_activity)

        child, results = order_service.create_child_order(parent_order.id, [{"variant_id": variant_a.id, "quantity": -1}])

        by_target = {r["target"]: r for r in results}
        assert by_target["child"]["success"] is False
        assert "timeline store unavailable" in by_target["child"]["error"]
        assert by_target["parent"]["success"] is True
        assert _link_notes(db_session, child.id) == []
        assert len(_link_notes(db_session, parent_order.id)) == 1

    def test_invalid_exchange_type(self, db_session, parent_order):
        with pytest.raises(ValidationError):
            exchange_service.log_exchange_link(parent_order.id, parent_order.id, "swap")
