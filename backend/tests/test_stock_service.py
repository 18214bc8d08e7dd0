# Overview: Pytest coverage for stock reservation, confirmation, restore and manual adjustments.

"""
Stock Ledger Tests

Verifies:
- availability checks report every short line
- batch reservation is all-or-nothing
- per-line reservation keeps earlier lines when a later one fails
- confirmation moves units out of both counters (available unchanged)
- restore releases reservations or puts consumed units back, line by line
- manual adjustments never drive available stock negative
"""

import pytest
from sqlalchemy import update

from retailops.models import OrderItem, ProductVariant, StockMovement
from retailops.services import stock_service
from retailops.services.stock_service import InsufficientStockError
from retailops.validation import NotFoundError, ValidationError


def _counters(variant):
    return variant.current_stock, variant.reserved_stock, variant.available_stock


class TestCheckStock:
    def test_reports_every_short_line(self, db_session, make_variant):
        a = make_variant("A", stock=5)
        b = make_variant("B", stock=0)
        c = make_variant("C", stock=2, reserved=2)

        result = stock_service.check_stock([
            {"variant_id": a.id, "quantity": 5},
            {"variant_id": b.id, "quantity": 1},
            {"variant_id": c.id, "quantity": 1},
        ])

        assert result["is_available"] is False
        assert [u["sku"] for u in result["unavailable"]] == ["B", "C"]
        assert result["unavailable"][1]["available"] == 0

    def test_duplicate_lines_are_summed(self, db_session, make_variant):
        a = make_variant("A", stock=5)
        result = stock_service.check_stock([
            {"variant_id": a.id, "quantity": 3},
            {"variant_id": a.id, "quantity": 3},
        ])
        assert result["is_available"] is False
        assert result["unavailable"][0]["requested"] == 6

    def test_unknown_variant_is_unavailable(self, db_session):
        result = stock_service.check_stock([{"variant_id": 999, "quantity": 1}])
        assert result["is_available"] is False
        assert result["unavailable"][0]["error"] == "Variant not found"

    def test_rejects_non_integer_quantity(self, db_session, variant_a):
        with pytest.raises(ValidationError):
            stock_service.check_stock([{"variant_id": variant_a.id, "quantity": "2.5"}])

    def test_get_available_stock(self, db_session, make_variant):
        a = make_variant("A", stock=7, reserved=3)
        assert stock_service.get_available_stock(a.id) == 4
        with pytest.raises(NotFoundError):
            stock_service.get_available_stock(12345)


class TestBatchReservation:
    def test_all_or_nothing(self, db_session, make_variant, fresh_variant):
        """A has exactly enough, B has none: neither is reserved and B is reported."""
        a = make_variant("A", stock=5)
        b = make_variant("B", stock=0)

        with pytest.raises(InsufficientStockError) as exc:
            stock_service.deduct_stock_batch_atomic([
                {"variant_id": a.id, "quantity": 5},
                {"variant_id": b.id, "quantity": 1},
            ])

        assert exc.value.sku == "B"
        assert exc.value.requested == 1
        assert exc.value.available == 0
        assert [f["sku"] for f in exc.value.failures] == ["B"]
        assert _counters(fresh_variant(a.id)) == (5, 0, 5)
        assert db_session.query(StockMovement).count() == 0

    def test_failures_list_every_short_line(self, db_session, make_variant):
        a = make_variant("A", stock=1)
        b = make_variant("B", stock=1)
        with pytest.raises(InsufficientStockError) as exc:
            stock_service.deduct_stock_batch_atomic([
                {"variant_id": a.id, "quantity": 2},
                {"variant_id": b.id, "quantity": 3},
            ])
        assert {f["sku"] for f in exc.value.failures} == {"A", "B"}
        assert "2 lines failed" in str(exc.value)

    def test_success_reserves_and_records(self, db_session, variant_a, variant_b, fresh_variant):
        results = stock_service.deduct_stock_batch_atomic([
            {"variant_id": variant_a.id, "quantity": 3},
            {"variant_id": variant_b.id, "quantity": 10},
        ])

        assert all(r["success"] for r in results)
        assert _counters(fresh_variant(variant_a.id)) == (10, 3, 7)
        assert _counters(fresh_variant(variant_b.id)) == (10, 10, 0)

        movement = stock_service.get_stock_movements(variant_a.id)[0]
        assert movement.movement_type == "reserved"
        assert (movement.reserved_before, movement.reserved_after) == (0, 3)
        assert (movement.stock_before, movement.stock_after) == (10, 10)

    def test_exact_available_quantity_succeeds(self, db_session, make_variant, fresh_variant):
        a = make_variant("A", stock=4, reserved=1)
        stock_service.deduct_stock_batch_atomic([{"variant_id": a.id, "quantity": 3}])
        assert fresh_variant(a.id).available_stock == 0

    def test_unknown_variant_fails_batch(self, db_session, variant_a, fresh_variant):
        with pytest.raises(InsufficientStockError) as exc:
            stock_service.deduct_stock_batch_atomic([
                {"variant_id": variant_a.id, "quantity": 1},
                {"variant_id": 4242, "quantity": 1},
            ])
        assert exc.value.failures[0]["error"] == "Variant not found"
        assert fresh_variant(variant_a.id).reserved_stock == 0


class TestPerLineReservation:
    def test_earlier_lines_stay_reserved(self, db_session, make_variant, fresh_variant):
        """Per-line reservation commits each line; a later failure does not undo it."""
        a = make_variant("A", stock=5)
        b = make_variant("B", stock=0)

        with pytest.raises(InsufficientStockError) as exc:
            stock_service.deduct_stock_atomic([
                {"variant_id": a.id, "quantity": 5},
                {"variant_id": b.id, "quantity": 1},
            ])

        assert exc.value.sku == "B"
        assert _counters(fresh_variant(a.id)) == (5, 5, 0)
        assert _counters(fresh_variant(b.id)) == (0, 0, 0)

    def test_missing_variant_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            stock_service.deduct_stock_atomic([{"variant_id": 777, "quantity": 1}])

    def test_second_caller_cannot_take_reserved_units(self, db_session, make_variant, fresh_variant):
        a = make_variant("A", stock=1)
        stock_service.deduct_stock_atomic([{"variant_id": a.id, "quantity": 1}])
        with pytest.raises(InsufficientStockError):
            stock_service.deduct_stock_atomic([{"variant_id": a.id, "quantity": 1}])
        assert _counters(fresh_variant(a.id)) == (1, 1, 0)

    def test_short_line_of_shared_variant_stays_unreserved(self, db_session, variant_a, make_order, advance, fresh_variant):
        """A later short line must not inherit the reserved state of an earlier line of the same variant."""
        holder = make_order([{"variant_id": variant_a.id, "quantity": 5}])
        advance(holder.id, "converted")
        order = make_order([
            {"variant_id": variant_a.id, "quantity": 2},
            {"variant_id": variant_a.id, "quantity": 4},
        ])

        with pytest.raises(InsufficientStockError):
            stock_service.deduct_stock_atomic([
                {"variant_id": variant_a.id, "quantity": 2},
                {"variant_id": variant_a.id, "quantity": 4},
            ], order.id)

        states = [
            state for (state,) in db_session.query(OrderItem.stock_state)
            .filter_by(order_id=order.id).order_by(OrderItem.id)
        ]
        assert states == ["reserved", "none"]
        assert _counters(fresh_variant(variant_a.id)) == (10, 7, 3)

        results = stock_service.restore_stock_for_order_atomic(order.id)

        assert [r["quantity"] for r in results] == [2]
        assert _counters(fresh_variant(variant_a.id)) == (10, 5, 5)

    def test_order_item_id_picks_the_line(self, db_session, variant_a, make_order):
        order = make_order([
            {"variant_id": variant_a.id, "quantity": 3},
            {"variant_id": variant_a.id, "quantity": 3},
        ])
        first_id, second_id = [
            item_id for (item_id,) in db_session.query(OrderItem.id)
            .filter_by(order_id=order.id).order_by(OrderItem.id)
        ]

        results = stock_service.deduct_stock_atomic(
            [{"variant_id": variant_a.id, "quantity": 3, "order_item_id": second_id}], order.id,
        )

        assert results[0]["order_item_id"] == second_id
        db_session.expire_all()
        assert db_session.get(OrderItem, first_id).stock_state == "none"
        assert db_session.get(OrderItem, second_id).stock_state == "reserved"


class TestOrderLifecycle:
    def test_confirm_keeps_available_unchanged(self, db_session, variant_a, make_order, advance, fresh_variant):
        order = make_order([{"variant_id": variant_a.id, "quantity": 4}])
        advance(order.id, "converted")
        assert _counters(fresh_variant(variant_a.id)) == (10, 4, 6)

        results = stock_service.confirm_stock_deduction(order.id)

        assert [r["movement_type"] for r in results] == ["confirmed"]
        assert _counters(fresh_variant(variant_a.id)) == (6, 0, 6)
        item = db_session.query(OrderItem).filter_by(order_id=order.id).one()
        assert item.stock_state == "consumed"

    def test_confirm_twice_is_a_no_op(self, db_session, variant_a, make_order, advance, fresh_variant):
        order = make_order([{"variant_id": variant_a.id, "quantity": 2}])
        advance(order.id, "converted")
        stock_service.confirm_stock_deduction(order.id)
        assert stock_service.confirm_stock_deduction(order.id) == []
        assert _counters(fresh_variant(variant_a.id)) == (8, 0, 8)

    def test_restore_releases_reservation(self, db_session, variant_a, make_order, advance, fresh_variant):
        order = make_order([{"variant_id": variant_a.id, "quantity": 3}])
        advance(order.id, "converted")

        results = stock_service.restore_stock_for_order_atomic(order.id, "Customer cancelled")

        assert results[0]["movement_type"] == "released"
        assert _counters(fresh_variant(variant_a.id)) == (10, 0, 10)

    def test_restore_returns_consumed_units(self, db_session, variant_a, make_order, advance, fresh_variant):
        order = make_order([{"variant_id": variant_a.id, "quantity": 3}])
        advance(order.id, "converted", "packed")
        assert _counters(fresh_variant(variant_a.id)) == (7, 0, 7)

        results = stock_service.restore_stock_for_order_atomic(order.id)

        assert results[0]["movement_type"] == "restored"
        assert _counters(fresh_variant(variant_a.id)) == (10, 0, 10)

    def test_restore_is_not_repeated(self, db_session, variant_a, make_order, advance, fresh_variant):
        order = make_order([{"variant_id": variant_a.id, "quantity": 3}])
        advance(order.id, "converted", "packed")
        stock_service.restore_stock_for_order_atomic(order.id)
        assert stock_service.restore_stock_for_order_atomic(order.id) == []
        assert fresh_variant(variant_a.id).current_stock == 10

    def test_restore_continues_past_failing_line(
        self, db_session, variant_a, variant_b, make_order, advance, fresh_variant
    ):
        """One line whose reservation drifted is reported; the other line is still released."""
        order = make_order([
            {"variant_id": variant_a.id, "quantity": 2},
            {"variant_id": variant_b.id, "quantity": 3},
        ])
        advance(order.id, "converted")
        db_session.execute(
            update(ProductVariant).where(ProductVariant.id == variant_a.id).values(reserved_stock=0)
        )
        db_session.commit()

        results = stock_service.restore_stock_for_order_atomic(order.id)

        by_variant = {r["variant_id"]: r for r in results}
        assert by_variant[variant_a.id]["success"] is False
        assert "cannot take back" in by_variant[variant_a.id]["error"]
        assert by_variant[variant_b.id]["success"] is True
        assert _counters(fresh_variant(variant_b.id)) == (10, 0, 10)

        states = {
            item.variant_id: item.stock_state
            for item in db_session.query(OrderItem).filter_by(order_id=order.id)
        }
        assert states == {variant_a.id: "reserved", variant_b.id: "restored"}


class TestAdjustStock:
    def test_inward_adds_stock(self, db_session, variant_a, fresh_variant):
        result = stock_service.adjust_stock(variant_a.id, "inward", 5)
        assert (result["stock_before"], result["stock_after"]) == (10, 15)
        assert fresh_variant(variant_a.id).current_stock == 15

    def test_damage_requires_reason(self, db_session, variant_a):
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(variant_a.id, "damage", 1)

    def test_damage_cannot_take_reserved_units(self, db_session, make_variant, fresh_variant):
        a = make_variant("A", stock=5, reserved=4)
        with pytest.raises(InsufficientStockError) as exc:
            stock_service.adjust_stock(a.id, "damage", 2, "Water damage")
        assert exc.value.available == 1
        assert _counters(fresh_variant(a.id)) == (5, 4, 1)

    def test_negative_adjustment(self, db_session, variant_a, fresh_variant):
        result = stock_service.adjust_stock(variant_a.id, "adjustment", -3, "Cycle count")
        assert result["quantity"] == -3
        assert fresh_variant(variant_a.id).current_stock == 7

    def test_outward_rejects_negative_quantity(self, db_session, variant_a):
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(variant_a.id, "outward", -1)

    def test_unknown_movement_type(self, db_session, variant_a):
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(variant_a.id, "teleport", 1)

    def test_missing_variant(self, db_session):
        with pytest.raises(NotFoundError):
            stock_service.adjust_stock(999, "inward", 1)
