# Overview: Pytest coverage for the orders CLI output (status labels and next actions).

from retailops.models import Order


def _invoke(app, *args):
    runner = app.test_cli_runner()
    return runner.invoke(args=list(args))


class TestOrdersTransitionCommand:
    def test_prints_label_and_next_actions(self, app, db_session, variant_a, make_order):
        order = make_order([{"variant_id": variant_a.id, "quantity": 1}])

        result = _invoke(app, "orders", "transition", str(order.id), "converted")

        assert result.exit_code == 0, result.output
        assert f"PASS {order.order_number}: intake -> converted [Converted] (stock: reserve)" in result.output
        lines = [line.split() for line in result.output.splitlines() if line.strip().startswith("next:")]
        assert [line[1] for line in lines] == ["cancelled", "packed"]
        assert "Cancel Order *" in result.output
        assert "Mark Packed" in result.output

    def test_terminal_status(self, app, db_session, variant_a, make_order):
        order = make_order([{"variant_id": variant_a.id, "quantity": 1}])

        result = _invoke(
            app, "orders", "transition", str(order.id), "rejected", "--set", "rejection_reason=Fake order",
        )

        assert result.exit_code == 0, result.output
        assert "[Rejected]" in result.output
        assert "next: (terminal)" in result.output

    def test_short_stock_is_reported(self, app, db_session, make_variant, make_order):
        scarce = make_variant("SCARCE", stock=1)
        order = make_order([{"variant_id": scarce.id, "quantity": 2}])

        result = _invoke(app, "orders", "transition", str(order.id), "converted")

        assert result.exit_code == 1
        assert "Insufficient stock" in result.output
        db_session.expire_all()
        assert db_session.get(Order, order.id).status == "intake"
