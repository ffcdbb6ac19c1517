"""Tests for order status mapping and the order aggregate."""

import pytest

from storefront.order.aggregate import (
    Decision,
    OrderAggregate,
    OrderItem,
    OrderStatus,
    map_provider_status,
)


class TestMapProviderStatus:
    def test_approved_is_paid(self):
        assert map_provider_status("approved") is OrderStatus.PAID

    @pytest.mark.parametrize(
        "provider_status", ["pending", "in_process", "authorized", "in_mediation"]
    )
    def test_in_flight_is_awaiting_payment(self, provider_status):
        assert map_provider_status(provider_status) is OrderStatus.AWAITING_PAYMENT

    @pytest.mark.parametrize(
        "provider_status", ["rejected", "cancelled", "refunded", "charged_back"]
    )
    def test_failures_cancel(self, provider_status):
        assert map_provider_status(provider_status) is OrderStatus.CANCELLED

    def test_unknown_status_waits(self):
        assert map_provider_status("something_new") is OrderStatus.AWAITING_PAYMENT
        assert map_provider_status(None) is OrderStatus.AWAITING_PAYMENT


def _order(status):
    agg = OrderAggregate()
    agg.id = "order-1"
    agg.status = status
    return agg


class TestDecide:
    @pytest.mark.parametrize("status", [
        OrderStatus.PAID, OrderStatus.PICKING, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
    ])
    def test_paid_orders_are_never_touched(self, status):
        agg = _order(status)
        assert agg.is_paid
        assert agg.decide(OrderStatus.PAID) is Decision.ALREADY_PAID
        assert agg.decide(OrderStatus.CANCELLED) is Decision.ALREADY_PAID

    def test_cancelled_then_approved_needs_review(self):
        assert _order(OrderStatus.CANCELLED).decide(OrderStatus.PAID) is Decision.MANUAL_REVIEW

    def test_cancelled_ignores_other_statuses(self):
        agg = _order(OrderStatus.CANCELLED)
        assert agg.decide(OrderStatus.AWAITING_PAYMENT) is Decision.ALREADY_CANCELLED
        assert agg.decide(OrderStatus.CANCELLED) is Decision.ALREADY_CANCELLED

    @pytest.mark.parametrize("status", [OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT])
    def test_open_orders_apply(self, status):
        assert _order(status).decide(OrderStatus.PAID) is Decision.APPLY


class TestOrderAggregate:
    def test_apply_payment_created(self):
        agg = _order(OrderStatus.CREATED)
        agg.apply_payment_created("123", "pix")
        assert agg.status is OrderStatus.AWAITING_PAYMENT
        assert agg.payment_id == "123"
        assert agg.payment_method == "pix"

    def test_apply_payment_status(self):
        agg = _order(OrderStatus.AWAITING_PAYMENT)
        agg.apply_payment_status(OrderStatus.PAID, "123", "visa")
        assert agg.is_paid
        assert agg.payment_method == "visa"

    def test_line_total_rounds_to_cents(self):
        item = OrderItem(
            product_id="p", product_name="Meia", size="U", quantity=3, unit_price=19.99
        )
        assert item.line_total == 59.97

    def test_to_dict_includes_items(self):
        agg = _order(OrderStatus.CREATED)
        agg.items = [OrderItem(
            product_id="p", product_name="Meia", size="U", quantity=2, unit_price=10.0
        )]
        data = agg.to_dict()
        assert data["status"] == "criado"
        assert data["items"][0]["line_total"] == 20.0
