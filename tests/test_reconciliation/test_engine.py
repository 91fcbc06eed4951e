"""
Tests for the order service.

These tests run whole flows against the temporary database with fake
collaborators: create an order, put a transfer on the feed, check it.
"""

import threading
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from conftest import TEST_CODES, WALLET_ADDRESS, RecordingTransport
from reconciliation.engine import OrderService, generate_order_id
from reconciliation.payment_gateway import PaymentGatewayClient
from shared.errors import NotFoundError, PaymentGatewayError, SimulatedPaymentDisabledError, ValidationError
from shared.models import NotificationSettings, OrderKind, TextReplace

ALL_TRANSPORTS = dict(
    server_chan_key="SCTKEY",
    email_host="smtp.example.com",
    email_user="shop@example.com",
    email_pass="secret",
    email_to="owner@example.com",
)


def create_subscription(service: OrderService, **overrides):
    fields = dict(
        source_channel="@source",
        target_channel="@target",
        text_replaces=[TextReplace(from_="@source", to="@target")],
        keywords="ads",
        telegram_id="424242",
    )
    fields.update(overrides)
    return service.create_subscription_order(**fields)


class TestGenerateOrderId:
    def test_prefix_and_uniqueness(self, start_time):
        ids = {generate_order_id("C", start_time) for _ in range(50)}

        assert len(ids) == 50
        assert all(i.startswith("C1731622400000") for i in ids)


class TestCardScenario:
    """Base price 199, amount 199.037, transfer two minutes later."""

    def test_delivers_and_decrements_once(self, service, product, feed, clock, inventory):
        order = service.create_card_order(product.id, "session-1")
        assert order.amount == Decimal("199.037")
        assert order.wallet_address == WALLET_ADDRESS

        feed.add(Decimal("199.037"), at=order.created_at + timedelta(minutes=2), to=WALLET_ADDRESS)
        clock.advance(minutes=2, seconds=5)

        result = service.check_order(order.id)

        assert result.status == "delivered"
        assert result.code == TEST_CODES[0]
        assert inventory.get_product(product.id).available_count == 4

    def test_pending_until_transfer_appears(self, service, product, feed, clock):
        order = service.create_card_order(product.id, "session-1")

        assert service.check_order(order.id).status == "pending"

        feed.add(Decimal("199.037"), at=order.created_at + timedelta(minutes=1))
        clock.advance(minutes=1)
        assert service.check_order(order.id).status == "delivered"
        assert feed.calls == 2

    def test_repeat_checks_do_not_touch_feed(self, service, product, feed, inventory):
        order = service.create_card_order(product.id, "session-1")
        feed.add(Decimal("199.037"), at=order.created_at)

        first = service.check_order(order.id)
        second = service.check_order(order.id)

        assert first == second
        assert feed.calls == 1
        assert inventory.get_product(product.id).available_count == 4

    def test_wrong_amount_stays_pending(self, service, product, feed):
        order = service.create_card_order(product.id, "session-1")
        feed.add(Decimal("199"), at=order.created_at)
        feed.add(Decimal("199.038"), at=order.created_at)

        assert service.check_order(order.id).status == "pending"

    def test_sold_out_at_delivery_stays_pending(self, service, inventory, feed, order_store):
        single = inventory.add_product("Single", Decimal("10"), ["only-code"])
        order = service.create_card_order(single.id, "session-1")
        with service.db.begin() as conn:
            inventory.pop_code(conn, single.id, "someone-else")
        feed.add(order.amount, at=order.created_at)

        result = service.check_order(order.id)

        assert result.status == "pending"
        assert result.code is None
        assert order_store.get(order.id).status == "pending"

    def test_past_window_skips_feed(self, service, product, feed, clock):
        order = service.create_card_order(product.id, "session-1")
        clock.advance(minutes=16)

        assert service.check_order(order.id).status == "pending"
        assert feed.calls == 0


class TestCardCreation:
    """Validation and the one-order-per-session rule."""

    def test_session_reuses_live_order(self, service, product, payment_transport):
        first = service.create_card_order(product.id, "session-1")
        second = service.create_card_order(product.id, "session-1")

        assert second.id == first.id
        assert len(payment_transport.requests) == 1

    def test_new_order_after_window(self, service, product, clock):
        first = service.create_card_order(product.id, "session-1")
        clock.advance(minutes=11)

        second = service.create_card_order(str(product.id), "session-1")

        assert second.id != first.id

    def test_find_session_order(self, service, product):
        order = service.create_card_order(product.id, "session-1")

        assert service.find_session_order("session-1").id == order.id
        assert service.find_session_order("session-2") is None

    @pytest.mark.parametrize("product_id,session_id", [(None, "s"), ("", "s"), (1, ""), ("abc", "s")])
    def test_invalid_input(self, service, product, product_id, session_id):
        with pytest.raises(ValidationError):
            service.create_card_order(product_id, session_id)

    def test_unknown_product(self, service):
        with pytest.raises(NotFoundError):
            service.create_card_order(999, "s")

    def test_sold_out_product(self, service, inventory):
        empty = inventory.add_product("Empty", Decimal("10"), [])

        with pytest.raises(ValidationError):
            service.create_card_order(empty.id, "s")

    def test_gateway_failure_stores_nothing(self, service, product, config):
        transport = RecordingTransport(lambda r: httpx.Response(200, json={"status_code": 500, "message": "down"}))
        service.gateway = PaymentGatewayClient(
            config.payment_api_url, "tok", config.notify_url, config.redirect_url, client=transport.client()
        )

        with pytest.raises(PaymentGatewayError):
            service.create_card_order(product.id, "session-1")

        assert service.find_session_order("session-1") is None

    def test_keeps_own_amount_when_gateway_quotes_another(self, service, product, config):
        transport = RecordingTransport(lambda r: httpx.Response(200, json={
            "status_code": 200,
            "data": {"token": WALLET_ADDRESS, "payment_url": "", "actual_amount": 199.01},
        }))
        service.gateway = PaymentGatewayClient(
            config.payment_api_url, "tok", config.notify_url, config.redirect_url, client=transport.client()
        )

        order = service.create_card_order(product.id, "session-1")

        assert order.amount == Decimal("199.037")
        assert service.get_order(order.id).amount == Decimal("199.037")

    def test_avoids_amounts_of_live_orders(self, service, product):
        draws = iter([37, 37, 64])
        service.amounts._randint = lambda low, high: next(draws)

        first = service.create_card_order(product.id, "session-1")
        second = service.create_card_order(product.id, "session-2")

        assert first.amount == Decimal("199.037")
        assert second.amount == Decimal("199.064")


class TestSubscriptionScenario:
    """Forwarding subscription orders."""

    def test_paid_and_logged(self, service, feed, config):
        order = create_subscription(service)
        assert order.amount == Decimal("19.937")
        assert order.id.startswith("TG")

        feed.add(Decimal("19.937"), at=order.created_at + timedelta(minutes=3))
        result = service.check_order(order.id, kind=OrderKind.SUBSCRIPTION)

        assert result.status == "paid"
        assert result.code is None
        stored = service.get_order(order.id)
        assert stored.expires_at == order.created_at + timedelta(days=31)
        with open(config.activation_log_path, encoding="utf-8") as f:
            log = f.read()
        assert order.id in log
        assert "@source -> @target" in log

    def test_requires_a_contact(self, service):
        with pytest.raises(ValidationError):
            create_subscription(service, telegram_id="", email="")

    def test_requires_channels(self, service):
        with pytest.raises(ValidationError):
            create_subscription(service, source_channel="  ")

    def test_email_only_contact(self, service):
        order = create_subscription(service, telegram_id="", email="me@example.com")
        assert order.subscription.email == "me@example.com"

    def test_check_with_wrong_kind(self, service, product):
        order = service.create_card_order(product.id, "session-1")

        with pytest.raises(NotFoundError):
            service.check_order(order.id, kind=OrderKind.SUBSCRIPTION)


class TestNotifications:
    """Notifications triggered by the order flow."""

    def test_paid_toggle_off_sends_nothing(self, service, product, feed, settings_store, push_transport, smtp_factory):
        settings_store.save(NotificationSettings(**ALL_TRANSPORTS, notify_on_create=False, notify_on_paid=False))
        order = service.create_card_order(product.id, "session-1")
        feed.add(order.amount, at=order.created_at)

        assert service.check_order(order.id).status == "delivered"
        service.dispatcher.shutdown(wait=True)

        assert push_transport.requests == []
        assert smtp_factory.connections == []

    def test_created_and_paid_notifications(self, service, product, feed, settings_store, push_transport, smtp_factory):
        settings_store.save(NotificationSettings(**ALL_TRANSPORTS, notify_on_create=True, notify_on_paid=True))
        order = service.create_card_order(product.id, "session-1")
        feed.add(order.amount, at=order.created_at)
        service.check_order(order.id)
        service.check_order(order.id)
        service.dispatcher.shutdown(wait=True)

        assert len(push_transport.requests) == 2
        assert sorted(m["Subject"] for m in smtp_factory.sent) == [f"[New order] {order.id}", f"[Paid] {order.id}"]


class TestExpiry:
    def test_sweep_then_check(self, service, product, feed, clock):
        stale = service.create_card_order(product.id, "session-1")
        clock.advance(minutes=16)
        fresh = service.create_card_order(product.id, "session-2")

        assert service.sweep_expired() == 1
        assert service.check_order(stale.id).status == "expired"
        assert service.get_order(fresh.id).status == "pending"
        assert feed.calls == 0


class TestSimulatedPayment:
    def test_disabled_by_default(self, service, product):
        order = service.create_card_order(product.id, "session-1")

        with pytest.raises(SimulatedPaymentDisabledError):
            service.simulate_payment(order.id)

    def test_delivers_through_coordinator(self, service, product, config, inventory):
        config.test_mode = True
        order = service.create_card_order(product.id, "session-1")

        result = service.simulate_payment(order.id)

        assert result.status == "delivered"
        assert result.code == TEST_CODES[0]
        assert service.get_order(order.id).payment_tx.startswith("TEST_TX_")
        assert inventory.get_product(product.id).available_count == 4

    def test_unknown_order(self, service, config):
        config.test_mode = True

        with pytest.raises(NotFoundError):
            service.simulate_payment("nope")

    def test_subscription_paid_logged_and_notified(self, service, config, settings_store, push_transport):
        config.test_mode = True
        settings_store.save(NotificationSettings(server_chan_key="SCTKEY", notify_on_paid=True))
        order = create_subscription(service)

        result = service.simulate_payment(order.id, kind=OrderKind.SUBSCRIPTION)
        service.dispatcher.shutdown(wait=True)

        assert result.status == "paid"
        assert result.code is None
        stored = service.get_order(order.id)
        assert stored.payment_tx.startswith("TEST_TX_")
        assert stored.expires_at == order.created_at + timedelta(days=31)
        with open(config.activation_log_path, encoding="utf-8") as f:
            log = f.read()
        assert f"Order: {order.id}" in log
        assert "Source channel: @source" in log
        assert "Target channel: @target" in log
        assert len(push_transport.requests) == 1

    def test_wrong_kind_is_not_found(self, service, product, config):
        config.test_mode = True
        order = service.create_card_order(product.id, "session-1")

        with pytest.raises(NotFoundError):
            service.simulate_payment(order.id, kind=OrderKind.SUBSCRIPTION)
        assert service.get_order(order.id).status == "pending"


class TestConcurrentChecks:
    """Concurrent polls of the same order through the whole check flow."""

    @pytest.mark.parametrize("workers", [2, 8])
    def test_one_delivery_one_notification(self, service, product, feed, settings_store, inventory, push_transport, workers):
        settings_store.save(NotificationSettings(server_chan_key="SCTKEY", notify_on_paid=True))
        order = service.create_card_order(product.id, "session-1")
        feed.add(order.amount, at=order.created_at + timedelta(minutes=1))
        barrier = threading.Barrier(workers)
        results = []
        errors = []

        def poll():
            barrier.wait()
            try:
                results.append(service.check_order(order.id))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=poll) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        service.dispatcher.shutdown(wait=True)

        assert errors == []
        assert [r.status for r in results] == ["delivered"] * workers
        assert {r.code for r in results} == {TEST_CODES[0]}
        assert inventory.get_product(product.id).available_count == 4
        assert len(push_transport.requests) == 1


class TestNotificationFailures:
    def test_delivery_survives_stopped_dispatcher(self, service, product, feed, settings_store):
        settings_store.save(NotificationSettings(server_chan_key="SCTKEY", notify_on_paid=True))
        order = service.create_card_order(product.id, "session-1")
        feed.add(order.amount, at=order.created_at)
        service.dispatcher.shutdown(wait=True)

        result = service.check_order(order.id)

        assert result.status == "delivered"
        assert result.code == TEST_CODES[0]

    def test_channels_use_configured_timeout(self, config, db, settings_store):
        config.notification_timeout_seconds = 2.5
        service = OrderService(config=config, db=db, settings_store=settings_store)

        try:
            assert service.dispatcher.channels.email.timeout == 2.5
            assert service.dispatcher.channels.push.client.timeout == httpx.Timeout(2.5)
        finally:
            service.shutdown()
