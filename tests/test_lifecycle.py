"""Tests for the order state machine."""

import pytest

from errors import ConflictError, OrderNotCancellableError
from schemas.orders import OrderStatus, PaymentStatus
from services import lifecycle
from services.lifecycle import (
    TERMINAL_PAYMENT_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    VALID_STATE_PAIRS,
    Trigger,
)


class TestStatePairs:
    def test_known_pairs(self):
        assert lifecycle.is_valid_pair(OrderStatus.PENDING, PaymentStatus.PENDING)
        assert lifecycle.is_valid_pair(OrderStatus.PROCESSING, PaymentStatus.PAID)
        assert lifecycle.is_valid_pair(OrderStatus.SHIPPED, PaymentStatus.PARTIALLY_REFUNDED)
        assert lifecycle.is_valid_pair(OrderStatus.CANCELLED, PaymentStatus.REFUNDED)

    def test_impossible_pairs(self):
        assert not lifecycle.is_valid_pair(OrderStatus.PENDING, PaymentStatus.PAID)
        assert not lifecycle.is_valid_pair(OrderStatus.PROCESSING, PaymentStatus.PENDING)
        assert not lifecycle.is_valid_pair(OrderStatus.SHIPPED, PaymentStatus.FAILED)
        assert not lifecycle.is_valid_pair(OrderStatus.PAYMENT_FAILED, PaymentStatus.PAID)

    def test_every_transition_lands_on_a_valid_pair(self):
        for status, payment_status in VALID_STATE_PAIRS:
            for trigger, transition in TRANSITIONS.items():
                if not transition.allows(status, payment_status):
                    continue
                landed = (
                    transition.to_status or status,
                    transition.to_payment_status or payment_status,
                )
                assert landed in VALID_STATE_PAIRS, (trigger, status, payment_status)

    def test_terminal_states_have_no_fulfillment_exits(self):
        for trigger in (Trigger.CANCEL, Trigger.SHIP, Trigger.DELIVER, Trigger.PAYMENT_SUCCEEDED):
            assert not TRANSITIONS[trigger].allows(OrderStatus.CANCELLED, PaymentStatus.PENDING)
            assert not TRANSITIONS[trigger].allows(OrderStatus.DELIVERED, PaymentStatus.PAID)

    def test_terminal_states_are_never_left(self):
        for status, payment_status in VALID_STATE_PAIRS:
            for trigger, transition in TRANSITIONS.items():
                if not transition.allows(status, payment_status):
                    continue
                if status in TERMINAL_STATUSES:
                    assert transition.to_status is None, (trigger, status)
                if payment_status in TERMINAL_PAYMENT_STATUSES:
                    assert transition.to_payment_status is None, (trigger, payment_status)


class TestFire:
    async def test_payment_succeeded_stamps_paid_at(self, services, pending_order):
        updated = await lifecycle.fire(services.orders_repo, pending_order, Trigger.PAYMENT_SUCCEEDED)

        assert updated.status == OrderStatus.PROCESSING
        assert updated.payment_status == PaymentStatus.PAID
        assert updated.paid_at is not None
        assert updated.is_paid

    async def test_ship_from_pending_is_a_conflict(self, services, pending_order):
        with pytest.raises(ConflictError) as exc_info:
            await lifecycle.fire(services.orders_repo, pending_order, Trigger.SHIP)

        assert exc_info.value.current_state == "pending"

    async def test_cancel_rejection_names_the_status(self, services, pending_order):
        cancelled = await lifecycle.fire(services.orders_repo, pending_order, Trigger.CANCEL)

        with pytest.raises(OrderNotCancellableError, match="Cannot cancel order with status: cancelled"):
            await lifecycle.fire(services.orders_repo, cancelled, Trigger.CANCEL)

    async def test_stale_snapshot_loses_the_race(self, services, pending_order):
        # Another writer cancels first; our copy still says pending
        await lifecycle.fire(services.orders_repo, pending_order, Trigger.CANCEL)

        with pytest.raises(ConflictError) as exc_info:
            await lifecycle.fire(services.orders_repo, pending_order, Trigger.PAYMENT_SUCCEEDED)

        assert exc_info.value.current_state == "cancelled"
        stored = await services.orders_repo.get(pending_order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.payment_status == PaymentStatus.PENDING

    async def test_extra_fields_are_written(self, services, paid_order):
        shipped = await lifecycle.fire(
            services.orders_repo, paid_order, Trigger.SHIP,
            tracking_number="1Z999", carrier_name="UPS",
        )

        assert shipped.status == OrderStatus.SHIPPED
        assert shipped.tracking_number == "1Z999"
        assert shipped.shipped_at is not None
