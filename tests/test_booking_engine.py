"""End-to-end lifecycle tests for the booking state machine."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from app.core.exceptions import (
    GatewayError,
    InvalidTransition,
    NotEligibleForRelease,
    NotFoundError,
    StaleTransition,
    Unauthorized,
    ValidationError,
    WrongPaymentState,
)
from app.core.idempotency import gateway_idempotency_key
from app.domain.booking_state import Actor, BookingStatus
from app.domain.payment_state import PaymentStatus
from app.gateways.base import GatewayResult


def state(booking) -> tuple[str, str]:
    return BookingStatus(booking.status).value, PaymentStatus(booking.payment_status).value


class TestHappyPath:
    """Request, accept, pay, complete, confirm and release."""

    async def test_full_lifecycle(self, machine, flow, owner, sitter, clock, fake_gateway, emitter):
        booking = await flow.requested(total_price=10000)
        assert state(booking) == ("requested", "none")

        booking = await machine.update_booking_status(sitter, booking.id, BookingStatus.CONFIRMED)
        assert state(booking) == ("confirmed", "none")
        assert booking.commission_fee == 2000
        assert booking.payout_amount == 8000

        booking = await machine.authorize_and_hold(owner, booking.id, payment_method_id="pm_card_visa")
        assert state(booking) == ("confirmed", "held")
        assert booking.gateway_payment_id

        clock.advance(days=1)
        booking = await machine.mark_service_completed(sitter, booking.id)
        assert state(booking) == ("completed", "held")
        assert booking.completed_at == clock.now

        clock.advance(hours=2)
        booking = await machine.confirm_service_completion(owner, booking.id)
        assert state(booking) == ("completed", "held")
        assert booking.eligible_for_release_at == booking.completion_confirmed_at + timedelta(days=3)

        clock.advance(days=3)
        booking = await machine.release_payment(Actor.scheduler(), booking.id)
        assert state(booking) == ("completed", "released")
        assert booking.payment_released_at == clock.now

        payout = fake_gateway.calls_for("payout")[0]
        assert payout["amount"] == 8000
        assert emitter.kinds == [
            "booking_requested",
            "booking_confirmed",
            "payment_held",
            "service_completed",
            "completion_confirmed",
            "payment_released",
        ]

    async def test_history_records_every_change(self, machine, flow, owner, clock):
        booking = await flow.requested()
        clock.advance(minutes=1)
        await machine.update_booking_status(flow.sitter, booking.id, BookingStatus.CONFIRMED)
        clock.advance(minutes=1)
        await machine.authorize_and_hold(owner, booking.id)

        history = await machine.list_transitions(owner, booking.id)
        actions = [t.action for t in history]
        assert actions[:2] == ["create", "accept"]
        assert sorted(actions[2:]) == ["capture_started", "capture_succeeded"]
        assert history[1].actor_role == "sitter"
        started = next(t for t in history if t.action == "capture_started")
        assert (started.to_status, started.to_payment_status) == ("confirmed", "pending")

    async def test_notifications_go_to_the_other_party(self, flow, owner, sitter, emitter):
        await flow.confirmed()
        requested, confirmed = emitter.events
        assert requested.recipient_ids == [sitter.user_id]
        assert confirmed.recipient_ids == [owner.user_id]
        assert confirmed.old_status == "requested" and confirmed.new_status == "confirmed"

    async def test_emitter_failure_does_not_undo_transition(self, machine, flow, owner, emitter):
        async def broken(event):
            raise RuntimeError("queue down")

        booking = await flow.requested()
        emitter.emit = broken
        booking = await machine.update_booking_status(flow.sitter, booking.id, BookingStatus.CONFIRMED)
        assert (await machine.get_booking(owner, booking.id)).status == BookingStatus.CONFIRMED


class TestCreation:
    async def test_owner_cannot_book_themselves(self, machine, owner, clock):
        with pytest.raises(ValidationError):
            await machine.create_booking(
                owner,
                sitter_id=owner.user_id,
                service_type="walk",
                start_time=clock.now,
                end_time=clock.now + timedelta(hours=1),
                total_price=1000,
            )

    async def test_end_must_follow_start(self, machine, owner, sitter, clock):
        with pytest.raises(ValidationError):
            await machine.create_booking(
                owner,
                sitter_id=sitter.user_id,
                service_type="boarding",
                start_time=clock.now,
                end_time=clock.now,
                total_price=1000,
            )

    async def test_unknown_service_type(self, machine, owner, sitter, clock):
        with pytest.raises(ValidationError):
            await machine.create_booking(
                owner,
                sitter_id=sitter.user_id,
                service_type="grooming",
                start_time=clock.now,
                end_time=clock.now + timedelta(hours=1),
                total_price=1000,
            )

    async def test_repeated_request_id_returns_same_booking(self, flow, emitter):
        first = await flow.requested(request_id="create-1")
        again = await flow.requested(request_id="create-1")
        assert again.id == first.id
        assert emitter.kinds == ["booking_requested"]

    async def test_request_id_of_other_owner_is_rejected(self, machine, flow, sitter, clock):
        await flow.requested(request_id="create-2")
        with pytest.raises(ValidationError):
            await machine.create_booking(
                Actor(uuid4()),
                sitter_id=sitter.user_id,
                service_type="walk",
                start_time=clock.now,
                end_time=clock.now + timedelta(hours=1),
                total_price=1000,
                request_id="create-2",
            )

    async def test_currency_defaults_from_settings(self, flow):
        booking = await flow.requested()
        assert booking.currency == "EUR"


class TestStatusChanges:
    async def test_stranger_is_unauthorized(self, machine, flow, stranger):
        booking = await flow.requested()
        with pytest.raises(Unauthorized):
            await machine.get_booking(stranger, booking.id)
        with pytest.raises(Unauthorized):
            await machine.update_booking_status(stranger, booking.id, BookingStatus.CONFIRMED)

    async def test_missing_booking(self, machine, owner):
        with pytest.raises(NotFoundError):
            await machine.get_booking(owner, uuid4())

    async def test_owner_cannot_accept(self, machine, flow, owner):
        booking = await flow.requested()
        with pytest.raises(Unauthorized):
            await machine.update_booking_status(owner, booking.id, BookingStatus.CONFIRMED)

    async def test_skipping_states_is_invalid(self, machine, flow, sitter):
        booking = await flow.requested()
        with pytest.raises(InvalidTransition):
            await machine.update_booking_status(sitter, booking.id, BookingStatus.COMPLETED)

    async def test_stale_expected_status(self, machine, flow, sitter):
        booking = await flow.confirmed()
        with pytest.raises(StaleTransition) as exc:
            await machine.update_booking_status(
                sitter, booking.id, BookingStatus.CONFIRMED, expected_status=BookingStatus.REQUESTED
            )
        assert exc.value.status_code == 409

    async def test_service_needs_held_payment(self, machine, flow, sitter):
        booking = await flow.confirmed()
        with pytest.raises(WrongPaymentState):
            await machine.update_booking_status(sitter, booking.id, BookingStatus.IN_PROGRESS)
        with pytest.raises(WrongPaymentState):
            await machine.mark_service_completed(sitter, booking.id)

    async def test_replayed_request_is_a_no_op(self, machine, flow, sitter, emitter):
        booking = await flow.requested()
        await machine.update_booking_status(sitter, booking.id, BookingStatus.CONFIRMED, request_id="accept-1")
        again = await machine.update_booking_status(
            sitter, booking.id, BookingStatus.CONFIRMED, request_id="accept-1"
        )
        assert again.status == BookingStatus.CONFIRMED
        assert emitter.kinds.count("booking_confirmed") == 1

    async def test_commission_frozen_at_acceptance(self, machine, flow, owner):
        booking = await flow.confirmed(total_price=5000)
        machine.commission._platform_fee_percent = Decimal("50")
        booking = await machine.authorize_and_hold(owner, booking.id)
        assert booking.commission_rate == Decimal("20")
        assert booking.commission_fee == 1000

    async def test_confirm_completion_owner_only_and_idempotent(self, machine, flow, owner, sitter, emitter):
        booking = await flow.completed()
        with pytest.raises(Unauthorized):
            await machine.confirm_service_completion(sitter, booking.id)
        first = await machine.confirm_service_completion(owner, booking.id)
        again = await machine.confirm_service_completion(owner, booking.id)
        assert again.eligible_for_release_at == first.eligible_for_release_at
        assert emitter.kinds.count("completion_confirmed") == 1

    async def test_confirm_before_completion_is_invalid(self, machine, flow, owner):
        booking = await flow.in_progress()
        with pytest.raises(InvalidTransition):
            await machine.confirm_service_completion(owner, booking.id)


class TestCapture:
    """Authorize-and-hold outcomes."""

    async def test_only_owner_authorizes(self, machine, flow, sitter):
        booking = await flow.confirmed()
        with pytest.raises(Unauthorized):
            await machine.authorize_and_hold(sitter, booking.id)

    async def test_requires_accepted_booking(self, machine, flow, owner):
        booking = await flow.requested()
        with pytest.raises(InvalidTransition):
            await machine.authorize_and_hold(owner, booking.id)

    async def test_declined_capture_returns_to_none(self, machine, flow, owner, fake_gateway):
        booking = await flow.confirmed()
        fake_gateway.queue("capture", GatewayResult.failed("Your card was declined."))
        with pytest.raises(GatewayError) as exc:
            await machine.authorize_and_hold(owner, booking.id, payment_method_id="pm_bad")
        assert exc.value.status_code == 502

        booking = await machine.get_booking(owner, booking.id)
        assert state(booking) == ("confirmed", "none")
        assert booking.capture_attempts == 1

        booking = await machine.authorize_and_hold(owner, booking.id, payment_method_id="pm_good")
        assert booking.payment_status == PaymentStatus.HELD
        keys = [call["idempotency_key"] for call in fake_gateway.calls_for("capture")]
        assert keys == [
            gateway_idempotency_key("capture", booking.id, 0),
            gateway_idempotency_key("capture", booking.id, 1),
        ]

    async def test_unknown_outcome_stays_pending_and_retries_same_key(self, machine, flow, owner, fake_gateway):
        booking = await flow.confirmed()
        fake_gateway.queue("capture", GatewayResult.failed("timed out", retryable=True))
        with pytest.raises(GatewayError) as exc:
            await machine.authorize_and_hold(owner, booking.id)
        assert exc.value.status_code == 503
        assert (await machine.get_booking(owner, booking.id)).payment_status == PaymentStatus.PENDING

        booking = await machine.authorize_and_hold(owner, booking.id)
        assert booking.payment_status == PaymentStatus.HELD
        first, second = fake_gateway.calls_for("capture")
        assert first["idempotency_key"] == second["idempotency_key"]

    async def test_retry_with_same_request_id_after_unknown_outcome(self, machine, flow, owner, fake_gateway):
        booking = await flow.confirmed()
        fake_gateway.queue("capture", GatewayResult.failed("timed out", retryable=True))
        with pytest.raises(GatewayError):
            await machine.authorize_and_hold(owner, booking.id, request_id="auth-1")

        booking = await machine.authorize_and_hold(owner, booking.id, request_id="auth-1")
        assert booking.payment_status == PaymentStatus.HELD
        first, second = fake_gateway.calls_for("capture")
        assert first["idempotency_key"] == second["idempotency_key"]

        again = await machine.authorize_and_hold(owner, booking.id, request_id="auth-1")
        assert again.payment_status == PaymentStatus.HELD
        assert len(fake_gateway.calls_for("capture")) == 2

    async def test_retry_with_same_request_id_after_decline(self, machine, flow, owner, fake_gateway):
        booking = await flow.confirmed()
        fake_gateway.queue("capture", GatewayResult.failed("Your card was declined."))
        with pytest.raises(GatewayError):
            await machine.authorize_and_hold(owner, booking.id, request_id="auth-2")

        booking = await machine.authorize_and_hold(owner, booking.id, request_id="auth-2")
        assert state(booking) == ("confirmed", "held")
        assert len(fake_gateway.calls_for("capture")) == 2

    async def test_held_payment_is_not_captured_twice(self, machine, flow, owner, fake_gateway):
        booking = await flow.held()
        again = await machine.authorize_and_hold(owner, booking.id)
        assert again.payment_status == PaymentStatus.HELD
        assert len(fake_gateway.calls_for("capture")) == 1

    async def test_zero_price_booking_holds_without_gateway(self, flow, fake_gateway):
        booking = await flow.held(total_price=0)
        assert booking.payment_status == PaymentStatus.HELD
        assert fake_gateway.calls == []


class TestCancellation:
    async def test_cancel_requested_without_gateway(self, machine, flow, owner, fake_gateway):
        booking = await flow.requested()
        booking = await machine.update_booking_status(owner, booking.id, BookingStatus.CANCELLED)
        assert state(booking) == ("cancelled", "none")
        assert booking.cancelled_by == "owner"
        assert fake_gateway.calls == []

    async def test_cancel_held_refunds(self, machine, flow, owner, fake_gateway, emitter):
        booking = await flow.held()
        booking = await machine.update_booking_status(
            owner, booking.id, BookingStatus.CANCELLED, cancellation_reason="schedule conflict"
        )
        assert state(booking) == ("cancelled", "refunded")
        assert booking.refund_reason == "schedule conflict"
        assert fake_gateway.calls_for("refund")[0]["amount"] == 10000
        assert emitter.kinds[-2:] == ["booking_cancelled", "payment_refunded"]

    async def test_refund_failure_keeps_booking_held(self, machine, flow, owner, fake_gateway):
        booking = await flow.held()
        fake_gateway.queue("refund", GatewayResult.failed("charge already disputed"))
        with pytest.raises(GatewayError):
            await machine.update_booking_status(
                owner, booking.id, BookingStatus.CANCELLED, cancellation_reason="schedule conflict"
            )
        booking = await machine.get_booking(owner, booking.id)
        assert state(booking) == ("confirmed", "held")
        assert booking.refund_attempts == 1

        booking = await machine.update_booking_status(
            owner, booking.id, BookingStatus.CANCELLED, cancellation_reason="schedule conflict"
        )
        assert state(booking) == ("cancelled", "refunded")
        first, second = fake_gateway.calls_for("refund")
        assert first["idempotency_key"] != second["idempotency_key"]

    async def test_reason_required_once_paid(self, machine, flow, owner):
        booking = await flow.held()
        with pytest.raises(ValidationError):
            await machine.update_booking_status(owner, booking.id, BookingStatus.CANCELLED)

    async def test_sitter_cannot_cancel_accepted(self, machine, flow, sitter):
        booking = await flow.confirmed()
        with pytest.raises(Unauthorized):
            await machine.update_booking_status(sitter, booking.id, BookingStatus.CANCELLED)

    async def test_completed_cannot_be_cancelled_directly(self, machine, flow, admin):
        booking = await flow.completed()
        with pytest.raises(InvalidTransition):
            await machine.update_booking_status(
                admin, booking.id, BookingStatus.CANCELLED, cancellation_reason="no"
            )

    async def test_cancelled_is_terminal(self, machine, flow, owner, sitter):
        booking = await flow.requested()
        await machine.update_booking_status(owner, booking.id, BookingStatus.CANCELLED)
        with pytest.raises(InvalidTransition):
            await machine.update_booking_status(sitter, booking.id, BookingStatus.CONFIRMED)

    async def test_refund_payment(self, machine, flow, admin):
        booking = await flow.held()
        booking = await machine.refund_payment(admin, booking.id, "Sitter unavailable")
        assert state(booking) == ("cancelled", "refunded")
        assert booking.cancelled_by == "admin"
        again = await machine.refund_payment(admin, booking.id, "Sitter unavailable")
        assert again.refunded_at == booking.refunded_at

    async def test_refund_without_payment(self, machine, flow, owner):
        booking = await flow.confirmed()
        with pytest.raises(WrongPaymentState):
            await machine.refund_payment(owner, booking.id, "never paid")

    async def test_released_payment_is_final(self, machine, flow, owner, admin, fake_gateway):
        booking = await flow.completed()
        await machine.release_payment(owner, booking.id, force=True)
        with pytest.raises(WrongPaymentState):
            await machine.refund_payment(admin, booking.id, "too late")
        with pytest.raises(InvalidTransition):
            await machine.authorize_and_hold(owner, booking.id)
        with pytest.raises(InvalidTransition):
            await machine.update_booking_status(
                owner, booking.id, BookingStatus.CANCELLED, cancellation_reason="too late"
            )
        with pytest.raises(InvalidTransition):
            await machine.update_booking_status(
                admin, booking.id, BookingStatus.CANCELLED, cancellation_reason="too late"
            )

        booking = await machine.get_booking(owner, booking.id)
        assert state(booking) == ("completed", "released")
        assert booking.payment_released_at is not None
        assert len(fake_gateway.calls_for("capture")) == 1
        assert fake_gateway.calls_for("refund") == []


class TestRelease:
    async def test_owner_force_releases_early(self, machine, flow, owner, clock):
        booking = await flow.completion_confirmed()
        clock.advance(days=1)
        booking = await machine.release_payment(owner, booking.id, force=True)
        assert booking.payment_status == PaymentStatus.RELEASED

    async def test_sitter_cannot_force(self, machine, flow, sitter, clock):
        booking = await flow.completion_confirmed()
        clock.advance(days=1)
        with pytest.raises(NotEligibleForRelease):
            await machine.release_payment(sitter, booking.id, force=True)

    async def test_sitter_releases_after_hold(self, machine, flow, sitter, clock):
        booking = await flow.completion_confirmed()
        clock.advance(days=3)
        booking = await machine.release_payment(sitter, booking.id)
        assert booking.payment_status == PaymentStatus.RELEASED

    async def test_unconfirmed_completion_is_not_due(self, machine, flow, sitter, clock):
        booking = await flow.completed()
        clock.advance(days=10)
        with pytest.raises(NotEligibleForRelease):
            await machine.release_payment(sitter, booking.id)

    async def test_forced_release_confirms_completion(self, machine, flow, owner, clock):
        booking = await flow.completed()
        booking = await machine.release_payment(owner, booking.id, force=True)
        assert booking.completion_confirmed_at == clock.now
        assert booking.eligible_for_release_at == clock.now

    async def test_release_before_completion_is_invalid(self, machine, flow, owner):
        booking = await flow.in_progress()
        with pytest.raises(InvalidTransition):
            await machine.release_payment(owner, booking.id, force=True)

    async def test_release_twice_pays_once(self, machine, flow, owner, fake_gateway, emitter):
        booking = await flow.completion_confirmed()
        await machine.release_payment(owner, booking.id, force=True)
        again = await machine.release_payment(owner, booking.id, force=True)
        assert again.payment_status == PaymentStatus.RELEASED
        assert len(fake_gateway.calls_for("payout")) == 1
        assert emitter.kinds.count("payment_released") == 1

    async def test_retryable_payout_failure_backs_off(self, machine, flow, owner, clock, fake_gateway):
        booking = await flow.completion_confirmed()
        clock.advance(days=3)
        fake_gateway.queue("payout", GatewayResult.failed("bank offline", retryable=True))
        with pytest.raises(GatewayError):
            await machine.release_payment(Actor.scheduler(), booking.id)

        booking = await machine.get_booking(owner, booking.id)
        assert state(booking) == ("completed", "held")
        assert booking.release_failures == 1
        assert booking.next_release_attempt_at == clock.now + timedelta(seconds=60)
        assert booking.last_release_error == "bank offline"
        assert booking.payout_attempts == 0
        assert not booking.needs_manual_review

    async def test_terminal_payout_failure_needs_review(self, machine, flow, owner, clock, fake_gateway):
        booking = await flow.completion_confirmed()
        clock.advance(days=3)
        fake_gateway.queue("payout", GatewayResult.failed("Sitter has not completed payout setup"))
        with pytest.raises(GatewayError):
            await machine.release_payment(Actor.scheduler(), booking.id)

        booking = await machine.get_booking(owner, booking.id)
        assert booking.needs_manual_review
        assert booking.payout_attempts == 1
        assert booking.status == BookingStatus.COMPLETED

    async def test_repeated_failures_reach_manual_review(self, machine, flow, owner, clock, fake_gateway):
        booking = await flow.completion_confirmed()
        clock.advance(days=3)
        for _ in range(3):
            fake_gateway.queue("payout", GatewayResult.failed("bank offline", retryable=True))
            with pytest.raises(GatewayError):
                await machine.release_payment(Actor.scheduler(), booking.id)

        booking = await machine.get_booking(owner, booking.id)
        assert booking.release_failures == 3
        assert booking.next_release_attempt_at == clock.now + timedelta(seconds=240)
        assert booking.needs_manual_review
