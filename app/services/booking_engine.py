"""Booking state machine.

Every change to a booking goes through :class:`BookingStateMachine`. A
transition is serialized per booking (in-process lock, ``SELECT ... FOR
UPDATE`` and the optimistic ``lock_version`` column), validated against the
transition table, applied together with its ledger mutation and audit row in
one commit, and announced to the notification emitter afterwards.
"""

import asyncio
import logging
import uuid
import weakref
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.exceptions import (
    AlreadyRefunded,
    AlreadyReleased,
    ConcurrentUpdate,
    GatewayError,
    InvalidTransition,
    NotEligibleForRelease,
    NotFoundError,
    RefundFailed,
    StaleTransition,
    Unauthorized,
    ValidationError,
    WrongPaymentState,
)
from app.database import async_session_maker
from app.domain.booking_state import (
    CONFIRM_COMPLETION_ROLES,
    REQUIRES_HELD_PAYMENT,
    Actor,
    ActorRole,
    BookingStatus,
    ServiceType,
    assert_booking_transition,
    assert_consistent_state,
)
from app.domain.dispute_state import (
    DisputeResolution,
    can_open_dispute,
    can_resolve_dispute,
    is_dispute_open,
)
from app.domain.payment_state import PaymentStatus, can_release_payment
from app.gateways.base import GatewayResult
from app.models.booking import Booking, BookingTransition
from app.services.commission_service import CommissionService, commission_service
from app.services.escrow_ledger import EscrowLedger
from app.services.gateway_service import GatewayService, gateway_service
from app.services.notification_service import (
    CeleryNotificationEmitter,
    NotificationEmitter,
    NotificationKind,
    TransitionEvent,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Audit action and notification for each plain status change
STATUS_ACTIONS: dict[BookingStatus, tuple[str, NotificationKind]] = {
    BookingStatus.CONFIRMED: ("accept", NotificationKind.BOOKING_CONFIRMED),
    BookingStatus.IN_PROGRESS: ("start_service", NotificationKind.SERVICE_STARTED),
    BookingStatus.COMPLETED: ("complete_service", NotificationKind.SERVICE_COMPLETED),
}

DISPUTE_REFUND_REASON = "Dispute resolved in favour of the owner"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _snapshot(booking: Booking) -> tuple[str, str]:
    return BookingStatus(booking.status).value, PaymentStatus(booking.payment_status).value


class BookingStateMachine:
    """Applies booking transitions and escrow operations atomically."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayService | None = None,
        emitter: NotificationEmitter | None = None,
        clock: Clock | None = None,
        commission: CommissionService | None = None,
        hold_days: int | None = None,
        release_max_attempts: int | None = None,
        release_backoff_base_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway or gateway_service
        self.ledger = EscrowLedger(self.gateway, hold_days)
        self.emitter = emitter or CeleryNotificationEmitter()
        self.clock = clock or utcnow
        self.commission = commission or commission_service
        self.release_max_attempts = release_max_attempts or settings.release_max_attempts
        self.release_backoff_base_seconds = (
            release_backoff_base_seconds or settings.release_backoff_base_seconds
        )
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    # ==================== PLUMBING ====================

    @asynccontextmanager
    async def _booking_lock(self, booking_id: UUID) -> AsyncIterator[None]:
        """Serialize work on one booking within this process."""
        lock = self._locks.get(booking_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[booking_id] = lock
        async with lock:
            yield

    async def _load(self, session: AsyncSession, booking_id: UUID, for_update: bool = True) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        booking = (await session.execute(stmt)).scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        return booking

    async def _replayed(self, session: AsyncSession, booking_id: UUID, request_id: str | None) -> bool:
        """True if a mutation with this request id was already applied."""
        if not request_id:
            return False
        stmt = select(BookingTransition.id).where(
            BookingTransition.booking_id == booking_id,
            BookingTransition.request_id == request_id,
        )
        replayed = (await session.execute(stmt)).first() is not None
        if replayed:
            logger.info("Replayed request %s for booking %s", request_id, booking_id)
        return replayed

    @staticmethod
    def _role(actor: Actor, booking: Booking) -> ActorRole:
        role = actor.role_for(booking.owner_id, booking.sitter_id)
        if role is None:
            raise Unauthorized()
        return role

    @staticmethod
    def _check_expected(booking: Booking, expected_status: BookingStatus | str | None) -> None:
        if expected_status is None:
            return
        expected = BookingStatus(expected_status)
        if booking.status != expected:
            raise StaleTransition(expected.value, BookingStatus(booking.status).value)

    @staticmethod
    def _audit(
        session: AsyncSession,
        booking: Booking,
        *,
        action: str,
        actor: Actor,
        role: ActorRole,
        before: tuple[str | None, str | None],
        now: datetime,
        request_id: str | None = None,
        note: str | None = None,
    ) -> None:
        session.add(
            BookingTransition(
                id=uuid.uuid4(),
                booking_id=booking.id,
                request_id=request_id,
                action=action,
                actor_id=actor.user_id,
                actor_role=role.value,
                from_status=before[0],
                to_status=BookingStatus(booking.status).value,
                from_payment_status=before[1],
                to_payment_status=PaymentStatus(booking.payment_status).value,
                note=note,
                created_at=now,
            )
        )

    async def _commit(
        self,
        session: AsyncSession,
        booking: Booking,
        *,
        action: str,
        actor: Actor,
        role: ActorRole,
        before: tuple[str | None, str | None],
        now: datetime,
        request_id: str | None = None,
        note: str | None = None,
    ) -> None:
        """Validate invariants, append the audit row and commit."""
        assert_consistent_state(booking)
        booking.updated_at = now
        self._audit(
            session,
            booking,
            action=action,
            actor=actor,
            role=role,
            before=before,
            now=now,
            request_id=request_id,
            note=note,
        )
        try:
            await session.commit()
        except (StaleDataError, IntegrityError) as e:
            await session.rollback()
            logger.warning("Concurrent update of booking %s during %s: %s", booking.id, action, e)
            raise ConcurrentUpdate(str(booking.id)) from e

        logger.info(
            "Booking %s %s by %s: %s/%s -> %s/%s",
            booking.id,
            action,
            role.value,
            before[0],
            before[1],
            BookingStatus(booking.status).value,
            PaymentStatus(booking.payment_status).value,
        )

    @staticmethod
    def _recipients(booking: Booking, role: ActorRole) -> list[UUID]:
        if role == ActorRole.OWNER:
            return [booking.sitter_id]
        if role == ActorRole.SITTER:
            return [booking.owner_id]
        return [booking.owner_id, booking.sitter_id]

    async def _notify(
        self,
        kind: NotificationKind,
        booking: Booking,
        before: tuple[str | None, str | None],
        actor: Actor,
        role: ActorRole,
        recipients: list[UUID] | None = None,
    ) -> None:
        event = TransitionEvent(
            booking_id=booking.id,
            kind=kind,
            old_status=before[0],
            new_status=BookingStatus(booking.status).value,
            old_payment_status=before[1],
            new_payment_status=PaymentStatus(booking.payment_status).value,
            actor_id=actor.user_id,
            recipient_ids=recipients if recipients is not None else self._recipients(booking, role),
        )
        try:
            await self.emitter.emit(event)
        except Exception:
            logger.exception("Notification emitter failed for %s on booking %s", kind.value, booking.id)

    # ==================== QUERIES ====================

    async def get_booking(self, actor: Actor, booking_id: UUID) -> Booking:
        """Return a booking visible to the actor."""
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id, for_update=False)
            self._role(actor, booking)
            return booking

    async def list_transitions(self, actor: Actor, booking_id: UUID) -> list[BookingTransition]:
        """Return the audit history of a booking, oldest first."""
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id, for_update=False)
            self._role(actor, booking)
            result = await session.execute(
                select(BookingTransition)
                .where(BookingTransition.booking_id == booking_id)
                .order_by(BookingTransition.created_at)
            )
            return list(result.scalars().all())

    async def list_review_queue(self, actor: Actor, limit: int = 100) -> list[Booking]:
        """Bookings waiting for an operator: failed releases and open disputes."""
        if not actor.is_admin:
            raise Unauthorized("Only admins can view the review queue")
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking)
                .where(
                    or_(
                        Booking.needs_manual_review.is_(True),
                        and_(
                            Booking.disputed_at.is_not(None),
                            Booking.dispute_resolved_at.is_(None),
                        ),
                    )
                )
                .order_by(Booking.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ==================== CREATION ====================

    async def _find_created(self, request_id: str) -> Booking | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking).where(Booking.create_request_id == request_id)
            )
            return result.scalar_one_or_none()

    @staticmethod
    def _replayed_creation(existing: Booking, owner_id: UUID) -> Booking:
        if existing.owner_id != owner_id:
            raise ValidationError("Idempotency key has already been used")
        logger.info("Replayed booking creation %s", existing.id)
        return existing

    async def create_booking(
        self,
        actor: Actor,
        *,
        sitter_id: UUID,
        service_type: ServiceType | str,
        start_time: datetime,
        end_time: datetime,
        total_price: int,
        pet_id: UUID | None = None,
        currency: str | None = None,
        notes: str | None = None,
        sitter_payout_account: str | None = None,
        request_id: str | None = None,
    ) -> Booking:
        """Create a booking request from the acting owner to a sitter.

        Raises:
            ValidationError: If the parties, time range or price are invalid
        """
        if actor.user_id is None:
            raise Unauthorized("Only a signed-in owner can request a booking")
        owner_id = actor.user_id
        if owner_id == sitter_id:
            raise ValidationError("Owner and sitter must be different users")
        start_time, end_time = _as_utc(start_time), _as_utc(end_time)
        if end_time <= start_time:
            raise ValidationError("end_time must be after start_time")
        if total_price < 0:
            raise ValidationError("total_price must not be negative")
        try:
            service_type = ServiceType(service_type)
        except ValueError:
            raise ValidationError(f"Unknown service type: {service_type}")

        if request_id:
            existing = await self._find_created(request_id)
            if existing is not None:
                return self._replayed_creation(existing, owner_id)

        now = self.clock()
        booking = Booking(
            id=uuid.uuid4(),
            owner_id=owner_id,
            sitter_id=sitter_id,
            pet_id=pet_id,
            service_type=service_type,
            notes=notes,
            start_time=start_time,
            end_time=end_time,
            total_price=total_price,
            currency=(currency or settings.currency).upper(),
            commission_fee=0,
            status=BookingStatus.REQUESTED,
            payment_status=PaymentStatus.NONE,
            sitter_payout_account=sitter_payout_account,
            capture_attempts=0,
            payout_attempts=0,
            refund_attempts=0,
            release_failures=0,
            needs_manual_review=False,
            create_request_id=request_id,
            created_at=now,
            updated_at=now,
        )
        role = ActorRole.OWNER
        before = (None, None)

        lost_race = False
        async with self.session_factory() as session:
            assert_consistent_state(booking)
            session.add(booking)
            try:
                # Booking row first so the audit row's foreign key resolves
                await session.flush()
                self._audit(
                    session,
                    booking,
                    action="create",
                    actor=actor,
                    role=role,
                    before=before,
                    now=now,
                    request_id=request_id,
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if not request_id:
                    raise ValidationError("Booking could not be created") from e
                lost_race = True

        if lost_race:
            # Same request id committed by a concurrent request
            existing = await self._find_created(request_id)
            if existing is None:
                raise ValidationError("Booking could not be created")
            return self._replayed_creation(existing, owner_id)

        logger.info("Booking %s requested by owner %s from sitter %s", booking.id, owner_id, sitter_id)
        await self._notify(NotificationKind.BOOKING_REQUESTED, booking, before, actor, role)
        return booking

    # ==================== STATUS CHANGES ====================

    async def update_booking_status(
        self,
        actor: Actor,
        booking_id: UUID,
        new_status: BookingStatus | str,
        expected_status: BookingStatus | str | None = None,
        cancellation_reason: str | None = None,
        request_id: str | None = None,
    ) -> Booking:
        """Move a booking to a new status.

        Raises:
            InvalidTransition: If the edge is not allowed or expected_status is stale
            Unauthorized: If the actor may not apply the edge
            WrongPaymentState: If the payment is not in the state the edge needs
            RefundFailed: If cancelling a paid booking could not refund it
        """
        new_status = BookingStatus(new_status)
        if new_status == BookingStatus.CANCELLED:
            return await self._cancel(
                actor,
                booking_id,
                reason=cancellation_reason,
                expected_status=expected_status,
                request_id=request_id,
            )

        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                role = self._role(actor, booking)
                if await self._replayed(session, booking_id, request_id):
                    return booking
                self._check_expected(booking, expected_status)
                current = BookingStatus(booking.status)
                assert_booking_transition(current, new_status, role)
                if (current, new_status) in REQUIRES_HELD_PAYMENT and booking.payment_status != PaymentStatus.HELD:
                    raise WrongPaymentState(
                        "The payment must be held before the service can start or be completed"
                    )

                before = _snapshot(booking)
                now = self.clock()
                booking.status = new_status
                if new_status == BookingStatus.CONFIRMED:
                    # Commission is frozen here and never recomputed
                    amounts = self.commission.calculate_booking_amounts(booking.total_price)
                    booking.commission_rate = amounts["commission_rate"]
                    booking.commission_fee = amounts["commission_fee"]
                    booking.confirmed_at = now
                elif new_status == BookingStatus.IN_PROGRESS:
                    booking.started_at = now
                elif new_status == BookingStatus.COMPLETED:
                    booking.completed_at = now

                action, kind = STATUS_ACTIONS[new_status]
                await self._commit(
                    session,
                    booking,
                    action=action,
                    actor=actor,
                    role=role,
                    before=before,
                    now=now,
                    request_id=request_id,
                )
            await self._notify(kind, booking, before, actor, role)
            return booking

    async def mark_service_completed(
        self,
        actor: Actor,
        booking_id: UUID,
        request_id: str | None = None,
    ) -> Booking:
        """Sitter marks the service as delivered."""
        return await self.update_booking_status(
            actor, booking_id, BookingStatus.COMPLETED, request_id=request_id
        )

    async def confirm_service_completion(
        self,
        actor: Actor,
        booking_id: UUID,
        request_id: str | None = None,
    ) -> Booking:
        """Owner (or the scheduler on timeout) confirms the completed service.

        Starts the hold window; confirming twice is a no-op.
        """
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                role = self._role(actor, booking)
                if await self._replayed(session, booking_id, request_id):
                    return booking
                if role not in CONFIRM_COMPLETION_ROLES:
                    raise Unauthorized("Only the owner can confirm completion")
                if booking.status != BookingStatus.COMPLETED or booking.completed_at is None:
                    raise InvalidTransition("The service has not been marked as completed")
                if booking.completion_confirmed_at is not None:
                    return booking
                if booking.payment_status != PaymentStatus.HELD:
                    raise WrongPaymentState("Completion can only be confirmed while the payment is held")

                before = _snapshot(booking)
                now = self.clock()
                self.ledger.start_hold_window(booking, now)
                await self._commit(
                    session,
                    booking,
                    action="confirm_completion",
                    actor=actor,
                    role=role,
                    before=before,
                    now=now,
                    request_id=request_id,
                    note="auto-confirmed" if role == ActorRole.SCHEDULER else None,
                )
            await self._notify(NotificationKind.COMPLETION_CONFIRMED, booking, before, actor, role)
            return booking

    async def send_completion_reminder(self, actor: Actor, booking_id: UUID) -> bool:
        """Remind the owner once to confirm a completed service.

        Returns:
            bool: True if a reminder was recorded and sent
        """
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                role = self._role(actor, booking)
                if role not in (ActorRole.SCHEDULER, ActorRole.ADMIN):
                    raise Unauthorized("Only the scheduler sends completion reminders")
                if (
                    booking.status != BookingStatus.COMPLETED
                    or booking.completion_confirmed_at is not None
                    or booking.confirmation_reminder_sent_at is not None
                ):
                    return False

                before = _snapshot(booking)
                now = self.clock()
                booking.confirmation_reminder_sent_at = now
                await self._commit(
                    session,
                    booking,
                    action="completion_reminder",
                    actor=actor,
                    role=role,
                    before=before,
                    now=now,
                )
            await self._notify(
                NotificationKind.COMPLETION_REMINDER,
                booking,
                before,
                actor,
                role,
                recipients=[booking.owner_id],
            )
            return True

    # ==================== CANCELLATION & REFUND ====================

    async def _cancel(
        self,
        actor: Actor,
        booking_id: UUID,
        reason: str | None,
        expected_status: BookingStatus | str | None = None,
        request_id: str | None = None,
        refund_only: bool = False,
        resolving_dispute: bool = False,
    ) -> Booking:
        """Cancel a booking, refunding a held payment first.

        The refund runs while the row is locked; if it fails nothing is
        committed and the booking keeps its prior state.
        """
        reason = (reason or "").strip() or None
        async with self._booking_lock(booking_id):
            try:
                async with self.session_factory() as session:
                    booking = await self._load(session, booking_id)
                    role = self._role(actor, booking)
                    if await self._replayed(session, booking_id, request_id):
                        return booking
                    if resolving_dispute:
                        self._check_dispute_resolver(booking, role)
                    if refund_only:
                        try:
                            self.ledger.assert_refundable(booking)
                        except AlreadyRefunded:
                            logger.info("Payment for booking %s already refunded; nothing to do", booking_id)
                            return booking
                    self._check_expected(booking, expected_status)

                    current = BookingStatus(booking.status)
                    if current == BookingStatus.COMPLETED and not resolving_dispute:
                        raise InvalidTransition(
                            "A completed booking can only be cancelled by resolving a dispute"
                        )
                    assert_booking_transition(current, BookingStatus.CANCELLED, role)
                    if booking.payment_status == PaymentStatus.PENDING:
                        raise WrongPaymentState(
                            "Payment capture is in progress; try again once it has settled"
                        )

                    before = _snapshot(booking)
                    now = self.clock()
                    kinds = [NotificationKind.BOOKING_CANCELLED]
                    if booking.payment_status == PaymentStatus.HELD:
                        if not reason:
                            raise ValidationError(
                                "A cancellation reason is required once the payment is held"
                            )
                        await self.ledger.refund(booking, reason, now)
                        kinds.append(NotificationKind.PAYMENT_REFUNDED)

                    booking.status = BookingStatus.CANCELLED
                    booking.cancelled_at = now
                    booking.cancellation_reason = reason
                    booking.cancelled_by = role.value
                    if resolving_dispute:
                        booking.dispute_resolved_at = now
                        booking.dispute_resolution = DisputeResolution.REFUND.value
                        kinds.append(NotificationKind.DISPUTE_RESOLVED)

                    await self._commit(
                        session,
                        booking,
                        action="resolve_dispute" if resolving_dispute else "cancel",
                        actor=actor,
                        role=role,
                        before=before,
                        now=now,
                        request_id=request_id,
                        note=reason,
                    )
            except RefundFailed as e:
                await self._record_refund_failure(booking_id, actor, e)
                raise

            for kind in kinds:
                await self._notify(kind, booking, before, actor, role)
            return booking

    async def _record_refund_failure(self, booking_id: UUID, actor: Actor, error: RefundFailed) -> None:
        """Advance the refund attempt after a terminal failure so the next try uses a new key."""
        if error.retryable:
            return
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id)
            role = actor.role_for(booking.owner_id, booking.sitter_id) or ActorRole.SCHEDULER
            before = _snapshot(booking)
            booking.refund_attempts += 1
            await self._commit(
                session,
                booking,
                action="refund_failed",
                actor=actor,
                role=role,
                before=before,
                now=self.clock(),
                note=str(error.detail)[:1000],
            )

    async def refund_payment(
        self,
        actor: Actor,
        booking_id: UUID,
        reason: str,
        request_id: str | None = None,
    ) -> Booking:
        """Refund the held payment in full and cancel the booking.

        Refunding an already refunded booking is a no-op.

        Raises:
            WrongPaymentState: If the payment is released, pending or was never taken
            RefundFailed: If the gateway refund failed
        """
        return await self._cancel(
            actor,
            booking_id,
            reason=reason,
            request_id=request_id,
            refund_only=True,
        )

    # ==================== PAYMENT ====================

    async def authorize_and_hold(
        self,
        actor: Actor,
        booking_id: UUID,
        payment_method_id: str | None = None,
        request_id: str | None = None,
    ) -> Booking:
        """Capture the owner's payment into escrow.

        Phase one commits ``pending``; the gateway call runs outside any
        database transaction; phase two commits the outcome. A timeout
        leaves the capture ``pending`` for reconciliation.

        Raises:
            GatewayError: If the capture was declined or its outcome is unknown
        """
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                role = self._role(actor, booking)
                if await self._replayed(session, booking_id, request_id):
                    return booking
                if role not in (ActorRole.OWNER, ActorRole.ADMIN):
                    raise Unauthorized("Only the owner can authorize the payment")
                if booking.status != BookingStatus.CONFIRMED:
                    raise InvalidTransition(
                        "Payment can only be authorized once the sitter has accepted the booking"
                    )
                if booking.payment_status == PaymentStatus.HELD:
                    return booking

                if booking.payment_status == PaymentStatus.NONE:
                    before = _snapshot(booking)
                    now = self.clock()
                    self.ledger.begin_capture(booking, now)
                    await self._commit(
                        session,
                        booking,
                        action="capture_started",
                        actor=actor,
                        role=role,
                        before=before,
                        now=now,
                    )
                elif booking.payment_status != PaymentStatus.PENDING:
                    raise WrongPaymentState(
                        f"Cannot authorize payment - payment status is {PaymentStatus(booking.payment_status).value}"
                    )

            result = await self.ledger.capture(booking, payment_method_id)
            return await self._settle_capture(
                booking, actor, role, result, raise_errors=True, request_id=request_id
            )

    async def reconcile_capture(self, actor: Actor, booking_id: UUID) -> Booking:
        """Resolve a capture left ``pending`` by asking the gateway what happened."""
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id, for_update=False)
                role = self._role(actor, booking)
            if booking.payment_status != PaymentStatus.PENDING:
                return booking
            if booking.total_price == 0:
                result = await self.ledger.capture(booking)
            else:
                result = await self.gateway.lookup_capture(self.ledger.capture_key(booking))
            return await self._settle_capture(booking, actor, role, result, raise_errors=False)

    async def _settle_capture(
        self,
        snapshot: Booking,
        actor: Actor,
        role: ActorRole,
        result: GatewayResult,
        raise_errors: bool,
        request_id: str | None = None,
    ) -> Booking:
        """Phase two of a capture: apply the gateway outcome if still pending.

        Only a successful capture records the request id, so a retry with the
        same id after an unknown outcome or a decline reaches the gateway again.
        """
        attempt = snapshot.capture_attempts
        async with self.session_factory() as session:
            booking = await self._load(session, snapshot.id)
            if booking.payment_status != PaymentStatus.PENDING or booking.capture_attempts != attempt:
                logger.info(
                    "Capture for booking %s was settled elsewhere (%s)",
                    booking.id,
                    PaymentStatus(booking.payment_status).value,
                )
                return booking

            before = _snapshot(booking)
            if not self.ledger.apply_capture_result(booking, result):
                logger.warning(
                    "Capture outcome for booking %s unknown, left pending: %s",
                    booking.id,
                    result.error_message,
                )
                if raise_errors:
                    raise GatewayError(
                        result.error_message or "Payment outcome unknown", retryable=True
                    )
                return booking

            held = booking.payment_status == PaymentStatus.HELD
            await self._commit(
                session,
                booking,
                action="capture_succeeded" if held else "capture_failed",
                actor=actor,
                role=role,
                before=before,
                now=self.clock(),
                request_id=request_id if held else None,
                note=None if held else result.error_message,
            )

        if held:
            await self._notify(NotificationKind.PAYMENT_HELD, booking, before, actor, role)
            return booking
        logger.warning("Capture for booking %s declined: %s", booking.id, result.error_message)
        if raise_errors:
            raise GatewayError(result.error_message or "Payment was declined", retryable=False)
        return booking

    # ==================== RELEASE ====================

    async def release_payment(
        self,
        actor: Actor,
        booking_id: UUID,
        force: bool = False,
        request_id: str | None = None,
    ) -> Booking:
        """Pay the sitter out of escrow.

        Allowed once the hold window has passed, or earlier when the owner
        forces it. Releasing an already released booking is a no-op.

        Raises:
            NotEligibleForRelease: If the hold window is still running
            WrongPaymentState: If nothing is held
            GatewayError: If the payout failed
        """
        return await self._release(actor, booking_id, force=force, request_id=request_id)

    def _check_release_allowed(
        self,
        booking: Booking,
        role: ActorRole,
        force: bool,
        resolving_dispute: bool,
        now: datetime,
    ) -> bool:
        """Return whether the release is forced; raise if it is not allowed."""
        ok, message = can_release_payment(booking.status, booking.payment_status)
        if not ok:
            if booking.payment_status != PaymentStatus.HELD:
                raise WrongPaymentState(message)
            raise InvalidTransition(message)

        forced = resolving_dispute or (force and role == ActorRole.OWNER)
        if is_dispute_open(booking) and not forced:
            raise NotEligibleForRelease("Payment is on hold while the booking is disputed")
        if not forced and not self.ledger.is_release_due(booking, now):
            raise NotEligibleForRelease()
        return forced

    async def _release(
        self,
        actor: Actor,
        booking_id: UUID,
        force: bool = False,
        request_id: str | None = None,
        resolving_dispute: bool = False,
        note: str | None = None,
    ) -> Booking:
        async with self._booking_lock(booking_id):
            try:
                async with self.session_factory() as session:
                    booking = await self._load(session, booking_id)
                    role = self._role(actor, booking)
                    if await self._replayed(session, booking_id, request_id):
                        return booking
                    if resolving_dispute:
                        self._check_dispute_resolver(booking, role)
                    try:
                        self.ledger.assert_releasable(booking)
                    except AlreadyReleased:
                        logger.info("Payment for booking %s already released; nothing to do", booking_id)
                        return booking

                    now = self.clock()
                    forced = self._check_release_allowed(booking, role, force, resolving_dispute, now)
                    before = _snapshot(booking)
                    kinds = [NotificationKind.PAYMENT_RELEASED]
                    if forced and booking.completion_confirmed_at is None:
                        booking.completion_confirmed_at = now
                        booking.eligible_for_release_at = now

                    await self.ledger.release(booking, now)
                    booking.needs_manual_review = False
                    if is_dispute_open(booking):
                        booking.dispute_resolved_at = now
                        booking.dispute_resolution = DisputeResolution.RELEASE.value
                        kinds.append(NotificationKind.DISPUTE_RESOLVED)

                    await self._commit(
                        session,
                        booking,
                        action="resolve_dispute" if resolving_dispute else "release",
                        actor=actor,
                        role=role,
                        before=before,
                        now=now,
                        request_id=request_id,
                        note=note or ("forced" if forced else None),
                    )
            except GatewayError as e:
                await self.record_release_failure(booking_id, actor, e)
                raise

            for kind in kinds:
                await self._notify(kind, booking, before, actor, role)
            return booking

    async def record_release_failure(self, booking_id: UUID, actor: Actor, error: GatewayError) -> Booking:
        """Schedule the next release attempt with exponential backoff.

        The booking is flagged for manual review after a terminal error or
        once the attempt limit is reached. It is never cancelled here.
        """
        now = self.clock()
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id)
            role = actor.role_for(booking.owner_id, booking.sitter_id) or ActorRole.SCHEDULER
            before = _snapshot(booking)
            booking.release_failures += 1
            booking.last_release_error = str(error.detail)[:1000]
            if not error.retryable:
                booking.payout_attempts += 1
            delay = self.release_backoff_base_seconds * 2 ** (booking.release_failures - 1)
            booking.next_release_attempt_at = now + timedelta(seconds=delay)
            if not error.retryable or booking.release_failures >= self.release_max_attempts:
                booking.needs_manual_review = True
                logger.error(
                    "Booking %s flagged for manual review after %d failed release attempt(s): %s",
                    booking.id,
                    booking.release_failures,
                    booking.last_release_error,
                )
            await self._commit(
                session,
                booking,
                action="release_failed",
                actor=actor,
                role=role,
                before=before,
                now=now,
                note=booking.last_release_error,
            )
            return booking

    # ==================== GATEWAY EVENTS ====================

    async def settle_capture_from_gateway(
        self,
        booking_id: UUID,
        capture_key: str,
        result: GatewayResult,
    ) -> Booking:
        """Apply a capture outcome pushed by the gateway.

        Events for an earlier attempt, or for a capture that has already
        settled, are ignored.
        """
        actor = Actor.scheduler()
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id, for_update=False)
                role = self._role(actor, booking)
            if (
                booking.payment_status != PaymentStatus.PENDING
                or self.ledger.capture_key(booking) != capture_key
            ):
                logger.info(
                    "Ignoring capture event for booking %s (%s)",
                    booking_id,
                    PaymentStatus(booking.payment_status).value,
                )
                return booking
            return await self._settle_capture(booking, actor, role, result, raise_errors=False)

    async def record_payout_reversal(self, booking_id: UUID, payout_id: str, reason: str) -> Booking:
        """Flag a released booking whose payout the gateway reversed.

        The ledger stays ``released``; an operator settles the money by hand.
        """
        actor = Actor.scheduler()
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                if (
                    booking.payment_status != PaymentStatus.RELEASED
                    or booking.gateway_payout_id != payout_id
                    or booking.needs_manual_review
                ):
                    logger.info("Ignoring payout reversal %s for booking %s", payout_id, booking_id)
                    return booking

                before = _snapshot(booking)
                booking.needs_manual_review = True
                booking.last_release_error = reason[:1000]
                await self._commit(
                    session,
                    booking,
                    action="payout_reversed",
                    actor=actor,
                    role=ActorRole.SCHEDULER,
                    before=before,
                    now=self.clock(),
                    note=booking.last_release_error,
                )
            logger.error("Payout %s for booking %s was reversed: %s", payout_id, booking_id, reason)
            return booking

    # ==================== DISPUTES ====================

    @staticmethod
    def _check_dispute_resolver(booking: Booking, role: ActorRole) -> None:
        if role != ActorRole.ADMIN:
            raise Unauthorized("Only an admin can resolve disputes")
        ok, message = can_resolve_dispute(booking)
        if not ok:
            raise InvalidTransition(message)

    async def open_dispute(
        self,
        actor: Actor,
        booking_id: UUID,
        reason: str,
        request_id: str | None = None,
    ) -> Booking:
        """Owner disputes a completed service, blocking the automatic release."""
        reason = (reason or "").strip()
        async with self._booking_lock(booking_id):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                role = self._role(actor, booking)
                if await self._replayed(session, booking_id, request_id):
                    return booking
                if role != ActorRole.OWNER:
                    raise Unauthorized("Only the owner can dispute a booking")
                ok, message = can_open_dispute(booking)
                if not ok:
                    raise InvalidTransition(message)
                if not reason:
                    raise ValidationError("A reason is required to open a dispute")

                before = _snapshot(booking)
                now = self.clock()
                booking.disputed_at = now
                booking.dispute_reason = reason
                await self._commit(
                    session,
                    booking,
                    action="open_dispute",
                    actor=actor,
                    role=role,
                    before=before,
                    now=now,
                    request_id=request_id,
                    note=reason,
                )
            logger.warning("Booking %s disputed by owner: %s", booking.id, reason)
            await self._notify(NotificationKind.DISPUTE_OPENED, booking, before, actor, role)
            return booking

    async def resolve_dispute(
        self,
        actor: Actor,
        booking_id: UUID,
        resolution: DisputeResolution | str,
        note: str | None = None,
        request_id: str | None = None,
    ) -> Booking:
        """Admin settles a dispute by paying the sitter or refunding the owner."""
        resolution = DisputeResolution(resolution)
        if resolution == DisputeResolution.RELEASE:
            return await self._release(
                actor,
                booking_id,
                force=True,
                request_id=request_id,
                resolving_dispute=True,
                note=note,
            )
        return await self._cancel(
            actor,
            booking_id,
            reason=note or DISPUTE_REFUND_REASON,
            request_id=request_id,
            resolving_dispute=True,
        )


# Singleton instance
booking_engine = BookingStateMachine(async_session_maker)
