"""Webhook endpoints for payment gateways."""

import logging
from uuid import UUID

import stripe
from fastapi import APIRouter, Header, HTTPException, Request, status

from app.api.deps import Engine
from app.config import settings
from app.core.exceptions import NotFoundError
from app.gateways.stripe_gateway import StripeGateway
from app.services.booking_engine import BookingStateMachine

logger = logging.getLogger(__name__)

router = APIRouter()

CAPTURE_EVENTS = {"payment_intent.succeeded", "payment_intent.payment_failed"}


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    engine: Engine,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> dict:
    """Handle Stripe webhook events."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret is not configured",
        )
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing signature",
        )

    # Raw body for signature verification
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
        )
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )
    except stripe.SignatureVerificationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )

    handled = await _handle_stripe_event(engine, event)
    return {"received": True, "handled": handled}


def _booking_id(obj) -> UUID | None:
    metadata = obj["metadata"] if "metadata" in obj else None
    if not metadata or "booking_id" not in metadata:
        return None
    try:
        return UUID(metadata["booking_id"])
    except ValueError:
        return None


async def _handle_stripe_event(engine: BookingStateMachine, event) -> bool:
    """Route a Stripe event to the state machine.

    Returns:
        bool: True if the event changed or confirmed booking state
    """
    event_type = event["type"]
    obj = event["data"]["object"]
    logger.info("Stripe webhook %s (%s)", event_type, obj["id"])

    if event_type == "payout.failed":
        # Payouts leave the sitter's Connect account and are not tied to one booking
        logger.error(
            "Payout %s failed on account %s: %s",
            obj["id"],
            event["account"] if "account" in event else None,
            obj["failure_message"] if "failure_message" in obj else None,
        )
        return False
    if event_type not in CAPTURE_EVENTS and event_type != "transfer.reversed":
        logger.debug("Unhandled Stripe event type %s", event_type)
        return False

    booking_id = _booking_id(obj)
    if booking_id is None:
        logger.warning("Stripe event %s for %s carries no booking id", event_type, obj["id"])
        return False

    try:
        if event_type in CAPTURE_EVENTS:
            capture_key = obj["metadata"]["capture_key"] if "capture_key" in obj["metadata"] else None
            if not capture_key:
                logger.warning("Payment %s carries no capture key", obj["id"])
                return False
            await engine.settle_capture_from_gateway(
                booking_id,
                capture_key,
                StripeGateway.result_from_intent(obj),
            )
        else:
            await engine.record_payout_reversal(
                booking_id,
                obj["id"],
                f"Transfer {obj['id']} was reversed",
            )
    except NotFoundError:
        logger.warning("Stripe event %s references unknown booking %s", event_type, booking_id)
        return False
    return True
