#!/usr/bin/env python3
"""
Complete booking, escrow and release flow script.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the backend.

Tokens are minted locally with the shared JWT secret, so the script must run
with the same environment as the API.

Usage:
    python scripts/flow_book_and_release.py --sitter-id <UUID> --start 2026-11-01T09:00 --end 2026-11-01T10:00
    python scripts/flow_book_and_release.py --sitter-id <UUID> --start 2026-11-01T09:00 --end 2026-11-03T09:00 \
        --service-type boarding --price 12000 --force-release

Flow:
    1. Create booking (as owner)
    2. Accept booking (as sitter)
    3. Authorize and hold payment (as owner)
    4. Start service (as sitter)
    5. Mark service completed (as sitter)
    6. Confirm completion (as owner)
    7. Release payment (owner, forced) or print the release date
"""

import argparse
import json
import sys
import uuid

import httpx

from app.core.security import create_access_token

BASE_URL = "http://localhost:8000"


def api_request(token: str, method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make authenticated API request with a fresh idempotency key."""
    headers = {
        "Authorization": f"Bearer {token}",
        "Idempotency-Key": uuid.uuid4().hex,
    }
    url = f"{BASE_URL}{endpoint}"

    if method == "GET":
        response = httpx.get(url, headers=headers, timeout=10.0, follow_redirects=True)
    elif method == "POST":
        response = httpx.post(url, headers=headers, json=data or {}, timeout=30.0, follow_redirects=True)
    else:
        raise ValueError(f"Unknown method: {method}")

    return {"status": response.status_code, "data": response.json() if response.text else {}}


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_result(result: dict, fields: list[str] | None = None):
    """Print result, optionally filtering fields."""
    if result["status"] >= 400:
        print(f"ERROR ({result['status']}): {json.dumps(result['data'], indent=2)}")
        return False

    print(f"Status: {result['status']}")
    if fields:
        filtered = {k: result["data"].get(k) for k in fields if k in result["data"]}
        print(json.dumps(filtered, indent=2))
    else:
        print(json.dumps(result["data"], indent=2))
    return True


STATE_FIELDS = ["id", "status", "payment_status"]


def main():
    parser = argparse.ArgumentParser(description="Complete booking and escrow release flow")
    parser.add_argument("--sitter-id", required=True, help="Sitter UUID")
    parser.add_argument("--owner-id", default=None, help="Owner UUID (random if omitted)")
    parser.add_argument("--start", required=True, help="Service start (ISO 8601)")
    parser.add_argument("--end", required=True, help="Service end (ISO 8601)")
    parser.add_argument("--service-type", default="walk", choices=["walk", "care", "boarding"])
    parser.add_argument("--price", type=int, default=2500, help="Total price in cents")
    parser.add_argument("--payment-method", default="pm_card_visa", help="Gateway payment method id")
    parser.add_argument("--payout-account", default=None, help="Sitter payout account id")
    parser.add_argument("--force-release", action="store_true", help="Release without waiting for the hold window")
    args = parser.parse_args()

    owner_id = args.owner_id or str(uuid.uuid4())
    owner_token = create_access_token(owner_id)
    sitter_token = create_access_token(args.sitter_id)

    # Step 1: Create booking
    print_step(1, "Create booking (as owner)")
    booking_result = api_request(owner_token, "POST", "/api/v1/bookings", {
        "sitter_id": args.sitter_id,
        "service_type": args.service_type,
        "start_time": args.start,
        "end_time": args.end,
        "total_price": args.price,
        "sitter_payout_account": args.payout_account,
    })
    if not print_result(booking_result, STATE_FIELDS + ["total_price", "currency"]):
        sys.exit(1)
    booking_id = booking_result["data"]["id"]

    # Step 2: Accept booking
    print_step(2, "Accept booking (as sitter)")
    accept_result = api_request(sitter_token, "POST", f"/api/v1/bookings/{booking_id}/status", {
        "new_status": "confirmed",
        "expected_status": "requested",
    })
    if not print_result(accept_result, STATE_FIELDS + ["commission_rate", "commission_fee", "payout_amount"]):
        sys.exit(1)

    # Step 3: Authorize and hold payment
    print_step(3, "Authorize and hold payment (as owner)")
    hold_result = api_request(owner_token, "POST", f"/api/v1/bookings/{booking_id}/authorize", {
        "payment_method_id": args.payment_method,
    })
    if not print_result(hold_result, STATE_FIELDS + ["gateway_payment_id"]):
        sys.exit(1)
    if hold_result["data"]["payment_status"] != "held":
        print("\nPayment is not held yet; the reconciliation job will settle it.")
        sys.exit(1)

    # Step 4: Start service
    print_step(4, "Start service (as sitter)")
    start_result = api_request(sitter_token, "POST", f"/api/v1/bookings/{booking_id}/status", {
        "new_status": "in_progress",
        "expected_status": "confirmed",
    })
    if not print_result(start_result, STATE_FIELDS + ["started_at"]):
        sys.exit(1)

    # Step 5: Complete service
    print_step(5, "Mark service completed (as sitter)")
    complete_result = api_request(sitter_token, "POST", f"/api/v1/bookings/{booking_id}/complete")
    if not print_result(complete_result, STATE_FIELDS + ["completed_at"]):
        sys.exit(1)

    # Step 6: Confirm completion
    print_step(6, "Confirm completion (as owner)")
    confirm_result = api_request(owner_token, "POST", f"/api/v1/bookings/{booking_id}/confirm-completion")
    if not print_result(confirm_result, STATE_FIELDS + ["completion_confirmed_at", "eligible_for_release_at"]):
        sys.exit(1)

    if not args.force_release:
        print("\n" + "="*60)
        print("FLOW COMPLETE (release left to the scheduler)")
        print("="*60)
        print(f"Eligible for release at: {confirm_result['data']['eligible_for_release_at']}")
        return

    # Step 7: Release payment
    print_step(7, "Release payment (owner, forced)")
    release_result = api_request(owner_token, "POST", f"/api/v1/bookings/{booking_id}/release", {"force": True})
    if not print_result(release_result, STATE_FIELDS + ["payment_released_at", "gateway_payout_id"]):
        sys.exit(1)

    # Final summary
    data = release_result["data"]
    print("\n" + "="*60)
    print("FULL FLOW COMPLETE")
    print("="*60)
    print(f"Booking:        {booking_id}")
    print(f"Total Paid:     {data['total_price']:,} cents")
    print(f"Commission:     {data['commission_fee']:,} cents ({data['commission_rate']}%)")
    print(f"Sitter Payout:  {data['payout_amount']:,} cents")


if __name__ == "__main__":
    main()
