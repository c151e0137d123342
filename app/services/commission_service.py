"""Commission calculation service.

The platform keeps a percentage of every booking's total price and pays the
rest out to the sitter:
- commission_fee = round_half_up(total_price * platform_fee_percent / 100)
- payout = total_price - commission_fee
- The rate is frozen on the booking when the sitter accepts and is never
  recomputed afterwards
"""

from decimal import ROUND_HALF_UP, Decimal

from app.config import settings


class CommissionService:
    """Service for calculating booking commissions and payouts."""

    def __init__(self, platform_fee_percent: Decimal | None = None):
        self._platform_fee_percent = platform_fee_percent

    def get_commission_rate(self) -> Decimal:
        """Get the platform fee as a percentage (e.g., 20.00 for 20%)."""
        if self._platform_fee_percent is not None:
            return Decimal(self._platform_fee_percent)
        return Decimal(settings.platform_fee_percent)

    def calculate_commission(self, total_amount: int, rate: Decimal | None = None) -> int:
        """Calculate commission amount in smallest currency unit.

        Args:
            total_amount: Total booking amount (what the owner pays)
            rate: Percentage to apply; defaults to the platform rate

        Returns:
            int: Commission amount, rounded half up
        """
        rate = self.get_commission_rate() if rate is None else Decimal(rate)
        commission = (Decimal(total_amount) * rate / Decimal("100")).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(commission)

    def calculate_booking_amounts(self, total_price: int) -> dict:
        """Calculate the split of a booking's total price.

        Returns:
            dict: commission_rate, commission_fee and payout_amount
        """
        rate = self.get_commission_rate()
        commission_fee = self.calculate_commission(total_price, rate)
        return {
            "total_price": total_price,
            "commission_rate": rate,
            "commission_fee": commission_fee,
            "payout_amount": total_price - commission_fee,
        }


# Singleton instance
commission_service = CommissionService()
