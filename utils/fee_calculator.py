"""Fee split calculation for escrow holds"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Optional, Union

from config import Config
from services.escrow_errors import AmountTooSmallError, ValidationError

logger = logging.getLogger(__name__)

Number = Union[str, int, Decimal]


@dataclass(frozen=True)
class FeeSplit:
    """Result of splitting a gross hold amount"""

    gross_amount: Decimal
    contractor_fee: Decimal
    customer_fee: Decimal
    contractor_receives: Decimal
    platform_total: Decimal

    @property
    def customer_pays(self) -> Decimal:
        return self.gross_amount + self.customer_fee

    def to_dict(self) -> Dict[str, str]:
        return {
            "gross_amount": str(self.gross_amount),
            "contractor_fee": str(self.contractor_fee),
            "customer_fee": str(self.customer_fee),
            "contractor_receives": str(self.contractor_receives),
            "platform_total": str(self.platform_total),
        }


class FeeCalculator:
    """Flat per-side platform fee with currency-unit precision"""

    USD_PRECISION = Decimal(1).scaleb(-Config.USD_DECIMAL_PLACES)

    @classmethod
    def to_money(cls, value: Number, field: str = "amount", exact: bool = False) -> Decimal:
        """Convert to Decimal rounded half-up to the smallest currency unit.

        Floats are rejected outright: binary floating point cannot represent
        most cent values exactly. With exact=True, input finer than the
        currency unit is a ValidationError instead of being rounded.
        """
        if isinstance(value, bool) or isinstance(value, float):
            raise ValidationError(f"{field} must be a decimal string, int or Decimal, not {type(value).__name__}")
        try:
            decimal_value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"{field} is not a valid amount: {value!r}") from e
        if not decimal_value.is_finite():
            raise ValidationError(f"{field} must be finite: {value!r}")
        money = decimal_value.quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)
        if exact and money != decimal_value:
            raise ValidationError(f"{field} has more precision than {cls.USD_PRECISION}: {value}")
        return money

    @classmethod
    def compute_split(
        cls,
        gross_amount: Number,
        contractor_fee: Optional[Decimal] = None,
        customer_fee: Optional[Decimal] = None,
    ) -> FeeSplit:
        """
        Split a gross amount into the contractor payout and platform fees.

        The contractor fee is subtracted from the payout side and the
        customer fee is added on the funding side.

        Raises:
            AmountTooSmallError: if the contractor fee is not smaller than the gross amount
        """
        gross = cls.to_money(gross_amount, "gross_amount")
        contractor_fee = cls.to_money(
            Config.CONTRACTOR_FEE_FLAT if contractor_fee is None else contractor_fee,
            "contractor_fee",
        )
        customer_fee = cls.to_money(
            Config.CUSTOMER_FEE_FLAT if customer_fee is None else customer_fee,
            "customer_fee",
        )

        if gross <= 0:
            raise ValidationError(f"gross_amount must be positive (got {gross})")
        if contractor_fee >= gross:
            raise AmountTooSmallError(
                f"Amount {gross} does not cover the contractor fee of {contractor_fee}"
            )

        return FeeSplit(
            gross_amount=gross,
            contractor_fee=contractor_fee,
            customer_fee=customer_fee,
            contractor_receives=gross - contractor_fee,
            platform_total=contractor_fee + customer_fee,
        )


def compute_split(gross_amount: Number) -> FeeSplit:
    """Split using the configured flat fees"""
    return FeeCalculator.compute_split(gross_amount)
