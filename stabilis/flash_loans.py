"""
flash_loans.py - Flash loans of the stablecoin

A flash loan mints stablecoin to a borrower, runs the borrower's callback and
collects amount * (1 + fee) back before the bounding transaction ends. The
principal is burned and the fee goes to the treasury. If the callback fails
or the borrower cannot pay, the whole loan is rolled back.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Callable, Optional

from .core import ValidationError, StateError, InsufficientFunds, UnrepaidFlashLoan, to_decimal, quantize_up
from .engine import Stabilis


# Callback receives (engine, borrower, amount) and may call any engine operation.
FlashLoanCallback = Callable[[Stabilis, str, Decimal], Any]


class FlashLoanFacility:
    """
    Flash-loan module using the engine's restricted mint/burn.

    The facility's minter_id must have been authorized by the administrator
    with Stabilis.authorize_minter().

    Example:
        engine.authorize_minter("admin", "flash_loans")
        facility = FlashLoanFacility(engine, "flash_loans", fee_pct=Decimal("0.001"))
        facility.execute("bob", Decimal("1000"), arbitrage)
    """

    def __init__(
        self,
        engine: Stabilis,
        minter_id: str,
        fee_pct: Decimal = Decimal("0"),
        enabled: bool = True,
    ):
        self.engine = engine
        self.minter_id = minter_id
        self.fee_pct = to_decimal(fee_pct)
        self.enabled = enabled
        self.amount_loaned = Decimal("0")
        self.fees_collected = Decimal("0")
        if self.fee_pct < 0:
            raise ValidationError(f"fee_pct must be >= 0, got {self.fee_pct}")

    def settings(self, fee_pct: Optional[Decimal] = None, enabled: Optional[bool] = None) -> None:
        if fee_pct is not None:
            fee_pct = to_decimal(fee_pct)
            if fee_pct < 0:
                raise ValidationError(f"fee_pct must be >= 0, got {fee_pct}")
            self.fee_pct = fee_pct
        if enabled is not None:
            self.enabled = enabled

    def fee_for(self, amount: Decimal) -> Decimal:
        return quantize_up(to_decimal(amount) * self.fee_pct)

    def execute(self, borrower: str, amount, callback: FlashLoanCallback) -> Any:
        """
        Lend amount to borrower for the duration of callback.

        Returns whatever the callback returns.

        Raises:
            StateError: If flash loans are disabled
            UnrepaidFlashLoan: If the borrower cannot repay principal plus fee
        """
        if not self.enabled:
            raise StateError("Flash loans are disabled")
        amount = to_decimal(amount)
        fee = self.fee_for(amount)

        with self.engine.bounding_transaction():
            self.engine.mint(self.minter_id, amount, to=borrower)
            result = callback(self.engine, borrower, amount)
            try:
                if fee > 0:
                    self.engine.collect_fee(self.minter_id, borrower, fee)
                self.engine.burn(self.minter_id, amount, source=borrower)
            except InsufficientFunds as e:
                raise UnrepaidFlashLoan(f"{borrower} could not repay {amount} plus fee {fee}") from e

        self.amount_loaned += amount
        self.fees_collected += fee
        return result
