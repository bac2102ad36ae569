"""
keeper.py - Keeper

Periodic driver for the housekeeping nobody is paid to trigger.

Execution order each step():
1. Advance ledger time
2. Advance the interest index of every collateral type at the rate in force
3. Tick the interest controller from the stablecoin's market price (if a feed
   quotes it); the new rate applies from this step on
4. Mark every Open position at or below its liquidation ratio

The transaction log is the audit trail; step() returns what it executed.
"""

from __future__ import annotations
from datetime import datetime
from typing import List

from .core import Transaction
from .engine import Stabilis
from .units.collateral import list_collateral_types


class Keeper:
    """
    Drives time-based protocol upkeep through the engine's public entry points.

    Liquidation itself is left to liquidators, who must supply the stablecoin.
    """

    def __init__(self, engine: Stabilis, keeper_id: str = "keeper"):
        self.engine = engine
        self.keeper_id = keeper_id
        self.verbose = engine.verbose
        engine.ledger.ensure_wallet(keeper_id)

    def step(self, timestamp: datetime) -> List[Transaction]:
        """
        Advance time and perform all upkeep due at timestamp.

        Returns:
            Transactions executed during this step
        """
        ledger = self.engine.ledger
        ledger.advance_time(timestamp)
        start = len(ledger.transaction_log)

        for collateral_id in list_collateral_types(ledger):
            self.engine.advance(collateral_id, caller=self.keeper_id)

        if self.engine.prices.market_price(self.engine.stablecoin, timestamp) is not None:
            self.engine.tick_pid(caller=self.keeper_id)

        for position_id, ratio in self.engine.find_unsafe_positions():
            if self.verbose:
                print(f"[KEEPER] marking {position_id} at ratio {ratio}")
            self.engine.mark(self.keeper_id, position_id)

        return ledger.transaction_log[start:]

    def run(self, timestamps: List[datetime]) -> List[Transaction]:
        """Run step() over a sequence of timestamps."""
        all_transactions: List[Transaction] = []
        for timestamp in timestamps:
            all_transactions.extend(self.step(timestamp))
        return all_transactions
