"""
helpers.py - Construction and comparison helpers shared by the test suites

Fixtures in conftest.py are built from these; property tests call them
directly because hypothesis needs a fresh engine per example.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Tuple

from stabilis import (
    Ledger, Move, SYSTEM_WALLET, VAULT_WALLET,
    build_transaction, collateral_token,
    Stabilis, CollateralType, ProtocolParameters, PIDParameters,
    StaticPriceFeed, PriceFeedAdapter,
    ExecuteResult,
)
from stabilis.units.position import list_positions, load_position


T0 = datetime(2025, 1, 1)

def issue(ledger: Ledger, wallet: str, unit: str, amount) -> None:
    """Fund a wallet via SYSTEM_WALLET (proper issuance, replayable)."""
    ledger.ensure_wallet(wallet)
    pending = build_transaction(ledger, [
        Move(Decimal(str(amount)), unit, SYSTEM_WALLET, wallet, f"issue_{wallet}_{unit}_{len(ledger.transaction_log)}")
    ])
    assert ledger.execute(pending) == ExecuteResult.APPLIED


def xrd_collateral_type(**overrides) -> CollateralType:
    """XRD: MCR 150%, LCR 120%, 10% penalty, ceiling 1,000,000."""
    fields = dict(
        id="XRD",
        accepted=True,
        min_collateral_ratio=Decimal("1.5"),
        liquidation_collateral_ratio=Decimal("1.2"),
        liquidation_penalty_pct=Decimal("0.10"),
        price_feed_id="XRD",
        debt_ceiling=Decimal("1000000"),
    )
    fields.update(overrides)
    return CollateralType(**fields)


def set_price(engine: Stabilis, asset: str, price) -> None:
    """Push a fresh oracle price observed at the ledger's current time."""
    oracle = engine.prices.feeds[asset]
    oracle.update_price(asset, Decimal(str(price)), engine.now)


def advance(engine: Stabilis, seconds: int = 0, days: int = 0) -> datetime:
    """Move ledger time forward and return the new time."""
    new_time = engine.now + timedelta(seconds=seconds, days=days)
    engine.advance_time(new_time)
    return new_time


def snapshot_state(ledger: Ledger) -> Tuple[Dict, Dict]:
    """(balances, unit states) copied for before/after comparison."""
    balances = {
        wallet: {unit: qty for unit, qty in ledger.balances[wallet].items() if qty != 0}
        for wallet in sorted(ledger.registered_wallets)
    }
    states = {symbol: ledger.get_unit_state(symbol) for symbol in ledger.list_units()}
    return balances, states


def vault_accounts_for_collateral(ledger: Ledger, collateral_id: str) -> bool:
    """Vault holding equals locked collateral plus unclaimed leftovers."""
    expected = Decimal("0")
    for position_id in list_positions(ledger):
        pos = load_position(ledger, position_id)
        if pos.collateral_type == collateral_id:
            expected += pos.collateral_amount + pos.leftover_collateral
    return ledger.get_balance(VAULT_WALLET, collateral_id) == expected


def make_engine(
    params: ProtocolParameters = None,
    pid_params: PIDParameters = None,
    collateral: CollateralType = None,
    price=Decimal("1"),
) -> Stabilis:
    """Ledger + oracle + engine with XRD registered and alice/bob/carol funded."""
    ledger = Ledger("stabilis", T0, verbose=False, test_mode=True)
    ledger.register_unit(collateral_token("XRD", "Radix"))
    for wallet, amount in (("alice", 10000), ("bob", 10000), ("carol", 10000)):
        issue(ledger, wallet, "XRD", amount)

    oracle = StaticPriceFeed({"XRD": (Decimal(str(price)), T0)})
    prices = PriceFeedAdapter({"XRD": oracle}, max_age_seconds=3600)
    engine = Stabilis(ledger, "admin", prices, params=params, pid_params=pid_params, verbose=False)
    engine.add_collateral_type("admin", collateral or xrd_collateral_type())
    return engine

