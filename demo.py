#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Stablecoin Position from Open to Liquidation

Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Setup        - Ledger, collateral token, oracle, the Stabilis engine
  4-5:   Positions    - Opening against collateral, interest over time
  6-7:   Peg Control  - The PID controller and the keeper
  8-9:   Liquidation  - Price crash, mark, liquidate, claim the leftover
  10:    Audit        - clone_at() and replay() over the whole history

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from stabilis import (
    Ledger, Move, SYSTEM_WALLET, VAULT_WALLET, build_transaction, collateral_token,
    Stabilis, Keeper, CollateralType, PIDParameters,
    StaticPriceFeed, PriceFeedAdapter, ConstantProductPool,
    StabilisError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    alice_xrd: Decimal = Decimal("10000")
    bob_stab: Decimal = Decimal("2000")

    collateral: Decimal = Decimal("1500")
    debt: Decimal = Decimal("1000")

    crash_price: Decimal = Decimal("0.8")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print("\n" + "=" * 70)
    print(f"STEP {number}: {title}")
    print("=" * 70)
    print(f"Objective: {objective}\n")


def fund(ledger: Ledger, wallet: str, unit: str, amount: Decimal):
    ledger.execute(build_transaction(ledger, [
        Move(amount, unit, SYSTEM_WALLET, wallet, f"fund_{wallet}_{unit}")
    ]))


# ============================================================================
# STEPS
# ============================================================================

def step_01_ledger() -> Ledger:
    step_header(1, "The Ledger", "Register the collateral token and fund alice")
    ledger = Ledger("stabilis_demo", CONFIG.start_time, verbose=False)
    ledger.register_unit(collateral_token("XRD", "Radix"))
    for wallet in ("alice", "bob"):
        ledger.register_wallet(wallet)
    fund(ledger, "alice", "XRD", CONFIG.alice_xrd)
    print(f"  alice holds {ledger.get_balance('alice', 'XRD')} XRD")
    return ledger


def step_02_oracle() -> PriceFeedAdapter:
    step_header(2, "The Oracle", "Timestamped prices; anything older than an hour is refused")
    oracle = StaticPriceFeed({"XRD": (Decimal("1"), CONFIG.start_time)})
    prices = PriceFeedAdapter({"XRD": oracle}, max_age_seconds=3600)
    print(f"  {prices}")
    return prices


def step_03_engine(ledger: Ledger, prices: PriceFeedAdapter) -> Stabilis:
    step_header(3, "The Engine", "Bootstrap protocol state and accept XRD as collateral")
    pid = PIDParameters(
        target_peg=Decimal("1"), kp=Decimal("0.5"), ki=Decimal("0.000001"), kd=Decimal("0"),
        base_rate=Decimal("0.02"), min_rate=Decimal("0"), max_rate=Decimal("0.5"),
        integral_bound=Decimal("10000"),
    )
    engine = Stabilis(ledger, "admin", prices, pid_params=pid)
    engine.add_collateral_type("admin", CollateralType(
        id="XRD", accepted=True,
        min_collateral_ratio=Decimal("1.5"),
        liquidation_collateral_ratio=Decimal("1.2"),
        liquidation_penalty_pct=Decimal("0.10"),
        price_feed_id="XRD", debt_ceiling=Decimal("1000000"),
    ))
    print(f"  units: {ledger.list_units()}")
    return engine


def step_04_open(engine: Stabilis) -> str:
    step_header(4, "Open a Position", "Lock 1500 XRD, mint 1000 STAB at ratio 1.5")
    try:
        engine.open("alice", "XRD", CONFIG.collateral, CONFIG.debt + 1)
    except StabilisError as e:
        print(f"  refused ({type(e).__name__}): {e}")
    position_id = engine.open("alice", "XRD", CONFIG.collateral, CONFIG.debt)
    print(f"  {position_id}: ratio {engine.collateral_ratio(position_id)}")
    print(f"  vault holds {engine.ledger.get_balance(VAULT_WALLET, 'XRD')} XRD")
    return position_id


def step_05_interest(engine: Stabilis, prices: PriceFeedAdapter, position_id: str):
    step_header(5, "Interest", "Debt grows with the collateral type's cumulative index")
    later = engine.now + timedelta(days=30)
    engine.advance_time(later)
    prices.feeds["XRD"].update_price("XRD", Decimal("1"), later)
    print(f"  after 30 days at {engine.current_rate()}: debt {engine.outstanding_debt(position_id):.6f}")
    print(f"  stored principal (not yet realized): {engine.position(position_id).principal_debt}")


def step_06_controller(engine: Stabilis, prices: PriceFeedAdapter):
    step_header(6, "Peg Control", "STAB trades above 1; the controller raises the rate")
    pool = ConstantProductPool("STAB", "USDC", Decimal("100000"), Decimal("103000"))
    prices.register_feed("STAB", pool)
    print(f"  pool price {pool.market_price():.4f}")
    print(f"  rate {engine.tick_pid():.6f}")
    return pool


def step_07_keeper(engine: Stabilis, prices: PriceFeedAdapter) -> Keeper:
    step_header(7, "The Keeper", "Tick the controller, accrue interest, look for unsafe positions")
    keeper = Keeper(engine)
    when = engine.now + timedelta(hours=1)
    prices.feeds["XRD"].update_price("XRD", Decimal("1"), when)
    for tx in keeper.step(when):
        print(f"  {tx.origin.event_type:10s} {tx.origin.unit_symbol}")
    return keeper


def step_08_crash(engine: Stabilis, prices: PriceFeedAdapter, keeper: Keeper, position_id: str):
    step_header(8, "Price Crash", "XRD falls; the keeper marks the position")
    when = engine.now + timedelta(hours=1)
    prices.feeds["XRD"].update_price("XRD", CONFIG.crash_price, when)
    keeper.step(when)
    pos = engine.position(position_id)
    print(f"  {position_id} is {pos.status.value}, grace until {pos.grace_expiry}")


def step_09_liquidate(engine: Stabilis, position_id: str):
    step_header(9, "Liquidation", "bob repays the debt and takes collateral plus penalty")
    fund(engine.ledger, "bob", engine.stablecoin, CONFIG.bob_stab)
    # Anything offered above the required repayment stays with bob.
    record = engine.liquidate("bob", position_id, engine.outstanding_debt(position_id) + 1)
    print(f"  seized {record.collateral_seized:.6f} XRD for {record.debt_repaid:.6f} STAB")
    print(f"  leftover for alice {record.leftover_collateral:.6f} XRD")
    claimed = engine.retrieve_leftover("alice", position_id)
    print(f"  alice claims {claimed:.6f}; vault now {engine.ledger.get_balance(VAULT_WALLET, 'XRD')}")


def step_10_audit(engine: Stabilis):
    step_header(10, "Audit", "Reconstruct the past and replay the log")
    ledger = engine.ledger
    past = ledger.clone_at(CONFIG.start_time)
    print(f"  at start: vault {past.get_balance(VAULT_WALLET, 'XRD')} XRD")
    replayed = ledger.replay()
    same = all(
        replayed.get_balance(w, u) == ledger.get_balance(w, u)
        for w in ledger.registered_wallets for u in ("XRD", engine.stablecoin)
    )
    print(f"  replay of {len(ledger.transaction_log)} transactions matches: {same}")
    print(f"  double entry: {ledger.verify_double_entry()['valid']}")


def main():
    ledger = step_01_ledger()
    wait_for_enter()
    prices = step_02_oracle()
    wait_for_enter()
    engine = step_03_engine(ledger, prices)
    wait_for_enter()
    position_id = step_04_open(engine)
    wait_for_enter()
    step_05_interest(engine, prices, position_id)
    wait_for_enter()
    step_06_controller(engine, prices)
    wait_for_enter()
    keeper = step_07_keeper(engine, prices)
    wait_for_enter()
    step_08_crash(engine, prices, keeper, position_id)
    wait_for_enter()
    step_09_liquidate(engine, position_id)
    wait_for_enter()
    step_10_audit(engine)


if __name__ == "__main__":
    main()
