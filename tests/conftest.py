"""
conftest.py - Shared pytest fixtures for Stabilis tests

Provides common fixtures used across unit, conformance and functional tests:
- Ledgers (empty, and with the collateral token and stablecoin registered)
- A bootstrapped engine with one collateral type (XRD) and an oracle
- Positions in each lifecycle stage
- FakeView snapshots for the pure compute functions
"""

import pytest
from datetime import datetime
from decimal import Decimal

from stabilis import Ledger, collateral_token, stablecoin, VAULT_WALLET

from tests.fake_view import FakeView
from tests.helpers import T0, issue, make_engine, set_price


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("empty", T0, verbose=False, test_mode=True)


@pytest.fixture
def token_ledger():
    """Ledger with XRD and STAB tokens, alice holding 1,000 XRD."""
    ledger = Ledger("tokens", T0, verbose=False, test_mode=True)
    ledger.register_unit(collateral_token("XRD", "Radix"))
    ledger.register_unit(stablecoin("STAB"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    issue(ledger, "alice", "XRD", 1000)
    return ledger


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Bootstrapped engine: XRD at 1.0, zero-gain controller, default parameters."""
    return make_engine()


@pytest.fixture
def open_position(engine):
    """alice: 150 XRD against 100 STAB at price 1.0 (ratio exactly 1.5)."""
    position_id = engine.open("alice", "XRD", Decimal("150"), Decimal("100"))
    return engine, position_id


@pytest.fixture
def marked_position(open_position):
    """The open_position after XRD falls to 0.8 (ratio 1.2) and the keeper marks it."""
    engine, position_id = open_position
    set_price(engine, "XRD", "0.8")
    engine.mark("keeper", position_id)
    return engine, position_id


@pytest.fixture
def liquidator(engine):
    """bob holding 1,000 STAB."""
    issue(engine.ledger, "bob", engine.stablecoin, 1000)
    return "bob"


# =============================================================================
# FAKE VIEW FIXTURES
# =============================================================================

@pytest.fixture
def position_view():
    """FakeView of one Open XRD position (150 XRD, 100 STAB) and its protocol records."""
    return FakeView(
        balances={
            "alice": {"XRD": Decimal("850"), "STAB": Decimal("100")},
            "bob": {"STAB": Decimal("500")},
            VAULT_WALLET: {"XRD": Decimal("150")},
        },
        states={
            "STABILIS": {
                "admin": "admin",
                "stablecoin": "STAB",
                "minimum_mint": Decimal("1"),
                "grace_period_seconds": 300,
                "stop_openings": False,
                "stop_closings": False,
                "stop_liquidations": False,
                "allow_top_up_while_marked": True,
                "max_price_age_seconds": 3600,
                "unmarked_delay_seconds": 0,
                "stop_force_liquidate": False,
                "stop_force_mint": False,
                "force_liquidate_percentage": Decimal("0.95"),
                "force_mint_percentage": Decimal("1.05"),
                "force_mint_cr_multiplier": Decimal("3"),
                "next_position_id": 2,
                "positions_by_owner": {"alice": ["CDP_1"]},
                "liquidation_log": [],
                "total_bad_debt": Decimal("0"),
                "minters": [],
                "flash_minted": Decimal("0"),
                "flash_burned": Decimal("0"),
            },
            "PID:STAB": {
                "target_peg": Decimal("1"),
                "kp": Decimal("0"),
                "ki": Decimal("0"),
                "kd": Decimal("0"),
                "base_rate": Decimal("0"),
                "min_rate": Decimal("0"),
                "max_rate": Decimal("1"),
                "integral_bound": Decimal("0"),
                "allowed_deviation": Decimal("0"),
                "max_price_error": None,
                "integral_accumulator": Decimal("0"),
                "last_error": Decimal("0"),
                "last_tick_timestamp": None,
                "output_rate": Decimal("0"),
            },
            "COLLATERAL:XRD": {
                "id": "XRD",
                "accepted": True,
                "min_collateral_ratio": Decimal("1.5"),
                "liquidation_collateral_ratio": Decimal("1.2"),
                "liquidation_penalty_pct": Decimal("0.10"),
                "price_feed_id": "XRD",
                "debt_ceiling": Decimal("1000000"),
                "protocol_fee_pct": Decimal("0"),
                "max_debt_share": None,
                "cumulative_interest_index": Decimal("1"),
                "last_update_timestamp": T0,
                "current_annual_rate": Decimal("0"),
                "total_debt": Decimal("100"),
            },
            "CDP_1": {
                "id": "CDP_1",
                "owner": "alice",
                "collateral_type": "XRD",
                "collateral_amount": Decimal("150"),
                "principal_debt": Decimal("100"),
                "interest_index_snapshot": Decimal("1"),
                "status": "Open",
                "created_at": T0,
                "updated_at": T0,
                "bad_debt": Decimal("0"),
                "marked_at": None,
                "marked_by": None,
                "grace_expiry": None,
                "leftover_collateral": Decimal("0"),
            },
        },
        time=datetime(2025, 1, 1),
    )
