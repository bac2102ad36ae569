"""
test_collateral.py - Unit tests for the collateral registry

Tests:
- CollateralType validation (ratios, penalties, limits)
- load_collateral for known and unknown types
- Debt ceiling and debt share limits
- Admin operations: add a type, change its parameters
"""

import pytest
from decimal import Decimal

from stabilis import (
    CollateralType, load_collateral, list_collateral_types, total_system_debt,
    ValidationError, UnacceptedCollateral, DebtCeilingExceeded, Unauthorized,
    UNIT_TYPE_COLLATERAL_TYPE,
)
from stabilis.units import (
    collateral_unit_symbol, check_mint_limits, create_collateral_type_unit,
    compute_add_collateral_type, compute_set_collateral_params,
)
from stabilis.units.collateral import require_accepted

from tests.helpers import T0, xrd_collateral_type


# ============================================================================
# COLLATERAL TYPE
# ============================================================================

class TestCollateralType:
    """Tests for CollateralType construction and validation."""

    def test_valid_type(self):
        ct = xrd_collateral_type()
        assert ct.unit_symbol == "COLLATERAL:XRD"
        assert ct.protocol_fee_pct == Decimal("0")
        assert ct.max_debt_share is None

    def test_numbers_coerced_to_decimal(self):
        ct = xrd_collateral_type(min_collateral_ratio=1.5, debt_ceiling=1000, max_debt_share=0.5)
        assert ct.min_collateral_ratio == Decimal("1.5")
        assert ct.debt_ceiling == Decimal("1000")
        assert ct.max_debt_share == Decimal("0.5")

    def test_lcr_below_one_raises(self):
        with pytest.raises(ValidationError, match="liquidation_collateral_ratio"):
            xrd_collateral_type(liquidation_collateral_ratio=Decimal("0.9"))

    def test_mcr_below_lcr_raises(self):
        with pytest.raises(ValidationError, match="below"):
            xrd_collateral_type(min_collateral_ratio=Decimal("1.1"))

    def test_mcr_equal_to_lcr_allowed(self):
        ct = xrd_collateral_type(min_collateral_ratio=Decimal("1.2"))
        assert ct.min_collateral_ratio == ct.liquidation_collateral_ratio

    def test_negative_penalty_raises(self):
        with pytest.raises(ValidationError, match="liquidation_penalty_pct"):
            xrd_collateral_type(liquidation_penalty_pct=Decimal("-0.01"))

    def test_negative_protocol_fee_raises(self):
        with pytest.raises(ValidationError, match="protocol_fee_pct"):
            xrd_collateral_type(protocol_fee_pct=Decimal("-0.01"))

    def test_negative_ceiling_raises(self):
        with pytest.raises(ValidationError, match="debt_ceiling"):
            xrd_collateral_type(debt_ceiling=Decimal("-1"))

    @pytest.mark.parametrize("share", [Decimal("0"), Decimal("1.5")])
    def test_debt_share_out_of_range(self, share):
        with pytest.raises(ValidationError, match="max_debt_share"):
            xrd_collateral_type(max_debt_share=share)

    def test_missing_price_feed_raises(self):
        with pytest.raises(ValidationError, match="price feed"):
            xrd_collateral_type(price_feed_id="")


# ============================================================================
# ADAPTERS AND QUERIES
# ============================================================================

class TestLoadCollateral:
    """Tests for reading collateral types from a view."""

    def test_load_collateral(self, position_view):
        ct, interest = load_collateral(position_view, "XRD")
        assert ct == xrd_collateral_type()
        assert interest.cumulative_interest_index == Decimal("1")
        assert interest.total_debt == Decimal("100")
        assert interest.last_update_timestamp == T0

    def test_unknown_type_is_unaccepted(self, position_view):
        with pytest.raises(UnacceptedCollateral, match="Unknown collateral type ETH"):
            load_collateral(position_view, "ETH")

    def test_list_collateral_types(self, position_view):
        assert list_collateral_types(position_view) == ["XRD"]

    def test_total_system_debt(self, position_view):
        assert total_system_debt(position_view) == Decimal("100")

    def test_require_accepted(self):
        require_accepted(xrd_collateral_type())
        with pytest.raises(UnacceptedCollateral):
            require_accepted(xrd_collateral_type(accepted=False))


# ============================================================================
# MINT LIMITS
# ============================================================================

class TestMintLimits:
    """Tests for check_mint_limits."""

    def test_within_ceiling(self):
        check_mint_limits(xrd_collateral_type(debt_ceiling=Decimal("500")), Decimal("500"), Decimal("500"))

    def test_above_ceiling(self):
        with pytest.raises(DebtCeilingExceeded, match="ceiling"):
            check_mint_limits(xrd_collateral_type(debt_ceiling=Decimal("500")), Decimal("500.01"), Decimal("500.01"))

    def test_share_limit(self):
        ct = xrd_collateral_type(max_debt_share=Decimal("0.5"))
        check_mint_limits(ct, Decimal("50"), Decimal("100"))
        with pytest.raises(DebtCeilingExceeded, match="share"):
            check_mint_limits(ct, Decimal("60"), Decimal("100"))

    def test_share_ignored_without_system_debt(self):
        ct = xrd_collateral_type(max_debt_share=Decimal("0.5"))
        check_mint_limits(ct, Decimal("0"), Decimal("0"))


# ============================================================================
# ADMIN OPERATIONS
# ============================================================================

class TestCollateralAdmin:
    """Tests for adding and reconfiguring collateral types."""

    def test_create_unit_has_fresh_index(self):
        unit = create_collateral_type_unit(xrd_collateral_type(id="ETH", price_feed_id="ETH"), T0, Decimal("0.02"))
        assert unit.symbol == "COLLATERAL:ETH"
        assert unit.unit_type == UNIT_TYPE_COLLATERAL_TYPE
        assert unit.state["cumulative_interest_index"] == Decimal("1")
        assert unit.state["current_annual_rate"] == Decimal("0.02")
        assert unit.state["total_debt"] == Decimal("0")

    def test_add_collateral_type(self, position_view):
        ct = xrd_collateral_type(id="ETH", price_feed_id="ETH")
        pending = compute_add_collateral_type(position_view, "admin", ct)
        (unit,) = pending.units_to_create
        assert unit.symbol == collateral_unit_symbol("ETH")
        assert unit.state["last_update_timestamp"] == position_view.current_time
        assert pending.moves == ()

    def test_add_existing_type_raises(self, position_view):
        with pytest.raises(ValidationError, match="already exists"):
            compute_add_collateral_type(position_view, "admin", xrd_collateral_type())

    def test_add_requires_admin(self, position_view):
        with pytest.raises(Unauthorized):
            compute_add_collateral_type(position_view, "alice", xrd_collateral_type(id="ETH"))

    def test_set_params_keeps_interest_state(self, position_view):
        pending = compute_set_collateral_params(position_view, "admin", "XRD", debt_ceiling=Decimal("5000"))
        (change,) = pending.state_changes
        assert change.new_state["debt_ceiling"] == Decimal("5000")
        assert change.new_state["total_debt"] == Decimal("100")
        assert change.new_state["cumulative_interest_index"] == Decimal("1")

    def test_set_params_validates_whole_config(self, position_view):
        with pytest.raises(ValidationError):
            compute_set_collateral_params(position_view, "admin", "XRD", liquidation_collateral_ratio=Decimal("1.6"))

    def test_set_params_cannot_change_id(self, position_view):
        with pytest.raises(ValidationError, match="cannot be changed"):
            compute_set_collateral_params(position_view, "admin", "XRD", id="ETH")

    def test_set_unknown_param(self, position_view):
        with pytest.raises(ValidationError, match="Unknown collateral parameters"):
            compute_set_collateral_params(position_view, "admin", "XRD", haircut=Decimal("0.5"))

    def test_set_params_requires_admin(self, position_view):
        with pytest.raises(Unauthorized):
            compute_set_collateral_params(position_view, "bob", "XRD", accepted=False)
