"""
Position Invariant Conformance Tests

INVARIANT: Owner operations never leave a position below its minimum ratio.

    ∀ owner operation op ∈ {open, borrow_more, remove_collateral} on position p at price P:
        op succeeds ⟹ collateral(p) * P / debt(p) ≥ min_collateral_ratio

Operations that reduce risk (top_up, partial_close) never lower the ratio.
Only a price move can take a position below the minimum.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from stabilis import StabilisError, PositionStatus

from tests.helpers import make_engine, set_price


amounts = st.decimals(min_value=Decimal("1"), max_value=Decimal("3000"), places=2)
MIN_RATIO = Decimal("1.5")


class TestPositionInvariantProperties:
    """Property-based minimum-ratio tests."""

    @given(amounts, amounts, st.sampled_from(["0.5", "1", "2.5"]))
    @settings(max_examples=50)
    def test_open_respects_minimum(self, collateral, debt, price):
        """
        PROPERTY: A position exists only if it opened at or above the minimum ratio.
        """
        engine = make_engine(price=Decimal(price))
        try:
            position_id = engine.open("alice", "XRD", collateral, debt)
        except StabilisError:
            assert collateral * Decimal(price) / debt < MIN_RATIO
            return
        assert engine.collateral_ratio(position_id) >= MIN_RATIO

    @given(st.lists(
        st.tuples(
            st.sampled_from(["borrow_more", "remove_collateral", "top_up", "partial_close"]),
            st.decimals(min_value=Decimal("0.01"), max_value=Decimal("500"), places=2),
        ),
        min_size=1, max_size=15,
    ))
    @settings(max_examples=50, deadline=None)
    def test_adjustments_respect_minimum(self, ops):
        """
        PROPERTY: After any mix of adjustments the position is at or above the minimum.
        """
        engine = make_engine()
        position_id = engine.open("alice", "XRD", Decimal("600"), Decimal("200"))

        for kind, amount in ops:
            before = engine.collateral_ratio(position_id)
            try:
                getattr(engine, kind)("alice", position_id, amount)
            except StabilisError:
                continue
            if engine.position(position_id).status != PositionStatus.OPEN:
                break
            after = engine.collateral_ratio(position_id)
            assert after >= MIN_RATIO
            if kind in ("top_up", "partial_close"):
                assert after >= before

    @given(st.decimals(min_value=Decimal("0.1"), max_value=Decimal("3"), places=2))
    @settings(max_examples=50)
    def test_price_moves_only_change_ratio(self, price):
        """
        PROPERTY: A price move scales the ratio without touching the position record.
        """
        engine = make_engine()
        position_id = engine.open("alice", "XRD", Decimal("150"), Decimal("100"))
        record = engine.position(position_id)
        set_price(engine, "XRD", price)
        assert engine.collateral_ratio(position_id) == Decimal("1.5") * price
        assert engine.position(position_id) == record
