"""
price_feed.py - Price feeds for collateral valuation and peg control

Provides the price inputs the engine reads before every operation.

Classes:
- PriceFeed: Protocol defining the feed interface
- StaticPriceFeed: Latest observation per asset, pushed by an oracle
- TimeSeriesPriceFeed: Historical observations with point-in-time lookup
- ConstantProductPool: x*y=k liquidity pool quoting the stablecoin's market price
- PriceFeedAdapter: Routes assets to feeds and enforces freshness

Every feed returns (price, timestamp) so staleness can be judged by the caller.
Prices are quoted in the peg currency.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional, List, Tuple, Protocol, runtime_checkable
from bisect import bisect_right

from .core import (
    PriceMap, StalePriceError, ValidationError, InsufficientFunds, to_decimal,
)


# (price, observation timestamp)
Observation = Tuple[Decimal, datetime]


@runtime_checkable
class PriceFeed(Protocol):
    """
    Protocol for price feeds.

    get_price() returns the latest observation for an asset at or before
    `now`, or None when the feed knows nothing about it.
    """

    def get_price(self, asset: str, now: datetime) -> Optional[Observation]:
        ...


class StaticPriceFeed:
    """
    Oracle-style feed holding the latest observation per asset.

    Updates older than the stored observation are rejected, so a delayed
    message can never overwrite a newer price.
    """

    def __init__(self, observations: Optional[Dict[str, Observation]] = None):
        self.observations: Dict[str, Observation] = {}
        for asset, (price, timestamp) in (observations or {}).items():
            self.update_price(asset, price, timestamp)

    def update_price(self, asset: str, price, timestamp: datetime) -> None:
        """
        Record a new observation.

        Raises:
            ValidationError: If the price is not positive
            ValueError: If timestamp is older than the stored observation
        """
        price = to_decimal(price)
        if price <= 0:
            raise ValidationError(f"Price for {asset} must be positive, got {price}")
        current = self.observations.get(asset)
        if current is not None and timestamp < current[1]:
            raise ValueError(
                f"Out-of-order price for {asset}: {timestamp} < {current[1]}"
            )
        self.observations[asset] = (price, timestamp)

    def get_price(self, asset: str, now: datetime) -> Optional[Observation]:
        return self.observations.get(asset)

    def __repr__(self):
        return f"StaticPriceFeed({len(self.observations)} assets)"


class TimeSeriesPriceFeed:
    """
    Feed with time-varying prices.

    Uses the most recent observation at or before the requested time.
    Supports incremental add_price() or batch initialization with full
    price paths for simulations.
    """

    def __init__(self, price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None):
        """
        Args:
            price_paths: Optional dict mapping assets to lists of (timestamp, price)

        Example:
            feed = TimeSeriesPriceFeed({
                'XRD': [(t0, Decimal("1.0")), (t1, Decimal("0.8"))],
            })
        """
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        if price_paths:
            for asset, path in price_paths.items():
                for timestamp, price in path:
                    self.add_price(asset, timestamp, price)

    def add_price(self, asset: str, timestamp: datetime, price) -> None:
        """Add an observation; history is kept in chronological order."""
        price = to_decimal(price)
        if price <= 0:
            raise ValidationError(f"Price for {asset} must be positive, got {price}")
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, price))
        history.sort(key=lambda x: x[0])

    def get_price(self, asset: str, now: datetime) -> Optional[Observation]:
        """
        Latest observation at or before `now`, by binary search.

        Returns None if there is no observation at or before `now`.
        """
        history = self.price_history.get(asset)
        if not history:
            return None

        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, now)
        if idx == 0:
            return None

        timestamp, price = history[idx - 1]
        return price, timestamp

    def get_all_timestamps(self, asset: Optional[str] = None) -> List[datetime]:
        """Sorted unique observation times, for one asset or all of them."""
        if asset is not None:
            return [ts for ts, _ in self.price_history.get(asset, [])]
        all_ts = set()
        for history in self.price_history.values():
            all_ts.update(ts for ts, _ in history)
        return sorted(all_ts)

    def __repr__(self):
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceFeed({len(self.price_history)} assets, {total} observations)"


class ConstantProductPool:
    """
    Constant-product (x*y=k) pool between the stablecoin and a quote asset.

    The stablecoin's market price is quote_reserve / stable_reserve. A swap
    pays out out = in*R_out*(1-fee) / (R_in + in*(1-fee)); the fee stays in
    the pool.

    Example:
        pool = ConstantProductPool("STAB", "USDC", Decimal("1000"), Decimal("1000"))
        pool.swap("USDC", Decimal("50"), now)   # buys STAB, price rises
    """

    def __init__(
        self,
        stable_asset: str,
        quote_asset: str,
        stable_reserve,
        quote_reserve,
        fee: Decimal = Decimal("0.003"),
        created_at: Optional[datetime] = None,
    ):
        stable_reserve = to_decimal(stable_reserve)
        quote_reserve = to_decimal(quote_reserve)
        fee = to_decimal(fee)
        if stable_reserve <= 0 or quote_reserve <= 0:
            raise ValidationError("Pool reserves must be positive")
        if fee < 0 or fee >= 1:
            raise ValidationError(f"Pool fee must be in [0, 1), got {fee}")
        self.stable_asset = stable_asset
        self.quote_asset = quote_asset
        self.reserves: Dict[str, Decimal] = {
            stable_asset: stable_reserve,
            quote_asset: quote_reserve,
        }
        self.fee = fee
        self.last_update: datetime = created_at or datetime(1970, 1, 1)

    def market_price(self) -> Decimal:
        """Price of one stablecoin in quote units."""
        return self.reserves[self.quote_asset] / self.reserves[self.stable_asset]

    def quote(self, asset_in: str, amount_in) -> Decimal:
        """Output amount of a swap of amount_in of asset_in, without executing it."""
        amount_in = to_decimal(amount_in)
        if asset_in not in self.reserves:
            raise ValidationError(f"{asset_in} is not traded in this pool")
        if amount_in <= 0:
            raise ValidationError(f"Swap amount must be positive, got {amount_in}")
        asset_out = self.quote_asset if asset_in == self.stable_asset else self.stable_asset
        effective_in = amount_in * (1 - self.fee)
        return (effective_in * self.reserves[asset_out]) / (self.reserves[asset_in] + effective_in)

    def swap(self, asset_in: str, amount_in, now: datetime) -> Decimal:
        """Execute a swap and return the amount paid out."""
        amount_in = to_decimal(amount_in)
        amount_out = self.quote(asset_in, amount_in)
        asset_out = self.quote_asset if asset_in == self.stable_asset else self.stable_asset
        if amount_out >= self.reserves[asset_out]:
            raise InsufficientFunds(f"Pool cannot pay out {amount_out} {asset_out}")
        self.reserves[asset_in] += amount_in
        self.reserves[asset_out] -= amount_out
        self.last_update = max(self.last_update, now)
        return amount_out

    def get_price(self, asset: str, now: datetime) -> Optional[Observation]:
        # The pool is always current: its price is the reserves right now.
        if asset != self.stable_asset:
            return None
        return self.market_price(), now

    def __repr__(self):
        return (
            f"ConstantProductPool({self.stable_asset}/{self.quote_asset}, "
            f"price={self.market_price():.6f})"
        )


class PriceFeedAdapter:
    """
    Single entry point for prices.

    Routes each asset to the feed registered for it and enforces freshness.
    A price is usable when it exists, is positive, is not from the future and
    is at most max_age_seconds old.
    """

    def __init__(self, feeds: Optional[Dict[str, PriceFeed]] = None, max_age_seconds: int = 3600):
        """
        Args:
            feeds: asset (or price feed id) -> feed
            max_age_seconds: maximum accepted age of an observation
        """
        if max_age_seconds < 0:
            raise ValidationError(f"max_age_seconds must be >= 0, got {max_age_seconds}")
        self.feeds: Dict[str, PriceFeed] = dict(feeds or {})
        self.max_age = timedelta(seconds=max_age_seconds)

    def register_feed(self, asset: str, feed: PriceFeed) -> None:
        self.feeds[asset] = feed

    def get_price(self, asset: str, now: datetime, max_age_seconds: Optional[int] = None) -> Observation:
        """
        Fresh (price, timestamp) for an asset.

        Args:
            max_age_seconds: overrides the adapter's max age for this read

        Raises:
            StalePriceError: No feed, no observation, a future observation or one older than max age
            ValidationError: If the feed reports a non-positive price
        """
        max_age = self.max_age if max_age_seconds is None else timedelta(seconds=max_age_seconds)
        feed = self.feeds.get(asset)
        if feed is None:
            raise StalePriceError(f"No price feed registered for {asset}")
        observation = feed.get_price(asset, now)
        if observation is None:
            raise StalePriceError(f"No price available for {asset} at {now}")
        price, timestamp = observation
        price = to_decimal(price)
        if price <= 0:
            raise ValidationError(f"Non-positive price for {asset}: {price}")
        if timestamp > now:
            raise StalePriceError(f"Price for {asset} is from the future: {timestamp} > {now}")
        if now - timestamp > max_age:
            raise StalePriceError(
                f"Price for {asset} is stale: observed {timestamp}, now {now}, max age {max_age}"
            )
        return price, timestamp

    def price(self, asset: str, now: datetime, max_age_seconds: Optional[int] = None) -> Decimal:
        """Fresh price only."""
        return self.get_price(asset, now, max_age_seconds)[0]

    def get_prices(self, assets, now: datetime, max_age_seconds: Optional[int] = None) -> PriceMap:
        """Fresh prices for several assets; fails on the first stale one."""
        return {asset: self.price(asset, now, max_age_seconds) for asset in sorted(assets)}

    def market_price(self, stable_asset: str, now: datetime) -> Optional[Decimal]:
        """Market price of the stablecoin, or None when no feed quotes it."""
        if stable_asset not in self.feeds:
            return None
        return self.price(stable_asset, now)

    def __repr__(self):
        return f"PriceFeedAdapter({sorted(self.feeds)}, max_age={self.max_age})"
