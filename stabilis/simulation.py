"""
simulation.py - Monte Carlo peg simulation of the interest controller

Research tooling for tuning PIDParameters before they are set on-ledger.
The market price follows a random walk whose drift responds to the rate the
controller sets:

    price[t+1] = price[t] * (1 + noise[t] - rate_elasticity * (rate[t] - base_rate) * dt_years)

noise is N(0, volatility) drawn from numpy's Generator. Each step runs the
same calculate_tick() the ledger uses, so what is simulated is exactly what
is deployed.

Provides:
- simulate_peg: one simulated path as numpy arrays plus summary statistics
- deviation_trigger_probability: chance a single step leaves the deadband
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

import numpy as np
from scipy.special import erf as scipy_erf

from .core import SECONDS_PER_YEAR, ValidationError
from .units.pid import PIDParameters, calculate_tick, initial_pid_state

SQRT_2 = math.sqrt(2.0)


@dataclass(frozen=True)
class PegSimulation:
    """One simulated path. Arrays all have length steps + 1."""
    times: np.ndarray      # seconds since start
    prices: np.ndarray
    errors: np.ndarray     # controller error after deadband and clamp
    rates: np.ndarray      # controller output
    summary: Dict[str, float]


def deviation_trigger_probability(allowed_deviation: float, volatility: float) -> float:
    """P(|N(0, volatility)| > allowed_deviation): chance one step moves the controller."""
    if volatility <= 0:
        raise ValidationError(f"volatility must be positive, got {volatility}")
    return float(1.0 - scipy_erf(allowed_deviation / (volatility * SQRT_2)))


def simulate_peg(
    params: PIDParameters,
    steps: int = 1000,
    dt_seconds: int = 3600,
    volatility: float = 0.001,
    rate_elasticity: float = 50.0,
    seed: Optional[int] = None,
    initial_price: float = 1.0,
) -> PegSimulation:
    """
    Simulate the controller against a rate-sensitive market.

    Args:
        params: Controller parameters under test
        steps: Number of ticks
        dt_seconds: Time between ticks
        volatility: Standard deviation of the per-step relative price shock
        rate_elasticity: Price drift per unit of annualized rate above base_rate
        seed: Seed for numpy's default_rng (reproducible paths)
        initial_price: Starting market price

    Returns:
        PegSimulation with arrays and summary statistics
    """
    if steps <= 0:
        raise ValidationError(f"steps must be positive, got {steps}")
    if dt_seconds <= 0:
        raise ValidationError(f"dt_seconds must be positive, got {dt_seconds}")
    if volatility < 0:
        raise ValidationError(f"volatility must be >= 0, got {volatility}")
    if initial_price <= 0:
        raise ValidationError(f"initial_price must be positive, got {initial_price}")

    rng = np.random.default_rng(seed)
    noise = rng.normal(0.0, volatility, size=steps)
    dt_years = dt_seconds / float(SECONDS_PER_YEAR)
    base_rate = float(params.base_rate)

    times = np.arange(steps + 1, dtype=float) * dt_seconds
    prices = np.empty(steps + 1)
    errors = np.empty(steps + 1)
    rates = np.empty(steps + 1)

    start = datetime(2025, 1, 1)
    state = initial_pid_state(params)
    price = initial_price
    for i in range(steps + 1):
        now = start + timedelta(seconds=int(times[i]))
        state = calculate_tick(params, state, Decimal(str(price)), now)
        prices[i] = price
        errors[i] = float(state.last_error)
        rates[i] = float(state.output_rate)
        if i < steps:
            drift = rate_elasticity * (rates[i] - base_rate) * dt_years
            price = max(float(price * (1.0 + noise[i] - drift)), 1e-9)

    deviation = np.abs(prices / float(params.target_peg) - 1.0)
    summary = {
        'mean_abs_deviation': float(np.mean(deviation)),
        'max_abs_deviation': float(np.max(deviation)),
        'final_price': float(prices[-1]),
        'final_rate': float(rates[-1]),
        'mean_rate': float(np.mean(rates)),
        'time_at_max_rate': float(np.mean(rates >= float(params.max_rate))),
        'time_at_min_rate': float(np.mean(rates <= float(params.min_rate))),
    }
    return PegSimulation(times=times, prices=prices, errors=errors, rates=rates, summary=summary)
