"""
Black-Scholes Greeks for option trades.

European-style pricing sensitivities used to annotate option trades at
entry and exit and to report average Greeks exposure in the metrics.
"""

from datetime import datetime

import numpy as np
from scipy import stats

from tradesim_engine.backtest.models import Greeks
from tradesim_engine.domain.bar import Bar, OptionType

DEFAULT_VOLATILITY = 0.2
SECONDS_PER_YEAR = 365.0 * 86400.0


def _d1_d2(spot: float, strike: float, t: float, r: float, sigma: float) -> tuple[float, float]:
    sqrt_t = np.sqrt(t)
    d1 = (np.log(spot / strike) + (r + 0.5 * sigma**2) * t) / (sigma * sqrt_t)
    return float(d1), float(d1 - sigma * sqrt_t)


def black_scholes_greeks(
    spot: float,
    strike: float,
    time_to_expiry: float,
    volatility: float,
    risk_free_rate: float,
    option_type: OptionType,
) -> Greeks:
    """
    Compute Greeks for a European option.

    Args:
        spot: Underlying price
        strike: Strike price
        time_to_expiry: Years until expiry
        volatility: Annualized implied volatility (0.2 = 20%)
        risk_free_rate: Annual continuously compounded rate
        option_type: CALL or PUT

    Returns:
        Greeks with theta per calendar day and vega/rho per 1% move.
        Expired or degenerate inputs return the intrinsic delta only.
    """
    is_call = option_type == OptionType.CALL

    if time_to_expiry <= 0 or volatility <= 0 or spot <= 0 or strike <= 0:
        if is_call:
            delta = 1.0 if spot > strike else 0.0
        else:
            delta = -1.0 if spot < strike else 0.0
        return Greeks(
            delta=delta,
            implied_volatility=max(volatility, 0.0),
            time_to_expiry=max(time_to_expiry, 0.0),
        )

    t = time_to_expiry
    r = risk_free_rate
    d1, d2 = _d1_d2(spot, strike, t, r, volatility)
    pdf_d1 = float(stats.norm.pdf(d1))
    discount = float(np.exp(-r * t))

    gamma = pdf_d1 / (spot * volatility * np.sqrt(t))
    vega = spot * pdf_d1 * np.sqrt(t) / 100.0
    decay = -(spot * pdf_d1 * volatility) / (2.0 * np.sqrt(t))

    if is_call:
        delta = float(stats.norm.cdf(d1))
        theta = decay - r * strike * discount * float(stats.norm.cdf(d2))
        rho = strike * t * discount * float(stats.norm.cdf(d2)) / 100.0
    else:
        delta = float(stats.norm.cdf(d1)) - 1.0
        theta = decay + r * strike * discount * float(stats.norm.cdf(-d2))
        rho = -strike * t * discount * float(stats.norm.cdf(-d2)) / 100.0

    return Greeks(
        delta=delta,
        gamma=float(gamma),
        theta=float(theta) / 365.0,
        vega=float(vega),
        rho=float(rho),
        implied_volatility=volatility,
        time_to_expiry=t,
    )


def greeks_for_bar(bar: Bar, as_of: datetime, risk_free_rate: float) -> Greeks | None:
    """Greeks for an option bar, or None for non-option bars."""
    if not bar.is_option or bar.strike_price is None or bar.option_type is None:
        return None

    if bar.expiry is not None:
        time_to_expiry = max((bar.expiry - as_of).total_seconds() / SECONDS_PER_YEAR, 0.0)
    else:
        time_to_expiry = 0.0

    return black_scholes_greeks(
        spot=bar.underlying_price or bar.strike_price,
        strike=bar.strike_price,
        time_to_expiry=time_to_expiry,
        volatility=bar.implied_volatility or DEFAULT_VOLATILITY,
        risk_free_rate=risk_free_rate,
        option_type=bar.option_type,
    )
