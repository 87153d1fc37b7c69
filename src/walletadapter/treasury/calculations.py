"""Float band and sweep split arithmetic.

Pure functions over Decimal. Balances are in base units unless a name says
otherwise; percentages are fractions in [0, 1].
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Protocol, Union

Number = Union[Decimal, int, str]

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class FloatParams(Protocol):
    """The tuning percentages of a float band (see FloatManagerParam)."""

    min_percent_max_user_balance: Decimal
    max_percent_max_user_balance: Decimal
    min_percent_total_user_balance: Decimal
    average_percent_total_user_balance: Decimal
    max_percent_total_user_balance: Decimal
    percent_minimum_trigger_level: Decimal
    percent_maximum_trigger_level: Decimal


def _d(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def to_base_units(amount: Number, decimals: int) -> Decimal:
    """Scale a display amount to base units (not rounded)."""
    return _d(amount) * (Decimal(10) ** decimals)


def to_display_units(amount: Number, decimals: int) -> Decimal:
    """Scale a base-unit amount to display units."""
    return _d(amount) / (Decimal(10) ** decimals)


def to_integer_units(amount: Number) -> int:
    """Truncate a base-unit Decimal to the integer sent on the wire."""
    return int(_d(amount).to_integral_value(rounding=ROUND_DOWN))


def total_user_balance(available_balance_sum: Number, decimals: int) -> Decimal:
    """Total liability to users in base units, from the sum of available balances."""
    return to_base_units(available_balance_sum, decimals)


def min_float(params: FloatParams, total_users: Number, max_user: Number) -> Decimal:
    return max(
        _d(params.min_percent_total_user_balance) * _d(total_users),
        _d(params.min_percent_max_user_balance) * _d(max_user),
    )


def max_float(params: FloatParams, total_users: Number, max_user: Number) -> Decimal:
    total_users = _d(total_users)
    blended = (
        _d(params.average_percent_total_user_balance) * total_users
        + _d(params.max_percent_max_user_balance) * _d(max_user)
    )
    return max(
        _d(params.max_percent_total_user_balance) * total_users,
        min(total_users, blended),
    )


def min_trigger(params: FloatParams, minimum: Number) -> Decimal:
    return _d(params.percent_minimum_trigger_level) * _d(minimum)


def max_trigger(params: FloatParams, maximum: Number) -> Decimal:
    return _d(params.percent_maximum_trigger_level) * _d(maximum)


def float_deficit(
    deposits: Number,
    withdrawals: Number,
    minimum: Number,
    maximum: Number,
    onchain: Number,
) -> Decimal:
    """How much the float needs to reach its target.

    Net outflow since the last run aims for the top of the band, otherwise the
    bottom. Negative values mean a surplus.
    """
    if _d(deposits) < _d(withdrawals):
        return _d(maximum) - _d(onchain)
    return _d(minimum) - _d(onchain)


def sweep_split(
    onchain: Number,
    minimum: Number,
    deficit: Number,
    sweep_fund: Number,
) -> tuple[int, int]:
    """Split a sweep between float and brokerage as integer percents.

    The float only receives a share when it sits at or below ``minimum``, and
    never more than its deficit. Percents are truncated so the float share can
    not overshoot. Returns (0, 0) when there is nothing to sweep.
    """
    sweep_fund = _d(sweep_fund)
    if sweep_fund <= ZERO:
        return 0, 0

    float_percent = 0
    deficit = _d(deficit)
    if _d(onchain) <= _d(minimum) and deficit > ZERO:
        share = min(deficit, sweep_fund) / sweep_fund
        float_percent = int((share * HUNDRED).to_integral_value(rounding=ROUND_DOWN))
    return float_percent, 100 - float_percent


@dataclass
class FloatBand:
    """Float targets for one asset, all in base units."""

    minimum: Decimal
    maximum: Decimal
    min_trigger: Decimal
    max_trigger: Decimal

    @classmethod
    def compute(cls, params: FloatParams, total_users: Number, max_user: Number) -> "FloatBand":
        minimum = min_float(params, total_users, max_user)
        maximum = max_float(params, total_users, max_user)
        return cls(
            minimum=minimum,
            maximum=maximum,
            min_trigger=min_trigger(params, minimum),
            max_trigger=max_trigger(params, maximum),
        )

    def needs_funding(self, onchain: Number) -> bool:
        return _d(onchain) <= self.min_trigger

    def surplus(self, onchain: Number) -> Decimal:
        """Amount above the band, or zero."""
        return max(_d(onchain) - self.maximum, ZERO)


def sweep_band(params: FloatParams, total_users: Number) -> tuple[Decimal, Decimal]:
    """Simplified (min, max) band used when deciding where swept funds go."""
    total_users = _d(total_users)
    return (
        _d(params.min_percent_total_user_balance) * total_users,
        _d(params.max_percent_total_user_balance) * total_users,
    )
