"""Treasury arithmetic shared by the float manager and the sweeper."""

from walletadapter.treasury.calculations import (
    FloatBand,
    float_deficit,
    max_float,
    max_trigger,
    min_float,
    min_trigger,
    sweep_band,
    sweep_split,
    to_base_units,
    to_display_units,
    to_integer_units,
    total_user_balance,
)

__all__ = [
    "FloatBand",
    "float_deficit",
    "max_float",
    "max_trigger",
    "min_float",
    "min_trigger",
    "sweep_band",
    "sweep_split",
    "to_base_units",
    "to_display_units",
    "to_integer_units",
    "total_user_balance",
]
