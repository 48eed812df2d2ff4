"""
Preset strategy parameters for different market conditions.

Pure data: each preset only supplies defaults for gamma, spread bounds and
update cadence. Explicit overrides always win over the preset.
"""

AS_PRESETS = {
    # Wider spreads, stronger inventory targeting.
    # Good for: low liquidity, volatile markets
    "conservative": {
        "gamma": 1.0,
        "max_spread_multiplier": 4.0,
        "min_spread": 0.02,
        "update_interval_ms": 2000,
    },
    # Balanced. Good for: normal market conditions
    "moderate": {
        "gamma": 0.5,
        "max_spread_multiplier": 3.0,
        "min_spread": 0.01,
        "update_interval_ms": 1000,
    },
    # Tighter spreads, weaker inventory targeting.
    # Good for: high liquidity, stable markets
    "aggressive": {
        "gamma": 0.1,
        "max_spread_multiplier": 2.0,
        "min_spread": 0.005,
        "update_interval_ms": 500,
    },
}

PRESET_NAMES = tuple(AS_PRESETS)
