from .strategy_scripts import (
    EvaluationResultRead,
    MarketSnapshot,
    PresetRead,
    StrategyRecord,
    StrategySignalsRead,
)

__all__ = [
    "EvaluationResultRead",
    "MarketSnapshot",
    "PresetRead",
    "StrategyRecord",
    "StrategySignalsRead",
]
