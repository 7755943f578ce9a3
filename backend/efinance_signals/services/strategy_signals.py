from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence, Tuple

from efinance_signals.core.config import get_settings
from efinance_signals.schemas.strategy_scripts import (
    MarketSnapshot,
    ScriptConfig,
    StrategyRecord,
    StrategySignalsRead,
    ThresholdConditions,
)
from efinance_signals.services.script_expression import EvaluationContext
from efinance_signals.services.strategy_presets import LEGACY_COMBINED_TEMPLATES, get_preset
from efinance_signals.services.strategy_scripts import (
    EvaluationResult,
    evaluate_combined_script,
    evaluate_strategy_scripts,
)

logger = logging.getLogger(__name__)

StrategySignals = StrategySignalsRead
SignalJob = Tuple[StrategyRecord, EvaluationContext]


def context_from_snapshot(snapshot: MarketSnapshot) -> EvaluationContext:
    return EvaluationContext.create(
        snapshot.symbol,
        price=snapshot.price,
        change=snapshot.change,
        closes=snapshot.closes,
        highs=snapshot.highs,
        lows=snapshot.lows,
        volumes=snapshot.volumes,
    )


def _run_script_config(script: ScriptConfig, context: EvaluationContext) -> EvaluationResult:
    """Run the stored scripts, or the named template when both are blank.

    Templates resolve against the presets first, then the older combined
    single-script templates.
    """

    written = (script.buy_script or "").strip() or (script.sell_script or "").strip()
    if written or not script.template:
        return evaluate_strategy_scripts(script.buy_script, script.sell_script, context)
    preset = get_preset(script.template)
    if preset is not None:
        return evaluate_strategy_scripts(preset.buy_script, preset.sell_script, context)
    combined = LEGACY_COMBINED_TEMPLATES.get(script.template)
    if combined is not None:
        return evaluate_combined_script(combined, context)
    return EvaluationResult.failed(f"Unknown strategy template '{script.template}'")


def _buy_triggered(cond: Optional[ThresholdConditions], price: float, change: float) -> bool:
    if cond is None or not cond.enabled:
        return False
    if cond.price_threshold is not None and price <= cond.price_threshold:
        return True
    if cond.change_threshold is not None and change <= cond.change_threshold / 100:
        return True
    return False


def _sell_triggered(cond: Optional[ThresholdConditions], price: float, change: float) -> bool:
    if cond is None or not cond.enabled:
        return False
    if cond.price_threshold is not None and price >= cond.price_threshold:
        return True
    if cond.change_threshold is not None and change >= cond.change_threshold / 100:
        return True
    return False


def check_simple_signals(
    strategy: StrategyRecord, context: EvaluationContext
) -> StrategySignals:
    """Threshold mode: compare the quote directly against fixed levels."""

    signals = strategy.signals
    if signals is None:
        return StrategySignals(strategy_id=strategy.id, symbol=context.symbol, mode="none")
    price = context.quote.price
    change = context.quote.change
    return StrategySignals(
        strategy_id=strategy.id,
        symbol=context.symbol,
        mode="simple",
        buy_signal=_buy_triggered(signals.buy_conditions, price, change),
        sell_signal=_sell_triggered(signals.sell_conditions, price, change),
    )


def check_strategy_signals(
    strategy: StrategyRecord, context: EvaluationContext
) -> StrategySignals:
    """Evaluate one strategy for one symbol.

    Script strategies that fail to compile or evaluate fall back to the
    threshold conditions, keeping the script error on the result.
    """

    script = strategy.script
    if strategy.type != "script" or script is None or not script.enabled:
        return check_simple_signals(strategy, context)

    result = _run_script_config(script, context)
    if result.error is None:
        return StrategySignals(
            strategy_id=strategy.id,
            symbol=context.symbol,
            mode="script",
            buy_signal=result.buy_signal,
            sell_signal=result.sell_signal,
            value=result.value,
        )

    logger.warning(
        "Script strategy failed; falling back to threshold conditions",
        extra={
            "extra": {
                "strategy_id": strategy.id,
                "symbol": context.symbol,
                "error": result.error,
            }
        },
    )
    fallback = check_simple_signals(strategy, context)
    return fallback.model_copy(update={"error": result.error, "fallback": True})


def evaluate_batch(
    jobs: Iterable[SignalJob], max_workers: Optional[int] = None
) -> List[StrategySignals]:
    """Evaluate independent (strategy, context) jobs in parallel.

    Each job must carry its own context; results keep the input order.
    """

    items: Sequence[SignalJob] = list(jobs)
    if not items:
        return []
    workers = max_workers if max_workers is not None else get_settings().batch_max_workers
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda job: check_strategy_signals(*job), items))


__all__ = [
    "SignalJob",
    "StrategySignals",
    "check_simple_signals",
    "check_strategy_signals",
    "context_from_snapshot",
    "evaluate_batch",
]
