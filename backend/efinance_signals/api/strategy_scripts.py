from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status

from efinance_signals.core.config import Settings, get_settings
from efinance_signals.core.logging import log_with_correlation
from efinance_signals.schemas.strategy_scripts import (
    CompileRequest,
    CompileResponse,
    EvaluateRequest,
    EvaluationResultRead,
    PresetCustomizeRequest,
    PresetRead,
    SignalsRequest,
    SignalsResponse,
)
from efinance_signals.services.script_errors import ScriptError, ScriptParseError
from efinance_signals.services.script_expression import EvaluationContext
from efinance_signals.services.strategy_presets import (
    PresetTemplate,
    customize_preset,
    get_preset,
    list_presets,
)
from efinance_signals.services.strategy_scripts import (
    compile as compile_script,
)
from efinance_signals.services.strategy_scripts import evaluate_strategy_scripts
from efinance_signals.services.strategy_signals import (
    context_from_snapshot,
    evaluate_batch,
)

# ruff: noqa: B008  # FastAPI dependency injection pattern

router = APIRouter()
logger = logging.getLogger(__name__)


def _preset_read(preset: PresetTemplate) -> PresetRead:
    return PresetRead(
        key=preset.key,
        name=preset.name,
        description=preset.description,
        buy_script=preset.buy_script,
        sell_script=preset.sell_script,
        parameters=dict(preset.parameters),
    )


@router.get("/presets", response_model=List[PresetRead])
def read_presets() -> List[PresetRead]:
    return [_preset_read(p) for p in list_presets()]


@router.get("/presets/{key}", response_model=PresetRead)
def read_preset(key: str) -> PresetRead:
    preset = get_preset(key)
    if preset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Preset not found")
    return _preset_read(preset)


@router.post("/presets/{key}/customize", response_model=PresetRead)
def customize(key: str, payload: PresetCustomizeRequest) -> PresetRead:
    if get_preset(key) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Preset not found")
    try:
        preset = customize_preset(key, **payload.parameters)
    except ScriptError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _preset_read(preset)


@router.post("/compile", response_model=CompileResponse)
def compile_endpoint(payload: CompileRequest) -> CompileResponse:
    try:
        compiled = compile_script(payload.script)
    except ScriptError as exc:
        if payload.raise_on_error:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        position = exc.position if isinstance(exc, ScriptParseError) else None
        return CompileResponse(ok=False, error=str(exc), position=position)
    return CompileResponse(ok=True, ast=compiled.to_dict())


@router.post("/evaluate", response_model=EvaluationResultRead)
def evaluate_endpoint(payload: EvaluateRequest, request: Request) -> EvaluationResultRead:
    context = context_from_snapshot(payload.snapshot)
    result = evaluate_strategy_scripts(payload.buy_script, payload.sell_script, context)
    if result.error:
        log_with_correlation(
            logger,
            request,
            logging.INFO,
            "Script evaluation returned an error",
            symbol=payload.snapshot.symbol,
            error=result.error,
        )
    return EvaluationResultRead(
        buy_signal=result.buy_signal,
        sell_signal=result.sell_signal,
        value=result.value,
        error=result.error,
    )


@router.post("/signals", response_model=SignalsResponse)
def signals_endpoint(
    payload: SignalsRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
) -> SignalsResponse:
    snapshots = {s.symbol: s for s in payload.snapshots}
    jobs: List[Tuple] = []
    missing: Dict[str, None] = {}
    for strategy in payload.strategies:
        for symbol in strategy.symbols:
            snapshot = snapshots.get(symbol)
            if snapshot is None:
                missing[symbol] = None
                continue
            # Fresh context per (strategy, symbol) so indicator caches never leak.
            context: EvaluationContext = context_from_snapshot(snapshot)
            jobs.append((strategy, context))

    results = evaluate_batch(jobs, max_workers=settings.batch_max_workers)
    log_with_correlation(
        logger,
        request,
        logging.INFO,
        "Evaluated strategy signals",
        jobs=len(jobs),
        missing=len(missing),
    )
    return SignalsResponse(results=results, missing_symbols=list(missing))


__all__ = ["router"]
