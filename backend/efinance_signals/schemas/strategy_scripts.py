from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

StrategyType = Literal["simple", "script"]
SignalMode = Literal["script", "simple", "none"]


class PresetRead(BaseModel):
    key: str
    name: str
    description: str
    buy_script: str
    sell_script: str
    parameters: Dict[str, float] = Field(default_factory=dict)


class PresetCustomizeRequest(BaseModel):
    parameters: Dict[str, float] = Field(default_factory=dict)


class CompileRequest(BaseModel):
    script: str = Field(..., min_length=1)
    # When true, compile errors are returned as HTTP 400 instead of inline.
    raise_on_error: bool = False


class CompileResponse(BaseModel):
    ok: bool
    ast: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    position: Optional[int] = None


class MarketSnapshot(BaseModel):
    """Quote plus chronological (oldest first) history for one symbol."""

    symbol: str = Field(..., min_length=1)
    price: float
    # Fractional change versus previous close (0.05 == +5%).
    change: float = 0.0
    closes: List[float] = Field(default_factory=list)
    highs: Optional[List[float]] = None
    lows: Optional[List[float]] = None
    volumes: Optional[List[float]] = None

    @model_validator(mode="after")
    def _check_alignment(self) -> "MarketSnapshot":
        for name in ("highs", "lows", "volumes"):
            values = getattr(self, name)
            if values is not None and len(values) != len(self.closes):
                raise ValueError(f"{name} must have the same length as closes")
        return self


class EvaluateRequest(BaseModel):
    buy_script: Optional[str] = None
    sell_script: Optional[str] = None
    snapshot: MarketSnapshot


class EvaluationResultRead(BaseModel):
    buy_signal: bool
    sell_signal: bool
    value: Optional[float] = None
    error: Optional[str] = None


class ScriptConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    buy_script: Optional[str] = Field(default=None, alias="buyScript")
    sell_script: Optional[str] = Field(default=None, alias="sellScript")
    enabled: bool = False
    template: Optional[str] = None


class ThresholdConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_threshold: Optional[float] = Field(default=None, alias="priceThreshold")
    # Percent units: -5 means "change of -5% or worse".
    change_threshold: Optional[float] = Field(default=None, alias="changeThreshold")
    enabled: bool = False


class SignalConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    buy_conditions: Optional[ThresholdConditions] = Field(
        default=None, alias="buyConditions"
    )
    sell_conditions: Optional[ThresholdConditions] = Field(
        default=None, alias="sellConditions"
    )


class StrategyRecord(BaseModel):
    """Persisted strategy shape, consumed read-only."""

    id: str
    name: str = ""
    symbols: List[str] = Field(default_factory=list)
    type: StrategyType = "simple"
    script: Optional[ScriptConfig] = None
    signals: Optional[SignalConditions] = None


class StrategySignalsRead(BaseModel):
    strategy_id: str
    symbol: str
    mode: SignalMode
    buy_signal: bool = False
    sell_signal: bool = False
    value: Optional[float] = None
    error: Optional[str] = None
    fallback: bool = False


class SignalsRequest(BaseModel):
    strategies: List[StrategyRecord] = Field(default_factory=list)
    snapshots: List[MarketSnapshot] = Field(default_factory=list)


class SignalsResponse(BaseModel):
    results: List[StrategySignalsRead] = Field(default_factory=list)
    # Strategy symbols with no matching snapshot.
    missing_symbols: List[str] = Field(default_factory=list)


__all__ = [
    "CompileRequest",
    "CompileResponse",
    "EvaluateRequest",
    "EvaluationResultRead",
    "MarketSnapshot",
    "PresetCustomizeRequest",
    "PresetRead",
    "ScriptConfig",
    "SignalConditions",
    "SignalMode",
    "SignalsRequest",
    "SignalsResponse",
    "StrategyRecord",
    "StrategySignalsRead",
    "StrategyType",
    "ThresholdConditions",
]
