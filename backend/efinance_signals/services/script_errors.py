from __future__ import annotations

from typing import Optional


class ScriptError(RuntimeError):
    """Raised when a strategy script cannot be compiled or evaluated."""


class ScriptParseError(ScriptError):
    """Malformed script syntax; carries the offending token position."""

    def __init__(
        self,
        message: str,
        *,
        position: Optional[int] = None,
        token: Optional[str] = None,
        script: Optional[str] = None,
    ) -> None:
        self.position = position
        self.token = token
        self.script = script
        if position is not None:
            message = f"{message} (at position {position})"
        super().__init__(message)


class UnknownSymbolError(ScriptError):
    """A variable or function name that is not a builtin."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"Unknown {kind} '{name}'")


class ArityError(ScriptError):
    """Wrong number or type of arguments passed to a builtin."""


__all__ = ["ArityError", "ScriptError", "ScriptParseError", "UnknownSymbolError"]
