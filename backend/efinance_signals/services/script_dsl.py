from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

from efinance_signals.core.config import get_settings
from efinance_signals.services.script_ast import (
    BinaryNode,
    CallNode,
    ComparisonNode,
    ExprNode,
    IdentNode,
    IndexNode,
    LogicalNode,
    NotNode,
    NumberNode,
    StringNode,
    UnaryNode,
    check_expression_limits,
)
from efinance_signals.services.script_errors import ScriptError, ScriptParseError


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


# Order matters: two-character operators must be tried before their one
# character prefixes, and comments before the "/" operator.
_PATTERN = re.compile(
    r"(?P<COMMENT>//[^\n]*)|"
    r"(?P<NEWLINE>\n)|"
    r"(?P<SPACE>[ \t\r]+)|"
    r"(?P<NUMBER>\d+(?:\.\d+)?|\.\d+)|"
    r"(?P<STRING>\"[^\"\n]*\"|'[^'\n]*')|"
    r"(?P<IDENT>[A-Za-z_][A-Za-z0-9_]*)|"
    r"(?P<OP>==|!=|>=|<=|&&|\|\||\+|-|\*|/|>|<|!|=)|"
    r"(?P<LPAREN>\()|"
    r"(?P<RPAREN>\))|"
    r"(?P<LBRACKET>\[)|"
    r"(?P<RBRACKET>\])|"
    r"(?P<COMMA>,)|"
    r"(?P<SEMI>;)"
)

_KINDS = (
    "NUMBER",
    "STRING",
    "IDENT",
    "OP",
    "LPAREN",
    "RPAREN",
    "LBRACKET",
    "RBRACKET",
    "COMMA",
    "SEMI",
)

_KEYWORDS = {"and", "or", "not"}

_CMP_OPS = {">", ">=", "<", "<=", "==", "!="}

# Parenthesised groups, call arguments and chained prefix operators each add a
# level; every level costs about ten interpreter frames while parsing.
_MAX_NESTING = 64


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    depth = 0
    pos = 0
    while pos < len(text):
        match = _PATTERN.match(text, pos)
        if match is None:
            raise ScriptParseError(
                f"Unexpected character '{text[pos]}'",
                position=pos,
                token=text[pos],
                script=text,
            )
        pos = match.end()
        if match.group("COMMENT") is not None or match.group("SPACE") is not None:
            continue
        if match.group("NEWLINE") is not None:
            # Line breaks only separate statements outside of brackets.
            if depth == 0:
                tokens.append(_Token("SEP", "\n", match.start()))
            continue
        for kind in _KINDS:
            val = match.group(kind)
            if val is None:
                continue
            if kind in {"LPAREN", "LBRACKET"}:
                depth += 1
            elif kind in {"RPAREN", "RBRACKET"}:
                depth = max(depth - 1, 0)
            if kind == "SEMI":
                kind = "SEP"
            tokens.append(_Token(kind, val, match.start()))
            break
    return tokens


@dataclass(frozen=True)
class ScriptProgram:
    """A parsed script: local bindings (already inlined) plus its result."""

    source: str
    result: ExprNode
    bindings: Dict[str, ExprNode] = field(default_factory=dict)


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.depth = 0
        self.bindings: Dict[str, ExprNode] = {}

    def _peek(self, ahead: int = 0) -> Optional[_Token]:
        idx = self.pos + ahead
        if idx >= len(self.tokens):
            return None
        return self.tokens[idx]

    def _error(self, message: str, tok: Optional[_Token]) -> ScriptParseError:
        if tok is None:
            return ScriptParseError(message, position=len(self.text), script=self.text)
        return ScriptParseError(
            message, position=tok.pos, token=tok.value, script=self.text
        )

    def _consume(self, kind: str | None = None, value: str | None = None) -> _Token:
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of expression", None)
        if kind is not None and tok.kind != kind:
            raise self._error(f"Expected {kind} but found '{tok.value}'", tok)
        if value is not None and tok.value.lower() != value.lower():
            raise self._error(f"Expected '{value}' but found '{tok.value}'", tok)
        self.pos += 1
        return tok

    def _is_keyword(self, tok: Optional[_Token], word: str) -> bool:
        return bool(tok and tok.kind == "IDENT" and tok.value.lower() == word)

    def _is_op(self, tok: Optional[_Token], *ops: str) -> bool:
        return bool(tok and tok.kind == "OP" and tok.value in ops)

    def _enter(self, tok: Optional[_Token]) -> None:
        self.depth += 1
        if self.depth > _MAX_NESTING:
            raise self._error(
                f"Expression is nested too deeply (max {_MAX_NESTING} levels)", tok
            )

    def _skip_separators(self) -> None:
        while self._peek() is not None and self._peek().kind == "SEP":  # type: ignore[union-attr]
            self.pos += 1

    # Grammar:
    # script    := statement (SEP statement)*
    # statement := IDENT '=' or | or
    # or        := and (('or' | '||') and)*
    # and       := not (('and' | '&&') not)*
    # not       := ('not' | '!') not | cmp
    # cmp       := add (CMP_OP add)?
    # add       := mul (('+'|'-') mul)*
    # mul       := unary (('*'|'/') unary)*
    # unary     := ('+'|'-') unary | postfix
    # postfix   := primary ('[' NUMBER ']')*
    # primary   := NUMBER | STRING | IDENT | call | '(' or ')'

    def parse(self) -> ScriptProgram:
        result: Optional[ExprNode] = None
        self._skip_separators()
        while self._peek() is not None:
            result = self._parse_statement()
            tok = self._peek()
            if tok is not None and tok.kind != "SEP":
                raise self._error(f"Unexpected token '{tok.value}'", tok)
            self._skip_separators()
        if result is None:
            raise ScriptParseError("Empty script", position=0, script=self.text)
        return ScriptProgram(source=self.text, result=result, bindings=dict(self.bindings))

    def _parse_statement(self) -> ExprNode:
        tok = self._peek()
        nxt = self._peek(1)
        name: Optional[str] = None
        if tok and tok.kind == "IDENT" and self._is_op(nxt, "="):
            name = tok.value.lower()
            if name in _KEYWORDS:
                raise self._error(f"Cannot assign to keyword '{tok.value}'", tok)
            self._consume("IDENT")
            self._consume("OP", "=")
        expr = self._parse_or()
        # Inlining lets a short script expand into a deep or very large tree.
        try:
            check_expression_limits(expr)
        except ScriptError as exc:
            raise self._error(str(exc), tok) from exc
        if name is not None:
            # Later statements see the bound expression inlined in place of
            # the name.
            self.bindings[name] = expr
        return expr

    def _parse_or(self) -> ExprNode:
        try:
            self._enter(self._peek())
            node = self._parse_and()
            children = [node]
            while True:
                tok = self._peek()
                if self._is_keyword(tok, "or") or self._is_op(tok, "||"):
                    self.pos += 1
                    children.append(self._parse_and())
                else:
                    break
        finally:
            self.depth -= 1
        if len(children) == 1:
            return node
        return LogicalNode("OR", children)

    def _parse_and(self) -> ExprNode:
        node = self._parse_not()
        children = [node]
        while True:
            tok = self._peek()
            if self._is_keyword(tok, "and") or self._is_op(tok, "&&"):
                self.pos += 1
                children.append(self._parse_not())
            else:
                break
        if len(children) == 1:
            return node
        return LogicalNode("AND", children)

    def _parse_not(self) -> ExprNode:
        tok = self._peek()
        if self._is_keyword(tok, "not") or self._is_op(tok, "!"):
            self.pos += 1
            try:
                self._enter(tok)
                return NotNode(self._parse_not())
            finally:
                self.depth -= 1
        return self._parse_cmp()

    def _parse_cmp(self) -> ExprNode:
        left = self._parse_add()
        tok = self._peek()
        if tok is not None and tok.kind == "OP" and tok.value in _CMP_OPS:
            self._consume("OP")
            right = self._parse_add()
            return ComparisonNode(tok.value, left, right)
        if self._is_op(tok, "="):
            raise self._error("Unexpected '=' (use '==' to compare)", tok)
        return left

    def _parse_add(self) -> ExprNode:
        node = self._parse_mul()
        while True:
            tok = self._peek()
            if self._is_op(tok, "+", "-"):
                self._consume("OP")
                right = self._parse_mul()
                node = BinaryNode(tok.value, node, right)  # type: ignore[union-attr]
            else:
                break
        return node

    def _parse_mul(self) -> ExprNode:
        node = self._parse_unary()
        while True:
            tok = self._peek()
            if self._is_op(tok, "*", "/"):
                self._consume("OP")
                right = self._parse_unary()
                node = BinaryNode(tok.value, node, right)  # type: ignore[union-attr]
            else:
                break
        return node

    def _parse_unary(self) -> ExprNode:
        tok = self._peek()
        if self._is_op(tok, "+", "-"):
            self._consume("OP")
            try:
                self._enter(tok)
                return UnaryNode(tok.value, self._parse_unary())  # type: ignore[union-attr]
            finally:
                self.depth -= 1
        return self._parse_postfix()

    def _parse_postfix(self) -> ExprNode:
        node = self._parse_primary()
        while True:
            tok = self._peek()
            if tok is None or tok.kind != "LBRACKET":
                return node
            self._consume("LBRACKET")
            num = self._consume("NUMBER")
            if "." in num.value:
                raise self._error("History offset must be a whole number", num)
            self._consume("RBRACKET")
            node = IndexNode(node, int(num.value))

    def _parse_primary(self) -> ExprNode:
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of expression", None)

        if tok.kind == "NUMBER":
            self._consume("NUMBER")
            return NumberNode(float(tok.value))

        if tok.kind == "STRING":
            self._consume("STRING")
            return StringNode(tok.value[1:-1])

        if tok.kind == "LPAREN":
            self._consume("LPAREN")
            expr = self._parse_or()
            self._consume("RPAREN")
            return expr

        if tok.kind == "IDENT":
            if tok.value.lower() in _KEYWORDS:
                raise self._error(f"Unexpected keyword '{tok.value}'", tok)
            ident = self._consume("IDENT").value
            nxt = self._peek()
            if not nxt or nxt.kind != "LPAREN":
                bound = self.bindings.get(ident.lower())
                if bound is not None:
                    return bound
                return IdentNode(ident.lower())

            # Function call: IDENT '(' args ')'
            self._consume("LPAREN")
            args: List[ExprNode] = []
            if self._peek() and self._peek().kind != "RPAREN":  # type: ignore[union-attr]
                while True:
                    args.append(self._parse_or())
                    if self._peek() and self._peek().kind == "COMMA":  # type: ignore[union-attr]
                        self._consume("COMMA")
                        continue
                    break
            self._consume("RPAREN")
            return CallNode(ident.lower(), args)

        raise self._error(f"Unexpected token '{tok.value}'", tok)


def parse_script(text: str) -> ScriptProgram:
    """Parse a strategy script into its bindings and result expression.

    Local assignments (`ma5 = sma(5)`) are inlined into every later
    statement, so the returned expressions never reference script locals.
    """

    return _Parser(text or "").parse()


def parse_expression(text: str) -> ExprNode:
    return parse_script(text).result


@lru_cache(maxsize=get_settings().compile_cache_size)
def parse_script_cached(text: str) -> ScriptProgram:
    return parse_script(text)


__all__ = [
    "ScriptProgram",
    "parse_expression",
    "parse_script",
    "parse_script_cached",
]
