from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

from efinance_signals.services.script_errors import ScriptError

# -----------------------------------------------------------------------------
# AST nodes
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Node:
    node_type: str

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class NumberNode(Node):
    value: float

    def __init__(self, value: float) -> None:
        object.__setattr__(self, "node_type", "NUMBER")
        object.__setattr__(self, "value", float(value))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type, "value": self.value}


@dataclass(frozen=True)
class StringNode(Node):
    value: str

    def __init__(self, value: str) -> None:
        object.__setattr__(self, "node_type", "STRING")
        object.__setattr__(self, "value", value)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type, "value": self.value}


@dataclass(frozen=True)
class IdentNode(Node):
    name: str

    def __init__(self, name: str) -> None:
        object.__setattr__(self, "node_type", "IDENT")
        object.__setattr__(self, "name", name)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type, "name": self.name}


@dataclass(frozen=True)
class CallNode(Node):
    name: str
    args: Tuple["ExprNode", ...]

    def __init__(self, name: str, args: Sequence["ExprNode"]) -> None:
        object.__setattr__(self, "node_type", "CALL")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "args", tuple(args))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "name": self.name,
            "args": [node_to_dict(a) for a in self.args],
        }


@dataclass(frozen=True)
class IndexNode(Node):
    """`child[offset]`: the value of `child` evaluated `offset` bars ago."""

    child: "ExprNode"
    offset: int

    def __init__(self, child: "ExprNode", offset: int) -> None:
        object.__setattr__(self, "node_type", "INDEX")
        object.__setattr__(self, "child", child)
        object.__setattr__(self, "offset", int(offset))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "offset": self.offset,
            "child": node_to_dict(self.child),
        }


@dataclass(frozen=True)
class UnaryNode(Node):
    op: str
    child: "ExprNode"

    def __init__(self, op: str, child: "ExprNode") -> None:
        object.__setattr__(self, "node_type", "UNARY")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "child", child)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "op": self.op,
            "child": node_to_dict(self.child),
        }


@dataclass(frozen=True)
class BinaryNode(Node):
    op: str
    left: "ExprNode"
    right: "ExprNode"

    def __init__(self, op: str, left: "ExprNode", right: "ExprNode") -> None:
        object.__setattr__(self, "node_type", "BINARY")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "left", left)
        object.__setattr__(self, "right", right)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "op": self.op,
            "left": node_to_dict(self.left),
            "right": node_to_dict(self.right),
        }


@dataclass(frozen=True)
class ComparisonNode(Node):
    op: str
    left: "ExprNode"
    right: "ExprNode"

    def __init__(self, op: str, left: "ExprNode", right: "ExprNode") -> None:
        object.__setattr__(self, "node_type", "CMP")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "left", left)
        object.__setattr__(self, "right", right)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "op": self.op,
            "left": node_to_dict(self.left),
            "right": node_to_dict(self.right),
        }


@dataclass(frozen=True)
class LogicalNode(Node):
    op: str
    children: Tuple["ExprNode", ...]

    def __init__(self, op: str, children: Sequence["ExprNode"]) -> None:
        object.__setattr__(self, "node_type", "LOGICAL")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "children", tuple(children))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "op": self.op,
            "children": [node_to_dict(c) for c in self.children],
        }


@dataclass(frozen=True)
class NotNode(Node):
    child: "ExprNode"

    def __init__(self, child: "ExprNode") -> None:
        object.__setattr__(self, "node_type", "NOT")
        object.__setattr__(self, "child", child)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type, "child": node_to_dict(self.child)}


ExprNode = (
    NumberNode
    | StringNode
    | IdentNode
    | CallNode
    | IndexNode
    | UnaryNode
    | BinaryNode
    | ComparisonNode
    | LogicalNode
    | NotNode
)


MAX_EXPRESSION_DEPTH = 100
MAX_EXPRESSION_NODES = 10_000


def child_nodes(node: ExprNode) -> Tuple[ExprNode, ...]:
    if isinstance(node, CallNode):
        return node.args
    if isinstance(node, LogicalNode):
        return node.children
    if isinstance(node, (IndexNode, UnaryNode, NotNode)):
        return (node.child,)
    if isinstance(node, (BinaryNode, ComparisonNode)):
        return (node.left, node.right)
    return ()


def expression_shape(node: ExprNode) -> Tuple[int, int]:
    """Return `(depth, size)` of the fully expanded expression tree.

    Inlined local assignments share subtrees, so sizes are memoized per node
    identity and the walk stays linear in the number of distinct nodes.
    """

    shapes: Dict[int, Tuple[int, int]] = {}
    stack = [(node, False)]
    while stack:
        current, expanded = stack.pop()
        if id(current) in shapes:
            continue
        kids = child_nodes(current)
        if expanded or not kids:
            depth = 1 + max((shapes[id(k)][0] for k in kids), default=0)
            size = 1 + sum(shapes[id(k)][1] for k in kids)
            shapes[id(current)] = (depth, size)
            continue
        stack.append((current, True))
        stack.extend((k, False) for k in kids if id(k) not in shapes)
    return shapes[id(node)]


def check_expression_limits(node: ExprNode) -> None:
    depth, size = expression_shape(node)
    if depth > MAX_EXPRESSION_DEPTH:
        raise ScriptError(
            f"Expression is nested too deeply ({depth} levels, max {MAX_EXPRESSION_DEPTH})"
        )
    if size > MAX_EXPRESSION_NODES:
        raise ScriptError(
            f"Expression is too large ({size} nodes, max {MAX_EXPRESSION_NODES})"
        )


def node_to_dict(node: ExprNode) -> Dict[str, Any]:
    return node.to_dict()


def node_from_dict(data: Dict[str, Any]) -> ExprNode:
    t = data.get("type")
    if t == "NUMBER":
        return NumberNode(float(data.get("value", 0)))
    if t == "STRING":
        return StringNode(str(data.get("value", "")))
    if t == "IDENT":
        return IdentNode(str(data.get("name", "")))
    if t == "CALL":
        return CallNode(
            str(data.get("name", "")),
            [node_from_dict(a) for a in (data.get("args") or [])],
        )
    if t == "INDEX":
        return IndexNode(
            node_from_dict(data.get("child") or {}), int(data.get("offset", 0))
        )
    if t == "UNARY":
        return UnaryNode(
            str(data.get("op", "")), node_from_dict(data.get("child") or {})
        )
    if t == "BINARY":
        return BinaryNode(
            str(data.get("op", "")),
            node_from_dict(data.get("left") or {}),
            node_from_dict(data.get("right") or {}),
        )
    if t == "CMP":
        return ComparisonNode(
            str(data.get("op", "")),
            node_from_dict(data.get("left") or {}),
            node_from_dict(data.get("right") or {}),
        )
    if t == "LOGICAL":
        return LogicalNode(
            str(data.get("op", "")),
            [node_from_dict(c) for c in (data.get("children") or [])],
        )
    if t == "NOT":
        return NotNode(node_from_dict(data.get("child") or {}))
    raise ScriptError(f"Unknown AST node type '{t}'")


def dumps_ast(node: ExprNode) -> str:
    return json.dumps(node_to_dict(node), default=str)


def loads_ast(raw: str) -> ExprNode:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ScriptError("Invalid AST JSON") from exc
    except RecursionError as exc:
        raise ScriptError("AST JSON is nested too deeply") from exc
    if not isinstance(data, dict):
        raise ScriptError("AST JSON must be an object")
    try:
        node = node_from_dict(data)
    except RecursionError as exc:
        raise ScriptError("AST JSON is nested too deeply") from exc
    check_expression_limits(node)
    return node


__all__ = [
    "BinaryNode",
    "CallNode",
    "ComparisonNode",
    "ExprNode",
    "IdentNode",
    "IndexNode",
    "LogicalNode",
    "MAX_EXPRESSION_DEPTH",
    "MAX_EXPRESSION_NODES",
    "NotNode",
    "NumberNode",
    "StringNode",
    "UnaryNode",
    "check_expression_limits",
    "child_nodes",
    "dumps_ast",
    "expression_shape",
    "loads_ast",
    "node_from_dict",
    "node_to_dict",
]
