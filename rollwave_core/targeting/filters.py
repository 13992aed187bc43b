"""Target filter expressions.

Filters use an RSQL-style syntax over target fields::

    controller_id==edge-*;attribute.hw==rev2,tag=in=(beta,canary)

``;`` binds tighter than ``,`` and parentheses group. Expressions are parsed
once into a small tree and compiled to a parameterized SQL predicate against
the ``targets`` table, so user input never reaches the SQL text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from rollwave_core.errors import ValidationError


class FilterSyntaxError(ValidationError):
    """Raised when a target filter cannot be parsed or compiled."""


COLUMN_FIELDS: dict[str, str] = {
    "id": "id",
    "name": "name",
    "controller_id": "controller_id",
    "controllerid": "controller_id",
    "created_at": "created_at",
    "createdat": "created_at",
    "updated_at": "updated_at",
    "updatedat": "updated_at",
}
TAG_FIELD = "tag"
ATTRIBUTE_PREFIX = "attribute."

_OPERATORS = {
    "==": "=",
    "!=": "!=",
    "=in=": "IN",
    "=out=": "NOT IN",
    "=gt=": ">",
    "=ge=": ">=",
    "=lt=": "<",
    "=le=": "<=",
}
_RESERVED = set("();,'\"=!<>")


@dataclass(frozen=True)
class Comparison:
    selector: str
    operator: str
    values: tuple[str, ...]


@dataclass(frozen=True)
class Junction:
    kind: str
    children: tuple["FilterNode", ...]


FilterNode = Union[Comparison, Junction]


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def parse(self) -> FilterNode:
        node = self._or()
        self._skip_ws()
        if self.pos != len(self.text):
            self._fail("Unexpected input")
        return node

    def _fail(self, message: str) -> None:
        raise FilterSyntaxError(f"{message} at position {self.pos}: {self.text!r}")

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self) -> str:
        self._skip_ws()
        if self.pos < len(self.text):
            return self.text[self.pos]
        return ""

    def _or(self) -> FilterNode:
        children = [self._and()]
        while self._peek() == ",":
            self.pos += 1
            children.append(self._and())
        if len(children) == 1:
            return children[0]
        return Junction(kind="OR", children=tuple(children))

    def _and(self) -> FilterNode:
        children = [self._term()]
        while self._peek() == ";":
            self.pos += 1
            children.append(self._term())
        if len(children) == 1:
            return children[0]
        return Junction(kind="AND", children=tuple(children))

    def _term(self) -> FilterNode:
        if self._peek() == "(":
            self.pos += 1
            node = self._or()
            if self._peek() != ")":
                self._fail("Missing closing parenthesis")
            self.pos += 1
            return node
        return self._comparison()

    def _comparison(self) -> Comparison:
        self._skip_ws()
        start = self.pos
        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char.isalnum() or char in "_.-":
                self.pos += 1
                continue
            break
        selector = self.text[start : self.pos]
        if not selector:
            self._fail("Expected a field name")
        operator = self._operator()
        if operator in {"=in=", "=out="}:
            values = self._value_list()
        else:
            values = (self._value(),)
        return Comparison(selector=selector, operator=operator, values=values)

    def _operator(self) -> str:
        self._skip_ws()
        for candidate in ("==", "!="):
            if self.text.startswith(candidate, self.pos):
                self.pos += len(candidate)
                return candidate
        if self.text.startswith("=", self.pos):
            end = self.text.find("=", self.pos + 1)
            if end != -1:
                candidate = self.text[self.pos : end + 1].lower()
                if candidate in _OPERATORS:
                    self.pos = end + 1
                    return candidate
        self._fail("Expected a comparison operator")
        return ""

    def _value_list(self) -> tuple[str, ...]:
        if self._peek() != "(":
            return (self._value(),)
        self.pos += 1
        values = [self._value()]
        while self._peek() == ",":
            self.pos += 1
            values.append(self._value())
        if self._peek() != ")":
            self._fail("Missing closing parenthesis in value list")
        self.pos += 1
        return tuple(values)

    def _value(self) -> str:
        quote = self._peek()
        if quote in {"'", '"'}:
            self.pos += 1
            chars: list[str] = []
            while self.pos < len(self.text):
                char = self.text[self.pos]
                if char == "\\" and self.pos + 1 < len(self.text):
                    chars.append(self.text[self.pos + 1])
                    self.pos += 2
                    continue
                if char == quote:
                    self.pos += 1
                    return "".join(chars)
                chars.append(char)
                self.pos += 1
            self._fail("Unterminated quoted value")
        start = self.pos
        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char.isspace() or char in _RESERVED:
                break
            self.pos += 1
        if start == self.pos:
            self._fail("Expected a value")
        return self.text[start : self.pos]


def parse_filter(text: str) -> FilterNode:
    if text is None or not str(text).strip():
        raise FilterSyntaxError("Target filter must not be empty")
    return _Parser(str(text)).parse()


def validate_filter(text: str) -> None:
    compile_filter(text)


def compile_filter(text: str, *, alias: str = "t") -> tuple[str, list[object]]:
    node = parse_filter(text)
    return _compile(node, alias)


def combine_filters(
    filters: Iterable[str | None],
    *,
    alias: str = "t",
) -> tuple[str, list[object]]:
    """AND together several filter expressions, skipping blank ones."""
    clauses: list[str] = []
    params: list[object] = []
    for item in filters:
        if item is None or not str(item).strip():
            continue
        sql, item_params = compile_filter(item, alias=alias)
        clauses.append(f"({sql})")
        params.extend(item_params)
    if not clauses:
        return "1 = 1", []
    return " AND ".join(clauses), params


def _compile(node: FilterNode, alias: str) -> tuple[str, list[object]]:
    if isinstance(node, Junction):
        clauses: list[str] = []
        params: list[object] = []
        for child in node.children:
            sql, child_params = _compile(child, alias)
            clauses.append(f"({sql})")
            params.extend(child_params)
        return f" {node.kind} ".join(clauses), params
    return _compile_comparison(node, alias)


def _compile_comparison(node: Comparison, alias: str) -> tuple[str, list[object]]:
    selector = node.selector.lower()
    if selector in COLUMN_FIELDS:
        column = f"{alias}.{COLUMN_FIELDS[selector]}"
        return _predicate(column, node.operator, node.values)
    if selector == TAG_FIELD:
        if node.operator not in {"==", "!=", "=in=", "=out="}:
            raise FilterSyntaxError(
                f"Operator {node.operator} is not supported for tag"
            )
        positive = node.operator in {"==", "=in="}
        operator = "==" if node.operator in {"==", "!="} else "=in="
        inner, params = _predicate("tt.tag", operator, node.values)
        exists = "EXISTS" if positive else "NOT EXISTS"
        sql = (
            f"{exists} (SELECT 1 FROM target_tags tt "
            f"WHERE tt.target_id = {alias}.id AND {inner})"
        )
        return sql, params
    if selector.startswith(ATTRIBUTE_PREFIX):
        key = node.selector[len(ATTRIBUTE_PREFIX) :]
        if not key:
            raise FilterSyntaxError("Attribute filter requires a key")
        negated = node.operator in {"!=", "=out="}
        operator = {"!=": "==", "=out=": "=in="}.get(node.operator, node.operator)
        inner, params = _predicate("ta.value", operator, node.values)
        exists = "NOT EXISTS" if negated else "EXISTS"
        sql = (
            f"{exists} (SELECT 1 FROM target_attributes ta "
            f"WHERE ta.target_id = {alias}.id AND ta.key = ? AND {inner})"
        )
        return sql, [key, *params]
    raise FilterSyntaxError(f"Unknown filter field: {node.selector}")


def _predicate(
    column: str,
    operator: str,
    values: tuple[str, ...],
) -> tuple[str, list[object]]:
    if operator in {"=in=", "=out="}:
        placeholders = ", ".join("?" for _ in values)
        return f"{column} {_OPERATORS[operator]} ({placeholders})", list(values)
    value = values[0]
    if operator in {"==", "!="} and "*" in value:
        pattern = (
            value.replace("\\", "\\\\")
            .replace("%", "\\%")
            .replace("_", "\\_")
            .replace("*", "%")
        )
        keyword = "LIKE" if operator == "==" else "NOT LIKE"
        return f"{column} {keyword} ? ESCAPE '\\'", [pattern]
    return f"{column} {_OPERATORS[operator]} ?", [value]
