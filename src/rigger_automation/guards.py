"""Boolean guard expressions used by ``when``, ``until`` and ``changed_when``.

Guards are parsed once, at plan load time, into a small AST. The grammar is::

    expr       := or_expr
    or_expr    := and_expr ('or' and_expr)*
    and_expr   := not_expr ('and' not_expr)*
    not_expr   := 'not' not_expr | comparison
    comparison := operand (CMP operand | ['not'] 'in' operand | 'is' ['not'] TEST)?
    operand    := STRING | NUMBER | true | false | none | reference
                | '(' expr ')' | '[' [expr (',' expr)*] ']'
    reference  := IDENT ('.' IDENT)*

``TEST`` is one of ``defined``, ``undefined``, ``failed``, ``succeeded``,
``changed`` or ``skipped``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Union

from .errors import GuardEvaluationError
from .types import UNDEFINED

Lookup = Callable[[str], Any]

KEYWORDS = {"and", "or", "not", "in", "is"}
TESTS = {"defined", "undefined", "failed", "succeeded", "success", "changed", "skipped"}
COMPARATORS = {"==", "!=", "<", "<=", ">", ">="}


@dataclass
class Token:
    type: str
    value: str
    column: int


class Tokenizer:
    SIMPLE_TOKENS = {
        "(": "LPAREN",
        ")": "RPAREN",
        "[": "LBRACKET",
        "]": "RBRACKET",
        ",": "COMMA",
        ".": "DOT",
    }

    def __init__(self, text: str):
        self.text = text
        self.length = len(text)
        self.pos = 0

    def __iter__(self) -> Iterator[Token]:
        while self.pos < self.length:
            ch = self.text[self.pos]
            if ch.isspace():
                self.pos += 1
                continue
            if ch in ("'", '"'):
                yield self._string()
                continue
            if ch.isdigit() or (ch == "-" and self._peek(1).isdigit()):
                yield self._number()
                continue
            two = self.text[self.pos:self.pos + 2]
            if two in COMPARATORS:
                yield Token("OP", two, self.pos + 1)
                self.pos += 2
                continue
            if ch in "<>":
                yield Token("OP", ch, self.pos + 1)
                self.pos += 1
                continue
            token_type = self.SIMPLE_TOKENS.get(ch)
            if token_type:
                yield Token(token_type, ch, self.pos + 1)
                self.pos += 1
                continue
            if ch.isalpha() or ch == "_":
                yield self._identifier()
                continue
            raise GuardEvaluationError(
                f"Unexpected character '{ch}'", expression=self.text, column=self.pos + 1
            )
        yield Token("EOF", "", self.pos + 1)

    def _string(self) -> Token:
        quote = self.text[self.pos]
        start = self.pos
        self.pos += 1
        result: list[str] = []
        while self.pos < self.length:
            ch = self.text[self.pos]
            if ch == "\\" and self.pos + 1 < self.length:
                result.append(self.text[self.pos + 1])
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return Token("STRING", "".join(result), start + 1)
            result.append(ch)
            self.pos += 1
        raise GuardEvaluationError(
            "Unterminated string literal", expression=self.text, column=start + 1
        )

    def _number(self) -> Token:
        start = self.pos
        self.pos += 1
        while self.pos < self.length and (self.text[self.pos].isdigit() or self.text[self.pos] == "."):
            self.pos += 1
        return Token("NUMBER", self.text[start:self.pos], start + 1)

    def _identifier(self) -> Token:
        start = self.pos
        while self.pos < self.length and (self.text[self.pos].isalnum() or self.text[self.pos] == "_"):
            self.pos += 1
        return Token("IDENT", self.text[start:self.pos], start + 1)

    def _peek(self, offset: int) -> str:
        idx = self.pos + offset
        if idx >= self.length:
            return ""
        return self.text[idx]


# AST -------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, lookup: Lookup) -> Any:
        return self.value

    def references(self) -> set[str]:
        return set()


@dataclass(frozen=True)
class Ref:
    path: tuple[str, ...]

    def evaluate(self, lookup: Lookup) -> Any:
        value = lookup(self.path[0])
        for attr in self.path[1:]:
            if value is UNDEFINED:
                break
            if isinstance(value, dict):
                value = value.get(attr, UNDEFINED)
            else:
                value = getattr(value, attr, UNDEFINED)
        return value

    def references(self) -> set[str]:
        return {self.path[0]}

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class ListExpr:
    items: tuple["Node", ...]

    def evaluate(self, lookup: Lookup) -> Any:
        return [_defined(item, item.evaluate(lookup)) for item in self.items]

    def references(self) -> set[str]:
        refs: set[str] = set()
        for item in self.items:
            refs |= item.references()
        return refs


@dataclass(frozen=True)
class Not:
    operand: "Node"

    def evaluate(self, lookup: Lookup) -> Any:
        return not _truth(self.operand, lookup)

    def references(self) -> set[str]:
        return self.operand.references()


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: tuple["Node", ...]

    def evaluate(self, lookup: Lookup) -> Any:
        # Short-circuits, so a guard like ``x is defined and x.rc == 0`` is safe.
        if self.op == "and":
            return all(_truth(node, lookup) for node in self.operands)
        return any(_truth(node, lookup) for node in self.operands)

    def references(self) -> set[str]:
        refs: set[str] = set()
        for node in self.operands:
            refs |= node.references()
        return refs


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"

    def evaluate(self, lookup: Lookup) -> Any:
        left = _defined(self.left, self.left.evaluate(lookup))
        right = _defined(self.right, self.right.evaluate(lookup))
        try:
            if self.op == "==":
                return left == right
            if self.op == "!=":
                return left != right
            if self.op == "<":
                return left < right
            if self.op == "<=":
                return left <= right
            if self.op == ">":
                return left > right
            if self.op == ">=":
                return left >= right
            if self.op == "in":
                return left in right
            if self.op == "not in":
                return left not in right
        except TypeError as exc:
            raise GuardEvaluationError(f"cannot compare {left!r} {self.op} {right!r}: {exc}") from None
        raise GuardEvaluationError(f"unknown operator '{self.op}'")

    def references(self) -> set[str]:
        return self.left.references() | self.right.references()


@dataclass(frozen=True)
class Test:
    operand: "Node"
    name: str
    negated: bool = False

    def evaluate(self, lookup: Lookup) -> Any:
        value = self.operand.evaluate(lookup)
        if self.name in {"defined", "undefined"}:
            result = value is not UNDEFINED
            if self.name == "undefined":
                result = not result
        else:
            value = _defined(self.operand, value)
            if not isinstance(value, dict):
                raise GuardEvaluationError(f"'{_describe(self.operand)}' is not a registered result")
            if self.name == "failed":
                result = bool(value.get("failed"))
            elif self.name in {"succeeded", "success"}:
                result = not value.get("failed") and not value.get("skipped")
            elif self.name == "changed":
                result = bool(value.get("changed"))
            else:
                result = bool(value.get("skipped"))
        return not result if self.negated else result

    def references(self) -> set[str]:
        return self.operand.references()


Node = Union[Literal, Ref, ListExpr, Not, BoolOp, Compare, Test]


def _describe(node: "Node") -> str:
    if isinstance(node, Ref):
        return node.dotted
    return repr(node)


def _defined(node: "Node", value: Any) -> Any:
    if value is UNDEFINED:
        raise GuardEvaluationError(f"'{_describe(node)}' is undefined")
    return value


def _truth(node: "Node", lookup: Lookup) -> bool:
    value = _defined(node, node.evaluate(lookup))
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0", ""}:
            return False
    return bool(value)


# Parser ----------------------------------------------------------------


class GuardParser:
    def parse(self, text: str) -> "Node":
        self.text = text
        self.tokens: list[Token] = list(Tokenizer(text))
        self.index = 0
        if self._check("EOF"):
            raise GuardEvaluationError("empty guard expression", expression=text, column=1)
        node = self._parse_or()
        if not self._check("EOF"):
            token = self._peek()
            raise GuardEvaluationError(
                f"Unexpected token '{token.value}'", expression=text, column=token.column
            )
        return node

    def _parse_or(self) -> "Node":
        operands = [self._parse_and()]
        while self._match("IDENT", "or"):
            operands.append(self._parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _parse_and(self) -> "Node":
        operands = [self._parse_not()]
        while self._match("IDENT", "and"):
            operands.append(self._parse_not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _parse_not(self) -> "Node":
        if self._match("IDENT", "not"):
            return Not(self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> "Node":
        left = self._parse_operand()
        if self._check("OP"):
            op = self._advance().value
            return Compare(op, left, self._parse_operand())
        if self._match("IDENT", "in"):
            return Compare("in", left, self._parse_operand())
        if self._check("IDENT", "not") and self._check_next("IDENT", "in"):
            self._advance()
            self._advance()
            return Compare("not in", left, self._parse_operand())
        if self._match("IDENT", "is"):
            negated = self._match("IDENT", "not")
            token = self._consume("IDENT")
            if token.value not in TESTS:
                raise GuardEvaluationError(
                    f"Unknown test '{token.value}'", expression=self.text, column=token.column
                )
            return Test(left, token.value, negated)
        return left

    def _parse_operand(self) -> "Node":
        token = self._peek()
        if token.type == "STRING":
            self._advance()
            return Literal(token.value)
        if token.type == "NUMBER":
            self._advance()
            try:
                return Literal(float(token.value) if "." in token.value else int(token.value))
            except ValueError:
                raise GuardEvaluationError(
                    f"Invalid number '{token.value}'", expression=self.text, column=token.column
                ) from None
        if token.type == "LPAREN":
            self._advance()
            node = self._parse_or()
            self._consume("RPAREN")
            return node
        if token.type == "LBRACKET":
            self._advance()
            items: list[Node] = []
            while not self._check("RBRACKET"):
                items.append(self._parse_or())
                if not self._match("COMMA"):
                    break
            self._consume("RBRACKET")
            return ListExpr(tuple(items))
        if token.type == "IDENT" and token.value not in KEYWORDS:
            self._advance()
            lowered = token.value.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered in {"none", "null"}:
                return Literal(None)
            path = [token.value]
            while self._match("DOT"):
                path.append(self._consume("IDENT").value)
            return Ref(tuple(path))
        raise GuardEvaluationError(
            f"Unexpected token '{token.value or 'end of expression'}'",
            expression=self.text,
            column=token.column,
        )

    def _match(self, token_type: str, value: Optional[str] = None) -> bool:
        if self._check(token_type, value):
            self._advance()
            return True
        return False

    def _check(self, token_type: str, value: Optional[str] = None) -> bool:
        return self._token_is(self._peek(), token_type, value)

    def _check_next(self, token_type: str, value: Optional[str] = None) -> bool:
        idx = min(self.index + 1, len(self.tokens) - 1)
        return self._token_is(self.tokens[idx], token_type, value)

    @staticmethod
    def _token_is(token: Token, token_type: str, value: Optional[str]) -> bool:
        if token.type != token_type:
            return False
        return value is None or token.value == value

    def _consume(self, token_type: str, value: Optional[str] = None) -> Token:
        if not self._check(token_type, value):
            got = self._peek()
            detail = f" {value}" if value else ""
            raise GuardEvaluationError(
                f"Expected {token_type}{detail} but found '{got.value}'",
                expression=self.text,
                column=got.column,
            )
        return self._advance()

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]


@dataclass(frozen=True)
class Guard:
    """A parsed guard plus the source text it came from."""

    source: str
    node: "Node"

    @classmethod
    def parse(cls, value: Any) -> "Guard":
        if isinstance(value, bool):
            return cls("true" if value else "false", Literal(value))
        if isinstance(value, (list, tuple)):
            # A list of conditions means all of them must hold.
            parts = [str(item).strip() for item in value]
            source = " and ".join(f"({part})" for part in parts)
        else:
            source = str(value).strip()
            if source.startswith("{{") and source.endswith("}}"):
                source = source[2:-2].strip()
        return cls(source, GuardParser().parse(source))

    def evaluate(self, lookup: Lookup) -> bool:
        try:
            return _truth(self.node, lookup)
        except GuardEvaluationError as exc:
            if exc.expression is None:
                exc.expression = self.source
            raise

    def references(self) -> set[str]:
        return self.node.references()

    def __str__(self) -> str:
        return self.source
