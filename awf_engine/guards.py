"""Guard expressions for scenario-graph edges.

A guard is a small prefix expression evaluated against a guard context built
from game state:

    gte(rel.kiera.trust, 8)
    and(eq(obj.meet_kiera, "complete"), not(has(flag.betrayed)))

Comparisons:  eq ne gt gte lt lte  — (path, literal)
Combinators:  and(...) or(...) not(x)
Presence:     has(path)            — path resolves to a truthy value

Paths are dotted names looked up in nested mappings; a missing segment
resolves to None, which compares unequal to everything and fails every
ordering. Literals are numbers, quoted strings, true/false/null, or bare
words (read as strings).
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any

from awf_engine.errors import GuardSyntaxError

Guard = Callable[[Mapping[str, Any]], bool]

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<num>-?\d+(?:\.\d+)?)
      | (?P<str>"[^"]*"|'[^']*')
      | (?P<name>[A-Za-z_][\w.\-]*)
      | (?P<punct>[(),])
    )""",
    re.VERBOSE,
)

_COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}

_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise GuardSyntaxError(f"Unexpected character at {pos} in guard {text!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def resolve_path(ctx: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted path in nested mappings, None when any segment is missing."""
    value: Any = ctx
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise GuardSyntaxError(f"Unexpected end of guard {self.text!r}")
        self.pos += 1
        return tok

    def _expect(self, value: str) -> None:
        kind, got = self._next()
        if kind != "punct" or got != value:
            raise GuardSyntaxError(f"Expected {value!r}, got {got!r} in guard {self.text!r}")

    def parse(self) -> Guard:
        guard = self._expr()
        if self._peek() is not None:
            raise GuardSyntaxError(f"Trailing input in guard {self.text!r}")
        return guard

    def _expr(self) -> Guard:
        kind, name = self._next()
        if kind != "name":
            raise GuardSyntaxError(f"Expected an operator, got {name!r} in guard {self.text!r}")

        nxt = self._peek()
        if nxt != ("punct", "("):
            # Bare path: truthiness test
            return lambda ctx, p=name: bool(resolve_path(ctx, p))

        self._expect("(")
        op = name.lower()
        if op in _COMPARISONS:
            path = self._path()
            self._expect(",")
            literal = self._literal()
            self._expect(")")
            return _comparison(_COMPARISONS[op], path, literal)
        if op == "has":
            path = self._path()
            self._expect(")")
            return lambda ctx: bool(resolve_path(ctx, path))
        if op in ("and", "or", "not"):
            args = [self._expr()]
            while self._peek() == ("punct", ","):
                self._next()
                args.append(self._expr())
            self._expect(")")
            if op == "not":
                if len(args) != 1:
                    raise GuardSyntaxError(f"not() takes one argument in guard {self.text!r}")
                inner = args[0]
                return lambda ctx: not inner(ctx)
            combine = all if op == "and" else any
            return lambda ctx: combine(g(ctx) for g in args)
        raise GuardSyntaxError(f"Unknown guard operator {name!r} in guard {self.text!r}")

    def _path(self) -> str:
        kind, value = self._next()
        if kind != "name":
            raise GuardSyntaxError(f"Expected a path, got {value!r} in guard {self.text!r}")
        return value

    def _literal(self) -> Any:
        kind, value = self._next()
        if kind == "num":
            return float(value) if "." in value else int(value)
        if kind == "str":
            return value[1:-1]
        if kind == "name":
            return _KEYWORDS.get(value.lower(), value)
        raise GuardSyntaxError(f"Expected a literal, got {value!r} in guard {self.text!r}")


def _comparison(op: Callable[[Any, Any], bool], path: str, literal: Any) -> Guard:
    def check(ctx: Mapping[str, Any]) -> bool:
        actual = resolve_path(ctx, path)
        if op in (operator.eq, operator.ne):
            return op(actual, literal)
        if actual is None:
            return False
        try:
            return op(actual, literal)
        except TypeError:
            return False

    return check


@lru_cache(maxsize=512)
def parse_guard(text: str) -> Guard:
    """Compile a guard expression. Raises GuardSyntaxError on bad input."""
    if not text or not text.strip():
        raise GuardSyntaxError("Empty guard expression")
    return _Parser(text).parse()


def evaluate_guard(text: str | None, ctx: Mapping[str, Any]) -> bool:
    """Evaluate a guard; a missing guard always passes."""
    if text is None:
        return True
    return parse_guard(text)(ctx)
