"""Conclusion predicates.

A predicate is written either as a list of conclusions (`["failure", "timed_out"]`)
or as a small boolean expression (`"failure or timed_out"`, `"not success"`,
`"any and not skipped"`). Because the domain of conclusions is finite, every
predicate is compiled once, at registration time, into the set of conclusions
it accepts. Evaluation at match time is then a set lookup.

Grammar:

    expr   := term ("or" term)*
    term   := factor ("and" factor)*
    factor := "not" factor | "(" expr ")" | "any" | <conclusion>
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from workflow_run_router.router.workflow.events import ALL_CONCLUSIONS, Conclusion

DEFAULT_EXPRESSION = "failure"

_TOKEN_RE = re.compile(r"\s*(\(|\)|[A-Za-z_]+)")
_KEYWORDS = {"or", "and", "not", "any"}


class PredicateSyntaxError(ValueError):
    pass


def _tokenize(expression: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = expression.strip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise PredicateSyntaxError(f"Unexpected character at {pos}: {text[pos:]!r}")
        tokens.append(match.group(1).lower())
        pos = match.end()
        while pos < len(text) and text[pos].isspace():
            pos += 1
    if not tokens:
        raise PredicateSyntaxError("Predicate expression is empty")
    return tokens


class _Parser:
    def __init__(self, tokens: list[str]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> str | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise PredicateSyntaxError("Unexpected end of expression")
        self._pos += 1
        return token

    def parse(self) -> frozenset[Conclusion]:
        result = self._expr()
        if self._peek() is not None:
            raise PredicateSyntaxError(f"Unexpected token {self._peek()!r}")
        return result

    def _expr(self) -> frozenset[Conclusion]:
        result = self._term()
        while self._peek() == "or":
            self._take()
            result = result | self._term()
        return result

    def _term(self) -> frozenset[Conclusion]:
        result = self._factor()
        while self._peek() == "and":
            self._take()
            result = result & self._factor()
        return result

    def _factor(self) -> frozenset[Conclusion]:
        token = self._take()
        if token == "not":
            return ALL_CONCLUSIONS - self._factor()
        if token == "(":
            inner = self._expr()
            if self._take() != ")":
                raise PredicateSyntaxError("Missing closing parenthesis")
            return inner
        if token == "any":
            return ALL_CONCLUSIONS
        if token in _KEYWORDS or token == ")":
            raise PredicateSyntaxError(f"Unexpected token {token!r}")
        try:
            return frozenset({Conclusion(token)})
        except ValueError:
            raise PredicateSyntaxError(f"Unknown conclusion {token!r}") from None


@dataclass(frozen=True, slots=True)
class ConclusionPredicate:
    """A compiled conclusion predicate."""

    expression: str
    conclusions: frozenset[Conclusion]

    def __call__(self, conclusion: Conclusion) -> bool:
        return conclusion in self.conclusions

    @classmethod
    def parse(cls, expression: str) -> ConclusionPredicate:
        tokens = _tokenize(expression)
        normalized = " ".join(tokens).replace("( ", "(").replace(" )", ")")
        return cls(expression=normalized, conclusions=_Parser(tokens).parse())

    @classmethod
    def of(cls, conclusions: list[str] | tuple[str, ...]) -> ConclusionPredicate:
        values = [
            c.value if isinstance(c, Conclusion) else str(c).strip().lower() for c in conclusions
        ]
        if not values:
            raise PredicateSyntaxError("Conclusion list is empty")
        ordered = [c.value for c in Conclusion if c.value in values]
        unknown = sorted(set(values) - set(ordered))
        if unknown:
            raise PredicateSyntaxError(f"Unknown conclusion(s): {', '.join(unknown)}")
        return cls.parse(" or ".join(ordered))

    @classmethod
    def default(cls) -> ConclusionPredicate:
        return cls.parse(DEFAULT_EXPRESSION)
