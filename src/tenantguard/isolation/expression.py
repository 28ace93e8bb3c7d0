"""Minimal boolean expression trees for WHERE, ON and HAVING clauses.

Only the connective structure is modelled: AND, OR, NOT and parenthesized
groups. Everything between two connectives is an opaque :class:`Predicate`
holding its tokens. That is enough to answer the one question tenant
isolation needs answered: is a ``tenant_id = $n`` comparison an unconditional
operand of the top-level AND, or can some OR branch reach around it?

Grammar::

    expr      := and_expr ("OR" and_expr)*
    and_expr  := not_expr ("AND" not_expr)*
    not_expr  := "NOT" not_expr | primary
    primary   := "(" expr ")"        -- only when followed by a connective,
                                      -- a closing parenthesis or the end
               | predicate

``BETWEEN x AND y`` and ``CASE ... END`` never split a predicate, and a
parenthesis opening a sub-select stays inside its predicate.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .lexer import SqlToken, TokenKind, find_matching_paren

TENANT_COLUMN = "tenant_id"


@dataclass(frozen=True)
class Predicate:
    """A comparison or other leaf condition between connectives."""

    tokens: Tuple[SqlToken, ...]

    @property
    def text(self) -> str:
        return " ".join(t.value for t in self.tokens)

    def references_tenant(self) -> bool:
        return any(t.identifier == TENANT_COLUMN for t in self.tokens)

    def tenant_placeholder(self) -> Optional[int]:
        """Placeholder index if this is exactly ``tenant_id = $n``.

        Qualified column names (``o.tenant_id``), the mirrored form
        ``$n = tenant_id`` and a trailing cast (``$n::uuid``) are accepted.
        """
        tokens = list(self.tokens)
        # Drop a trailing "::type" cast
        if len(tokens) >= 2 and tokens[-2].is_punct("::"):
            tokens = tokens[:-2]

        def split_column(parts: List[SqlToken]) -> bool:
            if len(parts) == 1:
                return parts[0].identifier == TENANT_COLUMN
            if len(parts) == 3 and parts[1].is_punct("."):
                return (
                    parts[0].identifier is not None
                    and parts[2].identifier == TENANT_COLUMN
                )
            return False

        for i, token in enumerate(tokens):
            if token.kind is TokenKind.OPERATOR and token.value == "=":
                left, right = tokens[:i], tokens[i + 1 :]
                if len(right) == 1 and right[0].placeholder_index and split_column(left):
                    return right[0].placeholder_index
                if len(left) == 1 and left[0].placeholder_index and split_column(right):
                    return left[0].placeholder_index
                return None
        return None

    def is_tenant_equality(self) -> bool:
        return self.tenant_placeholder() is not None

    def is_negated(self) -> bool:
        return any(t.is_word("NOT") for t in self.tokens)

    def is_tautology(self) -> bool:
        """True for conditions that hold for every row.

        Covers ``TRUE``, ``NOT FALSE``, ``x = x`` with identical single-token
        operands (``1 = 1``, ``'a' = 'a'``) and ``<expr> IS NULL``, which
        matches every row whose column is unset.
        """
        values = [t.upper for t in self.tokens]
        if values == ["TRUE"] or values == ["NOT", "FALSE"]:
            return True
        if (
            len(self.tokens) == 3
            and self.tokens[1].kind is TokenKind.OPERATOR
            and self.tokens[1].value == "="
            and self.tokens[0].kind is not TokenKind.WORD
            and self.tokens[0].upper == self.tokens[2].upper
        ):
            return True
        if len(values) >= 3 and values[-2:] == ["IS", "NULL"]:
            return True
        return False


@dataclass(frozen=True)
class Conjunction:
    operands: Tuple["Expression", ...]


@dataclass(frozen=True)
class Disjunction:
    operands: Tuple["Expression", ...]


@dataclass(frozen=True)
class Negation:
    operand: "Expression"


Expression = Union[Predicate, Conjunction, Disjunction, Negation]
Ancestors = Tuple[Union[Conjunction, Disjunction, Negation], ...]


class _ExpressionParser:
    def __init__(self, tokens: Sequence[SqlToken]):
        self.tokens = list(tokens)
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def peek(self) -> Optional[SqlToken]:
        return None if self.at_end() else self.tokens[self.pos]

    def parse(self) -> Optional[Expression]:
        if not self.tokens:
            return None
        expression = self.parse_or()
        # Stray closing parentheses or leftovers become one more OR operand so
        # nothing is silently ignored
        if not self.at_end():
            rest = Predicate(tuple(self.tokens[self.pos :]))
            self.pos = len(self.tokens)
            return Disjunction((expression, rest))
        return expression

    def parse_or(self) -> Expression:
        operands = [self.parse_and()]
        while self.peek() is not None and self.peek().is_word("OR"):
            self.pos += 1
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else Disjunction(tuple(operands))

    def parse_and(self) -> Expression:
        operands = [self.parse_not()]
        while self.peek() is not None and self.peek().is_word("AND"):
            self.pos += 1
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else Conjunction(tuple(operands))

    def parse_not(self) -> Expression:
        token = self.peek()
        if token is not None and token.is_word("NOT"):
            self.pos += 1
            return Negation(self.parse_not())
        return self.parse_primary()

    def parse_primary(self) -> Expression:
        token = self.peek()
        if token is not None and token.opens:
            close = find_matching_paren(self.tokens, self.pos)
            if close is not None and self._is_group(self.pos, close):
                inner = _ExpressionParser(self.tokens[self.pos + 1 : close]).parse()
                self.pos = close + 1
                return inner if inner is not None else Predicate(())
        return self.parse_predicate()

    def _is_group(self, open_index: int, close_index: int) -> bool:
        first = self.tokens[open_index + 1] if open_index + 1 < close_index else None
        if first is not None and first.is_word("SELECT", "WITH", "VALUES"):
            return False
        if close_index + 1 >= len(self.tokens):
            return True
        following = self.tokens[close_index + 1]
        return following.is_word("AND", "OR") or following.closes

    def parse_predicate(self) -> Predicate:
        start = self.pos
        level = 0
        case_level = 0
        pending_between = False
        while not self.at_end():
            token = self.tokens[self.pos]
            if token.opens:
                level += 1
            elif token.closes:
                if level == 0:
                    break
                level -= 1
            elif level == 0:
                if token.is_word("CASE"):
                    case_level += 1
                elif token.is_word("END") and case_level:
                    case_level -= 1
                elif token.is_word("BETWEEN"):
                    pending_between = True
                elif token.is_word("AND") and case_level == 0:
                    if not pending_between:
                        break
                    pending_between = False
                elif token.is_word("OR") and case_level == 0:
                    break
            self.pos += 1
        if self.pos == start and not self.at_end():
            # Empty operand; consume one token so parsing always advances
            self.pos += 1
        return Predicate(tuple(self.tokens[start : self.pos]))


def parse_expression(tokens: Sequence[SqlToken]) -> Optional[Expression]:
    """Parse the tokens of one boolean clause into an expression tree.

    Returns None for an empty clause.
    """
    return _ExpressionParser(tokens).parse()


def iter_predicates(
    expression: Optional[Expression], ancestors: Ancestors = ()
) -> Iterator[Tuple[Predicate, Ancestors]]:
    """Yield every predicate with the chain of connectives above it."""
    if expression is None:
        return
    if isinstance(expression, Predicate):
        yield expression, ancestors
    elif isinstance(expression, Negation):
        yield from iter_predicates(expression.operand, ancestors + (expression,))
    else:
        for operand in expression.operands:
            yield from iter_predicates(operand, ancestors + (expression,))


def iter_disjunctions(expression: Optional[Expression]) -> Iterator[Disjunction]:
    """Yield every OR node in the tree."""
    if expression is None or isinstance(expression, Predicate):
        return
    if isinstance(expression, Negation):
        yield from iter_disjunctions(expression.operand)
        return
    if isinstance(expression, Disjunction):
        yield expression
    for operand in expression.operands:
        yield from iter_disjunctions(operand)


def is_anchored(ancestors: Ancestors) -> bool:
    """True if only AND connectives lie between a predicate and the root."""
    return all(isinstance(node, Conjunction) for node in ancestors)
