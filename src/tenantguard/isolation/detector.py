"""Detection of tenant isolation bypass patterns.

Pure functions over a token stream. The central question is structural: a
``tenant_id = $n`` comparison only isolates a statement when it is an
unconditional operand of the top-level AND of its WHERE clause. Any OR above
it lets the other branch select rows from every tenant::

    WHERE tenant_id = $1 OR id = $2                  -- bypass
    WHERE (tenant_id = $1 AND a = $2) OR b = $3      -- bypass
    WHERE tenant_id = $1 AND (status = $2 OR x = $3) -- safe
    WHERE tenant_id = $1 AND (status = $2 OR TRUE)   -- bypass

Every WHERE, ON and HAVING clause is checked, including those inside
subqueries, and each branch of a UNION is analyzed on its own.
An always-true operand (``TRUE``, ``1 = 1``, ``x IS NULL``) of any OR is a
bypass once the statement mentions ``tenant_id``.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .clauses import (
    boolean_clauses,
    clause_end,
    find_word,
    query_scopes,
    span_text,
    split_union,
    unwrap_parens,
)
from .expression import (
    TENANT_COLUMN,
    Disjunction,
    Expression,
    Negation,
    Predicate,
    is_anchored,
    iter_disjunctions,
    iter_predicates,
    parse_expression,
)
from .lexer import SqlToken, TokenKind

logger = logging.getLogger(__name__)

UNION_BRANCH_TEXT_LENGTH = 100


@dataclass(frozen=True)
class UnionBranch:
    """One branch of a UNION query.

    Attributes:
        raw_text: Source text of the branch, at most 100 characters.
        has_valid_tenant_predicate: Whether the branch's own WHERE clause has
            an AND-scoped ``tenant_id = $n`` and no OR-bypass.
    """

    raw_text: str
    has_valid_tenant_predicate: bool


@dataclass(frozen=True)
class BypassAnalysis:
    """Result of :func:`analyze_bypass`."""

    has_or_bypass: bool
    reasons: Tuple[str, ...]
    has_negated_tenant_predicate: bool
    main_where_protected: bool
    is_union: bool
    union_branches: Tuple[UnionBranch, ...]
    has_complex_boolean_logic: bool


# === Expression checks ===


def expression_bypass_reasons(
    expression: Optional[Expression], clause: str, mentions_tenant: bool
) -> List[str]:
    """Reasons an expression tree lets rows escape tenant scope."""
    reasons = []
    for predicate, ancestors in iter_predicates(expression):
        if predicate.is_tenant_equality() and any(
            isinstance(node, Disjunction) for node in ancestors
        ):
            reasons.append(f"tenant_id comparison reachable through OR in {clause}")
            break

    if mentions_tenant:
        for disjunction in iter_disjunctions(expression):
            if any(
                isinstance(op, Predicate) and op.is_tautology()
                for op in disjunction.operands
            ):
                reasons.append(f"always-true condition combined with OR in {clause}")
                break
    return reasons


def has_negated_tenant(expression: Optional[Expression]) -> bool:
    for predicate, ancestors in iter_predicates(expression):
        if not predicate.references_tenant():
            continue
        if predicate.is_negated() or any(isinstance(n, Negation) for n in ancestors):
            return True
    return False


def has_anchored_tenant_equality(expression: Optional[Expression]) -> bool:
    return any(
        predicate.is_tenant_equality() and is_anchored(ancestors)
        for predicate, ancestors in iter_predicates(expression)
    )


# === Token checks ===


def _column_span(tokens: Sequence[SqlToken], index: int) -> Tuple[int, int]:
    """Extend a ``tenant_id`` token at ``index`` over a ``qualifier.`` prefix."""
    start = index
    if index >= 2 and tokens[index - 1].is_punct(".") and tokens[index - 2].identifier:
        start = index - 2
    return start, index + 1


def adjacent_or_reasons(tokens: Sequence[SqlToken]) -> List[str]:
    """Flag ``OR tenant_id = ...`` and ``tenant_id = $n OR`` token sequences.

    This is the nearest-connective check; it does not depend on clause
    boundaries being found, so it also covers expressions outside WHERE, ON
    and HAVING.
    """
    for i, token in enumerate(tokens):
        if token.identifier != TENANT_COLUMN:
            continue
        start, end = _column_span(tokens, i)
        if start > 0 and tokens[start - 1].is_word("OR"):
            return ["OR directly before tenant_id comparison"]
        if (
            end + 1 < len(tokens)
            and tokens[end].kind is TokenKind.OPERATOR
            and tokens[end].value == "="
            and tokens[end + 1].placeholder_index is not None
        ):
            after = end + 2
            if after + 1 < len(tokens) and tokens[after].is_punct("::"):
                after += 2
            if after < len(tokens) and tokens[after].is_word("OR"):
                return ["OR directly after tenant_id comparison"]
    return []


def has_complex_boolean_logic(tokens: Sequence[SqlToken]) -> bool:
    """Informational flag for hard-to-review boolean structure.

    True when parentheses nest deeper than two levels and an OR is present,
    when there is more than one OR, or when an OR is combined with more than
    two ANDs.
    """
    max_nesting = max((t.depth + 1 for t in tokens if t.opens), default=0)
    or_count = sum(1 for t in tokens if t.is_word("OR"))
    and_count = sum(1 for t in tokens if t.is_word("AND"))
    return (
        (max_nesting > 2 and or_count > 0)
        or or_count > 1
        or (or_count > 0 and and_count > 2)
    )


# === Statement analysis ===


def _branch_is_protected(
    tokens: Sequence[SqlToken],
    start: int,
    end: int,
    depth: int,
    trees: List[Tuple[str, int, Optional[Expression]]],
    mentions_tenant: bool,
) -> bool:
    where = find_word(tokens, start, end, depth, "WHERE")
    if where is None:
        return False
    where_end = clause_end(tokens, where + 1, depth, limit=end)
    if not has_anchored_tenant_equality(parse_expression(tokens[where + 1 : where_end])):
        return False
    for clause, clause_start, tree in trees:
        if start <= clause_start < end and expression_bypass_reasons(
            tree, clause, mentions_tenant
        ):
            return False
    return True


def analyze_bypass(sql: str, tokens: Sequence[SqlToken]) -> BypassAnalysis:
    """Run every bypass check over a tokenized statement.

    Args:
        sql: Original SQL text (used for UNION branch excerpts).
        tokens: Tokens of ``sql`` from :func:`tokenize_sql`.

    Returns:
        BypassAnalysis describing OR-bypass, negation, UNION branches and
        whether the main WHERE clause carries an AND-scoped tenant predicate.
    """
    mentions_tenant = any(t.identifier == TENANT_COLUMN for t in tokens)

    trees: List[Tuple[str, int, Optional[Expression]]] = []
    reasons: List[str] = []
    negated = False
    for clause, start, end in boolean_clauses(tokens):
        tree = parse_expression(tokens[start:end])
        trees.append((clause, start, tree))
        reasons.extend(expression_bypass_reasons(tree, clause, mentions_tenant))
        negated = negated or has_negated_tenant(tree)
    reasons.extend(adjacent_or_reasons(tokens))
    reasons = list(dict.fromkeys(reasons))

    branches: List[UnionBranch] = []
    top_level_is_union = False
    for scope_index, (start, end, depth) in enumerate(query_scopes(tokens)):
        spans = split_union(tokens, start, end, depth)
        if len(spans) < 2:
            continue
        if scope_index == 0:
            top_level_is_union = True
        for branch_start, branch_end in spans:
            inner_start, inner_end, inner_depth = unwrap_parens(
                tokens, branch_start, branch_end, depth
            )
            branches.append(
                UnionBranch(
                    raw_text=span_text(sql, tokens, branch_start, branch_end)[
                        :UNION_BRANCH_TEXT_LENGTH
                    ],
                    has_valid_tenant_predicate=_branch_is_protected(
                        tokens, inner_start, inner_end, inner_depth, trees, mentions_tenant
                    ),
                )
            )

    if top_level_is_union:
        main_where_protected = False
    else:
        where = find_word(tokens, 0, len(tokens), 0, "WHERE")
        main_where_protected = where is not None and has_anchored_tenant_equality(
            parse_expression(tokens[where + 1 : clause_end(tokens, where + 1, 0)])
        )

    if reasons:
        logger.debug(f"Bypass patterns found: {reasons}")

    return BypassAnalysis(
        has_or_bypass=bool(reasons),
        reasons=tuple(reasons),
        has_negated_tenant_predicate=negated,
        main_where_protected=main_where_protected,
        is_union=top_level_is_union,
        union_branches=tuple(branches),
        has_complex_boolean_logic=has_complex_boolean_logic(tokens),
    )
