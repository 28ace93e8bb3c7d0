"""Clause location helpers over a token stream.

These functions find where a WHERE, ON or HAVING clause starts and ends, split
a query scope into UNION branches, and locate parenthesized sub-selects.
Boundaries are decided per parenthesis depth, so keywords inside function
calls, window definitions or subqueries never end an outer clause.
"""

from typing import List, Optional, Sequence, Tuple

from .lexer import SqlToken, TokenKind, find_matching_paren

# Keywords that end a boolean clause at the same parenthesis depth
CLAUSE_TERMINATORS = frozenset(
    {
        "WHERE",
        "GROUP",
        "ORDER",
        "HAVING",
        "LIMIT",
        "OFFSET",
        "FETCH",
        "RETURNING",
        "UNION",
        "INTERSECT",
        "EXCEPT",
        "FOR",
        "WINDOW",
        "ON",
        "USING",
        "JOIN",
    }
)

# Words that only start a join when followed by JOIN, OUTER or INNER;
# LEFT(...) and RIGHT(...) are string functions
JOIN_PREFIXES = frozenset({"LEFT", "RIGHT", "FULL", "INNER", "CROSS", "NATURAL", "OUTER"})

Span = Tuple[int, int]


def is_clause_boundary(tokens: Sequence[SqlToken], index: int) -> bool:
    token = tokens[index]
    if token.is_punct(";"):
        return True
    if token.kind is not TokenKind.WORD:
        return False
    upper = token.upper
    if upper in JOIN_PREFIXES:
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        return following is not None and following.is_word("JOIN", "OUTER", "INNER")
    return upper in CLAUSE_TERMINATORS


def clause_end(
    tokens: Sequence[SqlToken], start: int, depth: int, limit: Optional[int] = None
) -> int:
    """Index one past the last token of a clause starting at ``start``.

    The clause ends at the first boundary keyword at ``depth``, at the
    parenthesis closing the enclosing scope, or at ``limit``.
    """
    stop = len(tokens) if limit is None else limit
    for i in range(start, stop):
        token = tokens[i]
        if token.depth < depth:
            return i
        if token.depth == depth and is_clause_boundary(tokens, i):
            return i
    return stop


def find_word(
    tokens: Sequence[SqlToken], start: int, end: int, depth: int, *words: str
) -> Optional[int]:
    """First index in ``[start, end)`` of one of ``words`` at ``depth``."""
    for i in range(start, end):
        if tokens[i].depth == depth and tokens[i].is_word(*words):
            return i
    return None


def boolean_clauses(tokens: Sequence[SqlToken]) -> List[Tuple[str, int, int]]:
    """Every WHERE, ON and HAVING clause as ``(keyword, start, end)``.

    ``start`` is the index just after the keyword. ``ON CONFLICT`` is not a
    boolean clause and is skipped.
    """
    clauses = []
    for i, token in enumerate(tokens):
        if not token.is_word("WHERE", "HAVING", "ON"):
            continue
        following = tokens[i + 1] if i + 1 < len(tokens) else None
        if token.is_word("ON") and following is not None and following.is_word("CONFLICT"):
            continue
        clauses.append((token.upper, i + 1, clause_end(tokens, i + 1, token.depth)))
    return clauses


def query_scopes(tokens: Sequence[SqlToken]) -> List[Tuple[int, int, int]]:
    """The top-level statement and every parenthesized sub-select.

    Returns ``(start, end, depth)`` triples; the top-level scope comes first.
    """
    scopes = [(0, len(tokens), 0)]
    for i, token in enumerate(tokens):
        if token.opens and i + 1 < len(tokens) and tokens[i + 1].is_word("SELECT", "WITH"):
            close = find_matching_paren(tokens, i)
            scopes.append((i + 1, len(tokens) if close is None else close, token.depth + 1))
    return scopes


def split_union(
    tokens: Sequence[SqlToken], start: int, end: int, depth: int
) -> List[Span]:
    """Split a scope on ``UNION`` / ``UNION ALL`` at ``depth``."""
    branches: List[Span] = []
    branch_start = start
    for i in range(start, end):
        token = tokens[i]
        if token.depth == depth and token.is_word("UNION"):
            branches.append((branch_start, i))
            branch_start = i + 1
            while branch_start < end and tokens[branch_start].is_word("ALL", "DISTINCT"):
                branch_start += 1
    branches.append((branch_start, end))
    return branches


def unwrap_parens(
    tokens: Sequence[SqlToken], start: int, end: int, depth: int
) -> Tuple[int, int, int]:
    """Strip parentheses that wrap an entire span, e.g. ``(SELECT ...)``."""
    while end - start >= 2 and tokens[start].opens:
        if find_matching_paren(tokens, start) != end - 1:
            break
        start, end, depth = start + 1, end - 1, depth + 1
    return start, end, depth


def span_text(sql: str, tokens: Sequence[SqlToken], start: int, end: int) -> str:
    """Source text covered by ``tokens[start:end]``."""
    if start >= end:
        return ""
    return sql[tokens[start].start : tokens[end - 1].end]
