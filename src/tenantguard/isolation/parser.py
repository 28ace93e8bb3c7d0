"""Structural parsing of tenant-scoped SQL statements.

:func:`parse_query` turns one SQL string into a :class:`ParsedQuery`: the
statement type, the tables it touches, whether any of them hold tenant data,
and the isolation facts produced by the bypass detector. It is not a general
SQL parser. It understands the shapes tenant-scoped application SQL takes:
SELECT, INSERT, UPDATE, DELETE and TRUNCATE with optional WHERE, JOIN,
subqueries, CTEs and UNION.

Example:
    >>> parsed = parse_query("SELECT * FROM orders WHERE tenant_id = $1")
    >>> parsed.statement_type
    <StatementType.SELECT: 'SELECT'>
    >>> parsed.tables
    ('orders',)
    >>> parsed.security_risk
    <RiskLevel.SAFE: 0>
"""

import dataclasses
import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Sequence, Tuple

from ..core.config import DEFAULT_SYSTEM_TABLES
from .clauses import find_word
from .detector import UnionBranch, analyze_bypass
from .expression import TENANT_COLUMN
from .lexer import SqlToken, TokenKind, find_matching_paren, placeholder_indexes, tokenize_sql
from .risk import RiskLevel, classify_risk

SYSTEM_SCHEMAS: FrozenSet[str] = frozenset({"information_schema", "pg_catalog"})

_HEALTH_CHECK_RE = re.compile(
    r"^select\s+(1|version\s*\(\s*\))(\s+as\s+\w+)?\s*;?$", re.IGNORECASE
)
_TABLE_CLAUSES = ("FROM", "UPDATE", "INTO", "TRUNCATE")
_NOT_TABLE_NAMES = frozenset(
    {"SELECT", "SET", "VALUES", "WITH", "LATERAL", "UNNEST", "DEFAULT"}
)
_DML_WORDS = ("SELECT", "INSERT", "UPDATE", "DELETE", "TRUNCATE")


class StatementType(Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    TRUNCATE = "TRUNCATE"
    OTHER = "OTHER"


@dataclass(frozen=True)
class ParsedQuery:
    """Structural facts about one SQL statement.

    Created per call and never persisted.

    Attributes:
        query: Original SQL text, used for rewriting.
        normalized_query: Trimmed, lower-cased text.
        statement_type: Decided by the first keyword (the main statement
            for ``WITH`` queries).
        tables: First table named by each of FROM, UPDATE, INTO and
            TRUNCATE, in source order.
        has_where_clause: The top-level statement has a WHERE clause.
        has_tenant_predicate: A ``tenant_id = $n`` is an unconditional
            operand of the main WHERE clause (every branch, for a UNION)
            and no OR-bypass exists anywhere in the statement.
        is_multi_tenant: At least one table is not a system table.
        union_branches: Branches of every UNION in the statement.
        is_union: The statement itself is a UNION; UNIONs inside
            sub-selects only contribute branches.
        has_complex_boolean_logic: Informational nesting/OR flag.
        security_risk: Result of :func:`classify_risk`.
        has_or_bypass_pattern: An OR can reach around a tenant predicate.
        bypass_reasons: Descriptions of each bypass found.
        has_negated_tenant_predicate: A tenant comparison sits under NOT.
        tenant_placeholders: Indexes ``k`` bound to ``tenant_id`` via
            ``tenant_id = $k`` or an INSERT column list.
        max_placeholder: Highest ``$n`` index used, 0 if none.
        has_returning_clause: A top-level RETURNING clause is present.
        is_health_check: ``SELECT 1`` / ``SELECT version()`` style liveness query.
    """

    query: str
    normalized_query: str
    statement_type: StatementType
    tables: Tuple[str, ...]
    has_where_clause: bool
    has_tenant_predicate: bool
    is_multi_tenant: bool
    union_branches: Tuple[UnionBranch, ...]
    has_complex_boolean_logic: bool
    security_risk: RiskLevel
    has_or_bypass_pattern: bool = False
    bypass_reasons: Tuple[str, ...] = ()
    has_negated_tenant_predicate: bool = False
    tenant_placeholders: Tuple[int, ...] = ()
    max_placeholder: int = 0
    has_returning_clause: bool = False
    is_health_check: bool = False
    is_union: bool = False

    @property
    def returns_rows(self) -> bool:
        return self.statement_type is StatementType.SELECT or self.has_returning_clause


def is_system_table(name: str, system_tables: Iterable[str] = DEFAULT_SYSTEM_TABLES) -> bool:
    """True for tables that never hold tenant data."""
    parts = name.lower().split(".")
    if len(parts) > 1 and parts[-2] in SYSTEM_SCHEMAS:
        return True
    table = parts[-1]
    return table in system_tables or table.startswith("pg_") or table in SYSTEM_SCHEMAS


def _statement_type(tokens: Sequence[SqlToken]) -> StatementType:
    first = next((t for t in tokens if t.kind is TokenKind.WORD), None)
    if first is None:
        return StatementType.OTHER
    keyword = first.upper
    if keyword == "WITH":
        main = find_word(tokens, 0, len(tokens), 0, *_DML_WORDS)
        keyword = tokens[main].upper if main is not None else ""
    try:
        return StatementType(keyword)
    except ValueError:
        return StatementType.OTHER


def _read_table_name(tokens: Sequence[SqlToken], index: int, clause: str) -> Optional[str]:
    while index < len(tokens) and tokens[index].is_word("TABLE", "ONLY"):
        index += 1
    if index >= len(tokens):
        return None
    token = tokens[index]
    if token.identifier is None or token.upper in _NOT_TABLE_NAMES:
        return None
    parts = [token.identifier]
    index += 1
    while (
        index + 1 < len(tokens)
        and tokens[index].is_punct(".")
        and tokens[index + 1].identifier is not None
    ):
        parts.append(tokens[index + 1].identifier)
        index += 2
    # FROM generate_series(...) names a function, not a table
    if clause == "FROM" and index < len(tokens) and tokens[index].opens:
        return None
    return ".".join(parts)


def extract_tables(tokens: Sequence[SqlToken]) -> Tuple[str, ...]:
    """First table per clause type, ordered by position in the statement."""
    found = {}
    for i, token in enumerate(tokens):
        if token.kind is not TokenKind.WORD or token.upper not in _TABLE_CLAUSES:
            continue
        clause = token.upper
        if clause in found:
            continue
        previous = tokens[i - 1] if i > 0 else None
        # FOR UPDATE / DO UPDATE are not table references
        if clause == "UPDATE" and previous is not None and previous.is_word("FOR", "DO"):
            continue
        name = _read_table_name(tokens, i + 1, clause)
        if name:
            found[clause] = (token.start, name)
    return tuple(name for _, name in sorted(found.values()))


def _insert_tenant_placeholders(tokens: Sequence[SqlToken]) -> List[int]:
    """Placeholders bound to the tenant_id column of ``INSERT ... VALUES``."""
    into = find_word(tokens, 0, len(tokens), 0, "INTO")
    if into is None:
        return []
    open_index = next(
        (i for i in range(into + 1, min(into + 5, len(tokens))) if tokens[i].opens), None
    )
    if open_index is None:
        return []
    close_index = find_matching_paren(tokens, open_index)
    if close_index is None:
        return []

    columns = [
        t.identifier
        for t in tokens[open_index + 1 : close_index]
        if t.identifier is not None and t.depth == tokens[open_index].depth + 1
    ]
    if TENANT_COLUMN not in columns:
        return []
    position = columns.index(TENANT_COLUMN)

    values = find_word(tokens, close_index + 1, len(tokens), 0, "VALUES")
    if values is None:
        return []

    placeholders = []
    i = values + 1
    while i < len(tokens) and tokens[i].opens:
        row_close = find_matching_paren(tokens, i)
        if row_close is None:
            break
        row_depth = tokens[i].depth + 1
        items: List[List[SqlToken]] = [[]]
        for token in tokens[i + 1 : row_close]:
            if token.depth == row_depth and token.is_punct(","):
                items.append([])
            else:
                items[-1].append(token)
        if position < len(items):
            item = items[position]
            if len(item) >= 1 and item[0].placeholder_index is not None and (
                len(item) == 1 or (len(item) == 3 and item[1].is_punct("::"))
            ):
                placeholders.append(item[0].placeholder_index)
        i = row_close + 1
        if i < len(tokens) and tokens[i].is_punct(","):
            i += 1
    return placeholders


def find_tenant_placeholders(
    tokens: Sequence[SqlToken], statement_type: Optional[StatementType] = None
) -> Tuple[int, ...]:
    """Every placeholder index compared or assigned to ``tenant_id``.

    Matches ``tenant_id = $k`` and ``$k = tenant_id`` anywhere in the
    statement (WHERE, ON, SET, subqueries) plus the tenant_id position of an
    ``INSERT ... VALUES`` column list.
    """
    found: List[int] = []
    for i, token in enumerate(tokens):
        if token.identifier != TENANT_COLUMN:
            continue
        if (
            i + 2 < len(tokens)
            and tokens[i + 1].kind is TokenKind.OPERATOR
            and tokens[i + 1].value == "="
            and tokens[i + 2].placeholder_index is not None
        ):
            found.append(tokens[i + 2].placeholder_index)
            continue
        start = i - 2 if i >= 2 and tokens[i - 1].is_punct(".") else i
        if (
            start >= 2
            and tokens[start - 1].kind is TokenKind.OPERATOR
            and tokens[start - 1].value == "="
            and tokens[start - 2].placeholder_index is not None
        ):
            found.append(tokens[start - 2].placeholder_index)
    if statement_type is StatementType.INSERT:
        found.extend(_insert_tenant_placeholders(tokens))
    return tuple(dict.fromkeys(found))


def parse_query(sql: str, system_tables: Optional[Iterable[str]] = None) -> ParsedQuery:
    """Parse one SQL statement into a :class:`ParsedQuery`.

    Args:
        sql: SQL text with ``$n`` placeholders.
        system_tables: Table names that never hold tenant data. Defaults to
            :data:`DEFAULT_SYSTEM_TABLES`.

    Returns:
        ParsedQuery with the risk level already classified.
    """
    system = frozenset(
        t.lower() for t in (DEFAULT_SYSTEM_TABLES if system_tables is None else system_tables)
    )
    normalized = sql.strip().lower()
    tokens = tokenize_sql(sql)

    statement_type = _statement_type(tokens)
    tables = extract_tables(tokens)
    is_health_check = bool(_HEALTH_CHECK_RE.match(normalized))
    is_multi_tenant = not is_health_check and any(
        not is_system_table(table, system) for table in tables
    )

    analysis = analyze_bypass(sql, tokens)
    if analysis.is_union:
        protected = all(b.has_valid_tenant_predicate for b in analysis.union_branches)
    else:
        protected = analysis.main_where_protected

    indexes = placeholder_indexes(tokens)
    parsed = ParsedQuery(
        query=sql,
        normalized_query=normalized,
        statement_type=statement_type,
        tables=tables,
        has_where_clause=find_word(tokens, 0, len(tokens), 0, "WHERE") is not None,
        has_tenant_predicate=protected and not analysis.has_or_bypass,
        is_multi_tenant=is_multi_tenant,
        union_branches=analysis.union_branches,
        has_complex_boolean_logic=analysis.has_complex_boolean_logic,
        security_risk=RiskLevel.SAFE,
        has_or_bypass_pattern=analysis.has_or_bypass,
        bypass_reasons=analysis.reasons,
        has_negated_tenant_predicate=analysis.has_negated_tenant_predicate,
        tenant_placeholders=find_tenant_placeholders(tokens, statement_type),
        max_placeholder=max(indexes, default=0),
        has_returning_clause=find_word(tokens, 0, len(tokens), 0, "RETURNING") is not None,
        is_health_check=is_health_check,
        is_union=analysis.is_union,
    )
    return dataclasses.replace(parsed, security_risk=classify_risk(parsed))
