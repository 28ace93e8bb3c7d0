"""Tenant context injection.

:func:`ensure_tenant_context` makes the authoritative tenant the only tenant a
validated statement can touch:

- every parameter bound to ``tenant_id`` (``tenant_id = $k`` anywhere, or the
  tenant_id column of ``INSERT ... VALUES``) is overwritten with the request
  tenant, padding the parameter list when the position is missing;
- a multi-tenant SELECT, UPDATE or DELETE without an AND-scoped tenant
  predicate gets one added as a fresh placeholder ``$N``.

The caller's parameter list is never mutated. Running the injector on its
own output changes nothing.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from ..core.config import GuardConfig
from .clauses import clause_end, find_word
from .exceptions import TenantParameterMismatch
from .lexer import SqlToken, tokenize_sql
from .parser import ParsedQuery, StatementType, parse_query

logger = logging.getLogger(__name__)

# Clauses a new WHERE must precede when a statement has none
_SELECT_TRAILING = ("GROUP", "ORDER", "HAVING", "LIMIT", "OFFSET", "FETCH", "FOR", "WINDOW")
_MODIFY_TRAILING = ("RETURNING",)


@dataclass(frozen=True)
class TenantContextResult:
    """Query and parameters safe to execute for one tenant.

    Attributes:
        query: SQL text, rewritten when a predicate was injected.
        params: New parameter list.
        corrected_positions: 1-based placeholder indexes whose value was
            replaced with the request tenant.
        injected_placeholder: Index ``N`` of an injected ``tenant_id = $N``,
            or None when the query text is unchanged.
    """

    query: str
    params: List[Any]
    corrected_positions: Tuple[int, ...] = ()
    injected_placeholder: Optional[int] = None

    @property
    def was_rewritten(self) -> bool:
        return self.injected_placeholder is not None


def _bind_tenant(
    params: List[Any],
    placeholders: Sequence[int],
    tenant_id: str,
    query: str,
    strict: bool,
) -> Tuple[int, ...]:
    corrected = []
    for index in placeholders:
        if index > len(params):
            params.extend([None] * (index - len(params)))
        current = params[index - 1]
        if current is not None and str(current) == tenant_id:
            continue
        if strict and current is not None:
            raise TenantParameterMismatch(
                query,
                detail=f"Parameter ${index} does not match request tenant",
                tenant_id=tenant_id,
            )
        params[index - 1] = tenant_id
        corrected.append(index)
    if corrected:
        logger.warning(
            f"Corrected tenant_id parameter(s) {corrected} to request tenant {tenant_id}"
        )
    return tuple(corrected)


def _main_keyword_index(tokens: Sequence[SqlToken], statement: StatementType) -> int:
    index = find_word(tokens, 0, len(tokens), 0, statement.value)
    return 0 if index is None else index


def _insert_predicate(
    query: str, tokens: Sequence[SqlToken], predicate: str, statement: StatementType
) -> str:
    where = find_word(tokens, 0, len(tokens), 0, "WHERE")
    if where is not None:
        end = clause_end(tokens, where + 1, 0)
        if end == where + 1:
            return f"{query[: tokens[where].end]} {predicate}{query[tokens[where].end :]}"
        original = query[tokens[where + 1].start : tokens[end - 1].end]
        return (
            f"{query[: tokens[where].end]} {predicate} AND ({original})"
            f"{query[tokens[end - 1].end :]}"
        )

    start = _main_keyword_index(tokens, statement)
    if statement is StatementType.SELECT:
        from_index = find_word(tokens, start, len(tokens), 0, "FROM")
        start = start if from_index is None else from_index
        trailing = _SELECT_TRAILING
    else:
        trailing = _MODIFY_TRAILING

    for i in range(start + 1, len(tokens)):
        token = tokens[i]
        if token.depth == 0 and (token.is_word(*trailing) or token.is_punct(";")):
            head = query[: token.start].rstrip()
            return f"{head} WHERE {predicate} {query[token.start :]}"
    return f"{query.rstrip()} WHERE {predicate}"


def ensure_tenant_context(
    query: str,
    params: Optional[Sequence[Any]],
    tenant_id: str,
    parsed: Optional[ParsedQuery] = None,
    config: Optional[GuardConfig] = None,
) -> TenantContextResult:
    """Bind ``tenant_id`` into a validated statement.

    Args:
        query: SQL text that already passed :func:`validate_sql_query`.
        params: Positional parameters for ``$1..$n``; not mutated.
        tenant_id: Authoritative request tenant.
        parsed: ParsedQuery for ``query`` if the caller already has one.
        config: Guard configuration (strict tenant parameters, system tables).

    Returns:
        TenantContextResult with the query and parameters to execute.

    Raises:
        TenantParameterMismatch: A bound tenant parameter differs from
            ``tenant_id`` and strict tenant parameters are enabled.
    """
    config = config or GuardConfig()
    if parsed is None:
        parsed = parse_query(query, config.system_tables)
    new_params = list(params or [])

    corrected = _bind_tenant(
        new_params,
        parsed.tenant_placeholders,
        tenant_id,
        query,
        config.strict_tenant_parameters,
    )

    needs_predicate = (
        parsed.is_multi_tenant
        and not parsed.has_tenant_predicate
        and not parsed.is_union
        and parsed.statement_type
        in (StatementType.SELECT, StatementType.UPDATE, StatementType.DELETE)
    )
    if not needs_predicate:
        return TenantContextResult(query, new_params, corrected)

    placeholder = max(parsed.max_placeholder, len(new_params)) + 1
    if len(new_params) < placeholder - 1:
        new_params.extend([None] * (placeholder - 1 - len(new_params)))
    new_params.append(tenant_id)

    rewritten = _insert_predicate(
        query,
        tokenize_sql(query),
        f"tenant_id = ${placeholder}",
        parsed.statement_type,
    )
    logger.info(
        f"Injected tenant predicate ${placeholder} into {parsed.statement_type.value} "
        f"for tenant {tenant_id}"
    )
    return TenantContextResult(rewritten, new_params, corrected, placeholder)
