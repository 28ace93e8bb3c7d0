"""Risk classification for parsed statements."""

from enum import Enum
from functools import total_ordering
from typing import Any


@total_ordering
class RiskLevel(Enum):
    """Ordered risk levels: SAFE < LOW < MEDIUM < HIGH < CRITICAL."""

    SAFE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.value < other.value

    def __str__(self) -> str:
        return self.name


def classify_risk(query: Any) -> RiskLevel:
    """Map the structural facts of a parsed statement to a risk level.

    ``query`` is any object with the ``ParsedQuery`` attributes
    ``has_or_bypass_pattern``, ``union_branches``, ``is_multi_tenant``,
    ``has_tenant_predicate`` and ``has_complex_boolean_logic``. The rules
    are applied in order and the first match wins; every statement the
    LOW rule describes is already claimed by the MEDIUM rule.
    """
    if query.has_or_bypass_pattern:
        return RiskLevel.CRITICAL

    if any(not branch.has_valid_tenant_predicate for branch in query.union_branches):
        return RiskLevel.CRITICAL

    if query.is_multi_tenant and not query.has_tenant_predicate:
        return RiskLevel.HIGH

    if query.is_multi_tenant and query.has_complex_boolean_logic:
        return RiskLevel.MEDIUM

    if (
        query.is_multi_tenant
        and query.has_tenant_predicate
        and query.has_complex_boolean_logic
    ):
        return RiskLevel.LOW

    return RiskLevel.SAFE
