"""SQL tokenization for tenant isolation analysis.

Wraps the sqlparse lexer and reduces its token stream to the handful of
token kinds the isolation checks care about. Every token keeps its character
offsets in the original string, so rewrites can splice the caller's SQL
without re-rendering it, and its parenthesis depth, so clause boundaries can
be found without a full grammar.

sqlparse emits some multi-word keywords as single tokens (``UNION ALL``,
``ORDER BY``, ``LEFT OUTER JOIN``, ``NOT LIKE``); those are split back into
one token per word here so callers only ever compare single words.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from sqlparse import tokens as T
from sqlparse.lexer import tokenize as sqlparse_tokenize

_PLACEHOLDER_RE = re.compile(r"^\$(\d+)$")
_WORD_RE = re.compile(r"^\w[\w$#]*$", re.UNICODE)
_NON_SPACE_RE = re.compile(r"\S+")


class TokenKind(Enum):
    """Coarse token classes used by the isolation checks."""

    WORD = "word"
    QUOTED_NAME = "quoted_name"
    STRING = "string"
    NUMBER = "number"
    PLACEHOLDER = "placeholder"
    PUNCTUATION = "punctuation"
    OPERATOR = "operator"
    COMMENT = "comment"
    OTHER = "other"


@dataclass(frozen=True)
class SqlToken:
    """One significant token of a SQL string.

    Attributes:
        kind: Coarse token class.
        value: Token text exactly as it appears in the source.
        start: Offset of the first character in the source string.
        end: Offset one past the last character.
        depth: Parenthesis depth. An opening parenthesis and its matching
            closing parenthesis share the depth of their surroundings.
    """

    kind: TokenKind
    value: str
    start: int
    end: int
    depth: int

    @property
    def upper(self) -> str:
        return self.value.upper()

    @property
    def identifier(self) -> Optional[str]:
        """Identifier name for words and quoted names, otherwise None."""
        if self.kind is TokenKind.WORD:
            return self.value.lower()
        if self.kind is TokenKind.QUOTED_NAME:
            return self.value[1:-1]
        return None

    @property
    def placeholder_index(self) -> Optional[int]:
        """Index ``n`` of a ``$n`` placeholder, otherwise None."""
        if self.kind is not TokenKind.PLACEHOLDER:
            return None
        match = _PLACEHOLDER_RE.match(self.value)
        return int(match.group(1)) if match else None

    def is_word(self, *words: str) -> bool:
        """True if this is an unquoted word equal (case-insensitively) to one of ``words``."""
        return self.kind is TokenKind.WORD and self.value.upper() in words

    def is_punct(self, value: str) -> bool:
        return self.kind is TokenKind.PUNCTUATION and self.value == value

    @property
    def opens(self) -> bool:
        return self.is_punct("(")

    @property
    def closes(self) -> bool:
        return self.is_punct(")")


def _classify(ttype, value: str) -> TokenKind:
    if ttype in T.Comment:
        return TokenKind.COMMENT
    if ttype in T.String.Symbol:
        return TokenKind.QUOTED_NAME
    if ttype in T.Number:
        return TokenKind.NUMBER
    if ttype in T.String or ttype in T.Literal:
        return TokenKind.STRING
    if ttype in T.Name.Placeholder:
        return TokenKind.PLACEHOLDER
    if ttype in T.Punctuation:
        return TokenKind.PUNCTUATION
    if ttype in T.Operator or ttype in T.Wildcard:
        return TokenKind.OPERATOR
    if _WORD_RE.match(value):
        return TokenKind.WORD
    return TokenKind.OTHER


def tokenize_sql(sql: str, include_comments: bool = False) -> List[SqlToken]:
    """Tokenize ``sql`` into significant tokens.

    Whitespace is dropped. Comments are dropped unless ``include_comments``
    is set; the denylist looks for comment markers in the raw text instead.

    Args:
        sql: SQL text.
        include_comments: Keep comment tokens in the result.

    Returns:
        Tokens in source order with offsets and parenthesis depth.
    """
    result: List[SqlToken] = []
    offset = 0
    depth = 0

    for ttype, value in sqlparse_tokenize(sql):
        start = offset
        offset += len(value)

        if ttype in T.Whitespace or value.isspace():
            continue

        kind = _classify(ttype, value)
        if kind is TokenKind.COMMENT and not include_comments:
            continue

        if kind is TokenKind.PUNCTUATION and value == "(":
            result.append(SqlToken(kind, value, start, offset, depth))
            depth += 1
            continue
        if kind is TokenKind.PUNCTUATION and value == ")":
            depth = max(depth - 1, 0)
            result.append(SqlToken(kind, value, start, offset, depth))
            continue

        # Split multi-word keywords ("UNION ALL", "ORDER BY") into words
        if kind not in (TokenKind.STRING, TokenKind.COMMENT, TokenKind.QUOTED_NAME) and (
            " " in value or "\t" in value or "\n" in value or "\r" in value
        ):
            for match in _NON_SPACE_RE.finditer(value):
                word = match.group(0)
                word_kind = TokenKind.WORD if _WORD_RE.match(word) else kind
                result.append(
                    SqlToken(
                        word_kind,
                        word,
                        start + match.start(),
                        start + match.end(),
                        depth,
                    )
                )
            continue

        result.append(SqlToken(kind, value, start, offset, depth))

    return result


def code_view(sql: str) -> str:
    """Return ``sql`` with the contents of string literals blanked out.

    The result has the same length as ``sql`` and keeps quotes in place, so
    pattern checks can run over it without literals triggering or hiding a
    match, and offsets stay valid.
    """
    chars = list(sql)
    for token in tokenize_sql(sql, include_comments=True):
        if token.kind is TokenKind.STRING and token.end - token.start > 2:
            for i in range(token.start + 1, token.end - 1):
                if chars[i] not in "\r\n":
                    chars[i] = " "
    return "".join(chars)


def find_matching_paren(tokens: Sequence[SqlToken], index: int) -> Optional[int]:
    """Index of the ``)`` matching the ``(`` at ``index``, or None if unbalanced."""
    level = 0
    for i in range(index, len(tokens)):
        token = tokens[i]
        if token.opens:
            level += 1
        elif token.closes:
            level -= 1
            if level == 0:
                return i
    return None


def placeholder_indexes(tokens: Sequence[SqlToken]) -> List[int]:
    """All ``$n`` placeholder indexes in source order."""
    return [t.placeholder_index for t in tokens if t.placeholder_index is not None]
