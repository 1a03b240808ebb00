"""
RLS Guard - SQL Text Scanner

A lexical tokenizer for Postgres SQL plus the small structural parsers the
governance tools need: statement splitting, CREATE/ALTER/DROP POLICY
statements, and CREATE FUNCTION/PROCEDURE blocks with their delimited bodies.

This is not a SQL parser. It understands exactly enough lexical structure
(comments, string literals, quoted identifiers, dollar quoting) that
comment markers inside strings are not comments, semicolons inside function
bodies do not end statements, and a clause in one function body is never
attributed to another.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

WS = "ws"
COMMENT = "comment"
STRING = "string"
QIDENT = "qident"
DOLLAR = "dollar"
PARAM = "param"
WORD = "word"
NUMBER = "number"
PUNCT = "punct"

_WORD_RE = re.compile(r"[A-Za-z_\u0080-\U0010ffff][A-Za-z0-9_$\u0080-\U0010ffff]*")
_NUMBER_RE = re.compile(r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?")
_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_PARAM_RE = re.compile(r"\$\d+")
_WS_RE = re.compile(r"\s+")

_ALNUM_KINDS = frozenset({WORD, NUMBER, QIDENT, PARAM})


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int
    line: int

    @property
    def upper(self) -> str:
        return self.text.upper()

    def is_word(self, *words: str) -> bool:
        return self.kind == WORD and self.text.upper() in words

    def is_punct(self, char: str) -> bool:
        return self.kind == PUNCT and self.text == char


def _scan_block_comment(text: str, i: int) -> int:
    depth = 0
    n = len(text)
    while i < n:
        if text.startswith("/*", i):
            depth += 1
            i += 2
        elif text.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return n


def _scan_quoted(text: str, i: int, quote: str, backslash: bool = False) -> int:
    """Return the end offset of a quoted run starting at the opening quote."""
    n = len(text)
    j = i + 1
    while j < n:
        ch = text[j]
        if backslash and ch == "\\":
            j += 2
            continue
        if ch == quote:
            if j + 1 < n and text[j + 1] == quote:
                j += 2
                continue
            return j + 1
        j += 1
    return n


def tokenize(text: str) -> List[Token]:
    """Split SQL text into tokens covering every character of the input."""
    tokens: List[Token] = []
    n = len(text)
    i = 0
    line = 1
    while i < n:
        ch = text[i]
        start = i
        if ch.isspace():
            kind = WS
            i = _WS_RE.match(text, i).end()  # type: ignore[union-attr]
        elif text.startswith("--", i):
            kind = COMMENT
            newline = text.find("\n", i)
            i = n if newline == -1 else newline
        elif text.startswith("/*", i):
            kind = COMMENT
            i = _scan_block_comment(text, i)
        elif ch in "eE" and i + 1 < n and text[i + 1] == "'":
            kind = STRING
            i = _scan_quoted(text, i + 1, "'", backslash=True)
        elif ch == "'":
            kind = STRING
            i = _scan_quoted(text, i, "'")
        elif ch == '"':
            kind = QIDENT
            i = _scan_quoted(text, i, '"')
        elif ch == "$":
            tag = _DOLLAR_TAG_RE.match(text, i)
            param = _PARAM_RE.match(text, i)
            if tag:
                kind = DOLLAR
                close = text.find(tag.group(0), tag.end())
                i = n if close == -1 else close + len(tag.group(0))
            elif param:
                kind = PARAM
                i = param.end()
            else:
                kind = PUNCT
                i += 1
        elif ch.isalpha() or ch == "_" or ord(ch) >= 0x80:
            kind = WORD
            i = _WORD_RE.match(text, i).end()  # type: ignore[union-attr]
        elif "0" <= ch <= "9" or (ch == "." and i + 1 < n and "0" <= text[i + 1] <= "9"):
            kind = NUMBER
            i = _NUMBER_RE.match(text, i).end()  # type: ignore[union-attr]
        else:
            kind = PUNCT
            i += 1
        tokens.append(Token(kind, text[start:i], start, i, line))
        line += text.count("\n", start, i)
    return tokens


def significant(tokens: Sequence[Token]) -> List[Token]:
    return [tok for tok in tokens if tok.kind not in (WS, COMMENT)]


def strip_comments(text: str) -> str:
    """Blank out comments while preserving offsets and line numbers."""
    parts = []
    for tok in tokenize(text):
        if tok.kind == COMMENT:
            parts.append(re.sub(r"[^\n]", " ", tok.text))
        else:
            parts.append(tok.text)
    return "".join(parts)


def line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def unquote_identifier(tok: Token) -> str:
    if tok.kind == QIDENT:
        return tok.text[1:-1].replace('""', '"')
    return tok.text.lower()


def string_literal_value(tok: Token) -> str:
    """Inner text of a string or dollar-quoted token."""
    if tok.kind == DOLLAR:
        tag = _DOLLAR_TAG_RE.match(tok.text).group(0)  # type: ignore[union-attr]
        inner = tok.text[len(tag):]
        return inner[: -len(tag)] if inner.endswith(tag) else inner
    if tok.kind == STRING:
        body = tok.text[2:] if tok.text[0] in "eE" else tok.text[1:]
        if body.endswith("'"):
            body = body[:-1]
        return body.replace("''", "'")
    return tok.text


def normalize_relation(parts: Sequence[str]) -> str:
    """``public.profiles`` and ``profiles`` name the same governed table."""
    if len(parts) == 2 and parts[0] == "public":
        return parts[1]
    return ".".join(parts)


# =============================================================================
# Normalization & hashing
# =============================================================================


def normalize_sql(text: str | None) -> str:
    """
    Canonical form of a SQL fragment for hashing.

    Comments are dropped, whitespace collapsed (and removed next to
    punctuation), unquoted words lowercased. Literals and quoted identifiers
    are kept verbatim.
    """
    if not text:
        return ""
    out: List[str] = []
    previous: Optional[Token] = None
    for tok in significant(tokenize(text)):
        if previous is not None and previous.kind in _ALNUM_KINDS and tok.kind in _ALNUM_KINDS:
            out.append(" ")
        out.append(tok.text.lower() if tok.kind == WORD else tok.text)
        previous = tok
    return "".join(out)


def short_hash(text: str | None) -> str | None:
    """First 16 hex chars of sha256 over the normalized text; None for no text."""
    if text is None:
        return None
    return hashlib.sha256(normalize_sql(text).encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Statements
# =============================================================================


@dataclass(frozen=True)
class Statement:
    text: str
    start: int
    line: int
    tokens: Tuple[Token, ...]

    @property
    def words(self) -> List[Token]:
        return significant(self.tokens)


def split_statements(text: str) -> List[Statement]:
    """
    Split a script on top-level semicolons.

    Semicolons inside strings, dollar bodies and ``BEGIN ATOMIC ... END``
    function bodies do not terminate a statement.
    """
    statements: List[Statement] = []
    current: List[Token] = []
    atomic_depth = 0
    previous_word: Optional[Token] = None

    def flush() -> None:
        words = significant(current)
        if words:
            start = current[0].start
            end = current[-1].end
            statements.append(Statement(text[start:end], start, words[0].line, tuple(current)))
        current.clear()

    for tok in tokenize(text):
        if tok.kind == WORD:
            upper = tok.upper
            if upper == "ATOMIC" and previous_word is not None and previous_word.upper == "BEGIN":
                atomic_depth = 1
            elif atomic_depth and upper == "CASE":
                atomic_depth += 1
            elif atomic_depth and upper == "END":
                atomic_depth -= 1
            previous_word = tok
        if tok.is_punct(";") and not atomic_depth:
            flush()
            previous_word = None
            continue
        current.append(tok)
    flush()
    return statements


class _Cursor:
    """Forward cursor over the significant tokens of one statement."""

    def __init__(self, tokens: Sequence[Token]):
        self.tokens = list(tokens)
        self.pos = 0

    def peek(self, offset: int = 0) -> Optional[Token]:
        idx = self.pos + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def advance(self) -> Optional[Token]:
        tok = self.peek()
        if tok is not None:
            self.pos += 1
        return tok

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def at_word(self, *words: str, offset: int = 0) -> bool:
        tok = self.peek(offset)
        return tok is not None and tok.is_word(*words)

    def accept_word(self, *words: str) -> bool:
        if self.at_word(*words):
            self.pos += 1
            return True
        return False

    def accept_punct(self, char: str) -> bool:
        tok = self.peek()
        if tok is not None and tok.is_punct(char):
            self.pos += 1
            return True
        return False

    def identifier(self) -> Optional[str]:
        tok = self.peek()
        if tok is not None and tok.kind in (WORD, QIDENT):
            self.pos += 1
            return unquote_identifier(tok)
        return None

    def qualified_name(self) -> List[str]:
        parts: List[str] = []
        name = self.identifier()
        while name is not None:
            parts.append(name)
            if not self.accept_punct("."):
                break
            name = self.identifier()
        return parts

    def parenthesized(self, text: str) -> Optional[str]:
        """Consume a balanced ``( ... )`` group and return its inner source text."""
        opening = self.peek()
        if opening is None or not opening.is_punct("("):
            return None
        depth = 0
        while not self.at_end:
            tok = self.advance()
            assert tok is not None
            if tok.is_punct("("):
                depth += 1
            elif tok.is_punct(")"):
                depth -= 1
                if depth == 0:
                    return text[opening.end : tok.start].strip()
        return text[opening.end :].strip()


# =============================================================================
# Policies
# =============================================================================


@dataclass(frozen=True)
class PolicyStatement:
    action: str  # CREATE | ALTER | DROP
    name: str
    table: str
    line: int
    command: Optional[str] = None
    permissive: bool = True
    roles: Tuple[str, ...] = ()
    using: Optional[str] = None
    with_check: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.table}.{self.name}"


def _policy_start(words: Sequence[Token]) -> Optional[int]:
    for idx in range(len(words) - 1):
        if words[idx].is_word("CREATE", "ALTER", "DROP") and words[idx + 1].is_word("POLICY"):
            return idx
    return None


def _parse_policy(
    words: Sequence[Token], text: str, line_offset: int = 0, anywhere: bool = False
) -> Optional[PolicyStatement]:
    """
    Parse one policy statement.

    With ``anywhere`` the statement may start mid-way through ``words``, as
    in ``IF NOT EXISTS (...) THEN CREATE POLICY ...`` inside a plpgsql body.
    """
    start = _policy_start(words) if anywhere else 0
    if start is None:
        return None
    cursor = _Cursor(words[start:])
    action = cursor.advance()
    if action is None or not action.is_word("CREATE", "ALTER", "DROP"):
        return None
    if not cursor.accept_word("POLICY"):
        return None
    if action.upper == "DROP" and cursor.accept_word("IF"):
        cursor.accept_word("EXISTS")
    name = cursor.identifier()
    if name is None or not cursor.accept_word("ON"):
        return None
    table = normalize_relation(cursor.qualified_name())
    if not table:
        return None

    command: Optional[str] = "ALL" if action.upper == "CREATE" else None
    permissive = True
    roles: List[str] = []
    using: Optional[str] = None
    with_check: Optional[str] = None

    while not cursor.at_end and action.upper != "DROP":
        if cursor.accept_word("RENAME"):
            # RENAME TO <name>; the new name is not a role
            cursor.accept_word("TO")
            cursor.identifier()
        elif cursor.accept_word("AS"):
            mode = cursor.advance()
            permissive = not (mode is not None and mode.is_word("RESTRICTIVE"))
        elif cursor.accept_word("FOR"):
            cmd = cursor.advance()
            if cmd is not None:
                command = cmd.upper
        elif cursor.accept_word("TO"):
            role = cursor.identifier()
            while role is not None:
                roles.append(role)
                if not cursor.accept_punct(","):
                    break
                role = cursor.identifier()
        elif cursor.accept_word("USING"):
            using = cursor.parenthesized(text)
        elif cursor.at_word("WITH") and cursor.at_word("CHECK", offset=1):
            cursor.advance()
            cursor.advance()
            with_check = cursor.parenthesized(text)
        else:
            cursor.advance()

    return PolicyStatement(
        action=action.upper,
        name=name,
        table=table,
        line=action.line + line_offset,
        command=command,
        permissive=permissive,
        roles=tuple(roles),
        using=using,
        with_check=with_check,
    )


def _do_body(words: Sequence[Token]) -> Optional[Token]:
    """The quoted body of ``DO [LANGUAGE lang] body [LANGUAGE lang]``."""
    cursor = _Cursor(words)
    if not cursor.accept_word("DO"):
        return None
    while not cursor.at_end:
        if cursor.accept_word("LANGUAGE"):
            cursor.advance()
            continue
        tok = cursor.advance()
        assert tok is not None
        if tok.kind in (DOLLAR, STRING):
            return tok
    return None


def _collect_policies(
    text: str, line_offset: int, nested: bool, policies: List[PolicyStatement]
) -> None:
    stripped = strip_comments(text)
    for statement in split_statements(stripped):
        words = statement.words
        body = _do_body(words)
        if body is not None:
            _collect_policies(string_literal_value(body), line_offset + body.line - 1, True, policies)
            continue
        parsed = _parse_policy(words, stripped, line_offset, anywhere=nested)
        if parsed is not None:
            policies.append(parsed)


def parse_policy_statements(text: str) -> List[PolicyStatement]:
    """
    Every CREATE/ALTER/DROP POLICY statement in the script, in order.

    Statements inside anonymous ``DO`` blocks are included with their line
    in the enclosing script.
    """
    policies: List[PolicyStatement] = []
    _collect_policies(text, 0, False, policies)
    return policies


# =============================================================================
# Function blocks
# =============================================================================

_BODY_SEARCH_PATH_RE = re.compile(
    r"\bSET\s+(?:LOCAL\s+|SESSION\s+)?search_path\b|\bset_config\s*\(\s*'search_path'",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class FunctionBlock:
    name: str
    kind: str  # FUNCTION | PROCEDURE
    arguments: str
    line: int
    body: str = ""
    body_line: int = 0
    security_definer: bool = False
    search_path: Optional[str] = None
    body_sets_search_path: bool = False

    @property
    def has_search_path(self) -> bool:
        return self.search_path is not None or self.body_sets_search_path

    @property
    def stripped_body(self) -> str:
        return strip_comments(self.body)

    def select_star_lines(self) -> List[int]:
        """Absolute script lines of row-projecting ``SELECT *`` in this body."""
        return [self.body_line + rel - 1 for rel in find_select_star(self.body)]


def _read_search_path_value(cursor: _Cursor) -> str:
    if cursor.accept_word("FROM"):
        cursor.accept_word("CURRENT")
        return "FROM CURRENT"
    if not cursor.accept_word("TO"):
        cursor.accept_punct("=")
    values: List[str] = []
    while not cursor.at_end:
        tok = cursor.peek()
        assert tok is not None
        if tok.kind in (WORD, QIDENT):
            values.append(unquote_identifier(tok))
        elif tok.kind == STRING:
            values.append(string_literal_value(tok))
        else:
            break
        cursor.advance()
        if not cursor.accept_punct(","):
            break
    return ", ".join(values)


def _parse_function(statement: Statement, text: str) -> Optional[FunctionBlock]:
    cursor = _Cursor(statement.words)
    if not cursor.accept_word("CREATE"):
        return None
    if cursor.accept_word("OR"):
        cursor.accept_word("REPLACE")
    kind_tok = cursor.advance()
    if kind_tok is None or not kind_tok.is_word("FUNCTION", "PROCEDURE"):
        return None
    name = normalize_relation(cursor.qualified_name())
    arguments = cursor.parenthesized(text) or ""

    body = ""
    body_line = statement.line
    security_definer = False
    search_path: Optional[str] = None

    while not cursor.at_end:
        tok = cursor.peek()
        assert tok is not None
        if tok.is_punct("("):
            cursor.parenthesized(text)
        elif cursor.at_word("SECURITY"):
            cursor.advance()
            mode = cursor.advance()
            security_definer = mode is not None and mode.is_word("DEFINER")
        elif cursor.at_word("SET") and cursor.at_word("SEARCH_PATH", offset=1):
            cursor.advance()
            cursor.advance()
            search_path = _read_search_path_value(cursor)
        elif cursor.accept_word("AS"):
            body_tok = cursor.peek()
            if body_tok is not None and body_tok.kind in (DOLLAR, STRING) and not body:
                body = string_literal_value(body_tok)
                body_line = body_tok.line
                cursor.advance()
        elif cursor.at_word("BEGIN") and cursor.at_word("ATOMIC", offset=1):
            begin = cursor.advance()
            assert begin is not None
            last = statement.words[-1]
            body = text[begin.start : last.end]
            body_line = begin.line
            break
        else:
            cursor.advance()

    return FunctionBlock(
        name=name,
        kind=kind_tok.upper,
        arguments=arguments,
        line=statement.line,
        body=body,
        body_line=body_line,
        security_definer=security_definer,
        search_path=search_path,
        body_sets_search_path=bool(_BODY_SEARCH_PATH_RE.search(strip_comments(body))),
    )


def extract_function_blocks(text: str) -> List[FunctionBlock]:
    """Every CREATE [OR REPLACE] FUNCTION/PROCEDURE statement, in order."""
    blocks: List[FunctionBlock] = []
    for statement in split_statements(text):
        parsed = _parse_function(statement, text)
        if parsed is not None:
            blocks.append(parsed)
    return blocks


_PROJECTION_END = frozenset(
    {"FROM", "INTO", "WHERE", "GROUP", "ORDER", "LIMIT", "UNION", "EXCEPT", "INTERSECT", "HAVING"}
)


def find_select_star(body: str) -> List[int]:
    """
    Lines (1-based, relative to ``body``) of ``SELECT *`` / ``SELECT t.*`` projections.

    ``EXISTS (SELECT * ...)`` projects no row and is not reported. ``count(*)``
    and arithmetic are not projections of every column.
    """
    words = significant(tokenize(body))
    lines: List[int] = []
    for idx, tok in enumerate(words):
        if not tok.is_word("SELECT"):
            continue
        if idx >= 2 and words[idx - 1].is_punct("(") and words[idx - 2].is_word("EXISTS"):
            continue
        depth = 0
        previous = tok
        for nxt in words[idx + 1 :]:
            if nxt.is_punct("("):
                depth += 1
            elif nxt.is_punct(")"):
                if depth == 0:
                    break
                depth -= 1
            elif depth == 0 and (nxt.is_punct(";") or nxt.is_word(*_PROJECTION_END)):
                break
            elif depth == 0 and nxt.is_punct("*") and (
                previous.is_word("SELECT", "DISTINCT", "ALL")
                or previous.is_punct(",")
                or previous.is_punct(".")
            ):
                lines.append(nxt.line)
                break
            previous = nxt
    return lines


# =============================================================================
# Scripts
# =============================================================================


@dataclass(frozen=True)
class MigrationScript:
    identifier: str
    text: str
    path: Optional[Path] = field(default=None, compare=False)

    @classmethod
    def load(cls, path: Path, root: Path | None = None) -> "MigrationScript":
        try:
            identifier = str(path.resolve().relative_to((root or Path.cwd()).resolve()))
        except ValueError:
            identifier = path.name
        return cls(identifier.replace("\\", "/"), path.read_text(encoding="utf-8"), path)

    def strip_comments(self) -> str:
        return strip_comments(self.text)

    def function_blocks(self) -> List[FunctionBlock]:
        return extract_function_blocks(self.text)

    def policy_statements(self) -> List[PolicyStatement]:
        return parse_policy_statements(self.text)
