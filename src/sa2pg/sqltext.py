"""
Helpers for reading Watcom-SQL procedure text
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .models import ProcedureBehavior

_LINE_COMMENT = re.compile(r"(--|//)[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.S)
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_PLACEHOLDER = re.compile("\x00(\\d+)\x00")

# Where a new simple statement may begin inside a compound statement
STATEMENT_START = r"(?:^|;|\bTHEN\b|\bELSE\b|\bLOOP\b|\bBEGIN\b|\bDO\b)"

_DML = re.compile(r"\b(INSERT|UPDATE|DELETE|MERGE|TRUNCATE)\b", re.I)
# Row-locking reads, e.g. SELECT ... FOR UPDATE
_LOCKING_READ = re.compile(r"\bFOR\s+UPDATE\b", re.I)
_RESULT_SELECT = re.compile(STATEMENT_START + r"\s*SELECT\b(?![^;]*\bINTO\b)", re.I)
_TYPE_TEXT = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_ ]*?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$")


class MaskedText:
    """SQL text with string literals swapped out for placeholders"""

    def __init__(self, text: str):
        self.literals: List[str] = []

        def _store(match):
            self.literals.append(match.group(0))
            return f"\x00{len(self.literals) - 1}\x00"

        self.text = _STRING_LITERAL.sub(_store, text)

    def restore(self, text: str) -> str:
        return _PLACEHOLDER.sub(lambda m: self.literals[int(m.group(1))], text)


def strip_comments(text: str) -> str:
    masked = MaskedText(text)
    stripped = _BLOCK_COMMENT.sub(" ", masked.text)
    stripped = _LINE_COMMENT.sub("", stripped)
    return masked.restore(stripped)


def split_top_level(text: str, separator: str = ",") -> List[str]:
    """Split on separator outside parentheses and string literals"""
    parts, depth, current, in_string = [], 0, [], False
    for char in text:
        if char == "'":
            in_string = not in_string
        elif not in_string:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            elif char == separator and depth == 0:
                parts.append("".join(current).strip())
                current = []
                continue
        current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def parse_type_text(text: str) -> Tuple[str, Optional[int], Optional[int]]:
    """'numeric(10,2)' -> ('numeric', 10, 2); 'long varchar' -> ('long varchar', None, None)"""
    match = _TYPE_TEXT.match(text or "")
    if not match:
        return (text or "").strip().lower(), None, None
    base = " ".join(match.group(1).lower().split())
    width = int(match.group(2)) if match.group(2) else None
    scale = int(match.group(3)) if match.group(3) else None
    return base, width, scale


def render_type(base: str, width: Optional[int] = None, scale: Optional[int] = None) -> str:
    if width is None:
        return base
    if scale is None:
        return f"{base}({width})"
    return f"{base}({width},{scale})"


def _balanced(text: str, open_index: int) -> int:
    """Index of the parenthesis closing the one at open_index"""
    depth = 0
    for index in range(open_index, len(text)):
        if text[index] == "(":
            depth += 1
        elif text[index] == ")":
            depth -= 1
            if depth == 0:
                return index
    raise ValueError("unbalanced parentheses")


@dataclass
class ProcedureSource:
    """Pieces of a Watcom-SQL CREATE PROCEDURE statement"""
    owner: Optional[str]
    name: str
    parameters: List[str] = field(default_factory=list)
    result_columns: List[str] = field(default_factory=list)
    options: str = ""
    body: str = ""


_HEADER = re.compile(
    r"^\s*(?:CREATE|ALTER)\s+(?:OR\s+REPLACE\s+)?(?:TEMPORARY\s+)?PROCEDURE\s+"
    r"(?:\"?(?P<owner>[\w$#]+)\"?\s*\.\s*)?\"?(?P<name>[\w$#]+)\"?\s*",
    re.I,
)


def parse_procedure_source(text: str) -> Optional[ProcedureSource]:
    """Split Watcom-SQL procedure text into header parts and body

    Returns None when the text is not a Watcom-SQL procedure (for example a
    Transact-SQL procedure with @-prefixed parameters).
    """
    masked = MaskedText(strip_comments(text))
    source = masked.text
    header = _HEADER.match(source)
    if not header:
        return None

    parsed = ProcedureSource(owner=header.group("owner"), name=header.group("name"))
    pos = header.end()

    if pos < len(source) and source[pos] == "(":
        close = _balanced(source, pos)
        parsed.parameters = [masked.restore(p) for p in split_top_level(source[pos + 1:close])]
        pos = close + 1

    result = re.compile(r"\s*RESULT\s*\(", re.I).match(source, pos)
    if result:
        open_index = result.end() - 1
        close = _balanced(source, open_index)
        parsed.result_columns = [masked.restore(c) for c in split_top_level(source[open_index + 1:close])]
        pos = close + 1

    begin = re.compile(r"\bBEGIN\b", re.I).search(source, pos)
    if not begin:
        return None
    ends = list(re.finditer(r"\bEND\b", source[begin.end():], re.I))
    if not ends:
        return None
    body_end = begin.end() + ends[-1].start()

    parsed.options = masked.restore(source[pos:begin.start()]).strip()
    parsed.body = masked.restore(source[begin.end():body_end])
    return parsed


def has_result_select(body: str) -> bool:
    """A SELECT without INTO at statement level produces a result set"""
    return bool(_RESULT_SELECT.search(MaskedText(strip_comments(body)).text))


def classify_behavior(source_text: str, has_result_columns: bool) -> ProcedureBehavior:
    """Tag a procedure by whether it mutates data and whether it returns rows"""
    parsed = parse_procedure_source(source_text)
    body = parsed.body if parsed else source_text
    scan = _LOCKING_READ.sub(" ", MaskedText(strip_comments(body)).text)

    if not _DML.search(scan):
        return ProcedureBehavior.READ_ONLY
    if has_result_columns or has_result_select(body):
        return ProcedureBehavior.MUTATING_WITH_RESULT
    return ProcedureBehavior.MUTATING_NO_RESULT
