"""
Watcom-SQL stored procedures -> PL/pgSQL functions

Every translated procedure becomes a set-returning function so callers get
rows back on both engines. Constructs without a faithful rewrite are kept
and listed for manual review rather than guessed at.
"""

import re
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from .errors import MappingError
from .models import (
    ParameterMode,
    ProcedureBehavior,
    ProcedureDescriptor,
    ProcedureParameter,
    TranslatedProcedure,
)
from .sqltext import (
    STATEMENT_START,
    MaskedText,
    classify_behavior,
    has_result_select,
    parse_procedure_source,
    parse_type_text,
)
from .type_mapper import TypeMapper

logger = structlog.get_logger()

AFFECTED_ROWS = "affected_rows"

# Built-in function rewrites, applied in order
FUNCTION_REWRITES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bISNULL\s*\(", re.I), "COALESCE("),
    (re.compile(r"\bNOW\s*\(\s*\*?\s*\)", re.I), "now()"),
    (re.compile(r"\bGETDATE\s*\(\s*\)", re.I), "now()"),
    (re.compile(r"\bTODAY\s*\(\s*\*?\s*\)", re.I), "CURRENT_DATE"),
    (re.compile(r"\bCURRENT\s+TIMESTAMP\b", re.I), "CURRENT_TIMESTAMP"),
    (re.compile(r"\bCURRENT\s+DATE\b", re.I), "CURRENT_DATE"),
    (re.compile(r"\bCURRENT\s+TIME\b", re.I), "CURRENT_TIME"),
    (re.compile(r"\bCURRENT\s+USER\b", re.I), "CURRENT_USER"),
    (re.compile(r"\bUCASE\s*\(", re.I), "upper("),
    (re.compile(r"\bLCASE\s*\(", re.I), "lower("),
    (re.compile(r"\bSTRING\s*\(", re.I), "concat("),
    (re.compile(r"\bLOCATE\s*\(\s*([^,()]+?)\s*,\s*([^,()]+?)\s*\)", re.I), r"strpos(\1, \2)"),
    (re.compile(r"\bDATEFORMAT\s*\(", re.I), "to_char("),
    (re.compile(r"\bELSEIF\b", re.I), "ELSIF"),
]

# Constructs that need a human; (pattern, reason)
REVIEW_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bCOMMIT\b|\bROLLBACK\b", re.I),
     "COMMIT/ROLLBACK is not allowed inside a function"),
    (re.compile(r"\bCURSOR\b|\bFETCH\b|\bOPEN\s+\w+|\bFOR\s+\w+\s+AS\b", re.I),
     "cursor processing must become a FOR ... IN query loop"),
    (re.compile(r"\bON\s+EXCEPTION\s+RESUME\b", re.I),
     "ON EXCEPTION RESUME has no PL/pgSQL equivalent"),
    (re.compile(r"\bEXCEPTION\b", re.I),
     "exception handlers use different condition names"),
    (re.compile(r"\bEXECUTE\s+IMMEDIATE\b", re.I),
     "dynamic SQL must become EXECUTE format(...)"),
    (re.compile(r"@@\w+"),
     "@@ global variables have no PL/pgSQL equivalent"),
    (re.compile(r"\bRAISERROR\b|\bSIGNAL\b|\bRESIGNAL\b", re.I),
     "error raising must become RAISE EXCEPTION"),
    (re.compile(r"\bSQLCODE\b|\bSQLSTATE\b", re.I),
     "SQLCODE/SQLSTATE checks must become GET DIAGNOSTICS or FOUND"),
    (re.compile(r"\bIFNULL\s*\(", re.I),
     "IFNULL has three-argument semantics; rewrite as CASE"),
    (re.compile(r"\bLOCATE\s*\(", re.I),
     "LOCATE with a start position has no direct equivalent"),
    (re.compile(r"\bDATEFORMAT\s*\(", re.I),
     "DATEFORMAT became to_char; format codes differ"),
    (re.compile(r"\b(?:DATEADD|DATEDIFF|DAYS|MONTHS|YEARS)\s*\(", re.I),
     "date arithmetic functions must be rewritten with intervals"),
    (re.compile(r"\bLEAVE\b|\bITERATE\b", re.I),
     "LEAVE/ITERATE must become EXIT/CONTINUE"),
    (re.compile(r"\bWAITFOR\b", re.I),
     "WAITFOR must become pg_sleep"),
    (re.compile(r"\bBEGIN\s+ATOMIC\b", re.I),
     "BEGIN ATOMIC blocks are not supported"),
    (re.compile(r"\bLOCAL\s+TEMPORARY\s+TABLE\b", re.I),
     "declared temporary tables must become CREATE TEMP TABLE"),
    (re.compile(r"\(\s*SELECT\s+(?:DISTINCT\s+)?TOP\b", re.I),
     "TOP inside a subquery must become LIMIT"),
    (re.compile(r"\bRETURN\s+[^;\s]", re.I),
     "RETURN with a status value is dropped by the function contract"),
]

# Boundary captured so rewrites can put it back
_START = "(" + STATEMENT_START + ")"

_DECLARE = re.compile(
    STATEMENT_START
    + r"(\s*DECLARE\s+(?!LOCAL\s+TEMPORARY\b)\"?(\w+)\"?\s+(?!CURSOR\b|EXCEPTION\b|DYNAMIC\b|SCROLL\b|NO\s+SCROLL\b|INSENSITIVE\b)"
    r"([^;=]+?)(?:\s*(?:=|\bDEFAULT\b)\s*([^;]+?))?\s*;)",
    re.I,
)
_SET = re.compile(_START + r"(\s*)SET\s+(\w+)\s*=", re.I)
_MESSAGE_CLIENT = re.compile(_START + r"(\s*)MESSAGE\s+([^;]+?)\s+TO\s+CLIENT(?=\s*;)", re.I)
_MESSAGE = re.compile(_START + r"(\s*)MESSAGE\s+([^;]+?)(?=\s*;)", re.I)
_CALL = re.compile(_START + r"(\s*)CALL\s+([\w.\"]+)\s*(\(|(?=;))", re.I)
_TOP = re.compile(
    _START + r"(\s*)SELECT\s+(DISTINCT\s+)?TOP\s+(\d+)(?:\s+START\s+AT\s+(\d+))?\s+([^;]*?)(\s*)(?=;)",
    re.I,
)
_RESULT_SELECT = re.compile(_START + r"(\s*)(SELECT\b(?![^;]*\bINTO\b))", re.I)
_DML = re.compile(_START + r"(\s*)((?:INSERT|UPDATE|DELETE|MERGE)\b[^;]*?)(?=\s*;)", re.I)
_BARE_RETURN = re.compile(_START + r"(\s*)RETURN(?=\s*;)", re.I)
_QUOTED_IDENTIFIER = re.compile(r'"([^"]*)"')
_PARAMETER = re.compile(
    r"^\s*(?:(IN|OUT|INOUT)\s+)?\"?(\w+)\"?\s+(.+?)(?:\s+DEFAULT\s+(.+)|\s*=\s*(.+))?\s*$", re.I | re.S
)


def rewrite_functions(text: str) -> str:
    for pattern, replacement in FUNCTION_REWRITES:
        text = pattern.sub(replacement, text)
    return text


def _parse_parameter(text: str, default_mode: ParameterMode = ParameterMode.IN
                     ) -> Tuple[ProcedureParameter, Optional[str]]:
    match = _PARAMETER.match(text)
    if not match:
        raise MappingError(f"Cannot read parameter declaration '{text.strip()}'")
    mode = ParameterMode(match.group(1).lower()) if match.group(1) else default_mode
    base, width, scale = parse_type_text(match.group(3))
    default = match.group(4) or match.group(5)
    return ProcedureParameter(match.group(2), base, mode, width, scale), default


def descriptor_from_source(text: str, owner: str = "DBA") -> ProcedureDescriptor:
    """Build a procedure descriptor from CREATE PROCEDURE text alone"""
    parsed = parse_procedure_source(text)
    if parsed is None:
        match = re.search(r"\bCREATE\s+(?:OR\s+REPLACE\s+)?PROCEDURE\s+(?:[\w\"]+\.)?\"?(\w+)\"?", text, re.I)
        if not match:
            raise MappingError("Text does not contain a CREATE PROCEDURE statement")
        return ProcedureDescriptor(name=match.group(1), owner=owner, source_text=text)

    parameters = tuple(_parse_parameter(p)[0] for p in parsed.parameters)
    results = tuple(_parse_parameter(c, ParameterMode.OUT)[0] for c in parsed.result_columns)
    has_result = bool(results) or any(p.mode is not ParameterMode.IN for p in parameters)
    return ProcedureDescriptor(
        name=parsed.name,
        owner=parsed.owner or owner,
        parameters=parameters,
        result_columns=results,
        behavior=classify_behavior(text, has_result),
        source_text=text,
    )


class ProcedureTranslator:
    """Rewrites procedure bodies and wraps them in CREATE FUNCTION"""

    def __init__(self, mapper: TypeMapper, schema: str = "public"):
        self.mapper = mapper
        self.schema = schema

    def _target_type(self, procedure: str, param: ProcedureParameter) -> str:
        target_type, _ = self.mapper.map_type(
            param.source_type, param.width, param.scale, subject=f"{procedure}.{param.name}"
        )
        return target_type

    def _identifier(self, name: str) -> str:
        return self.mapper.normalize_identifier(name)

    def _qualified_name(self, procedure: ProcedureDescriptor) -> str:
        return f'"{self.schema}"."{self._identifier(procedure.name)}"'

    def translate(self, procedure: ProcedureDescriptor) -> TranslatedProcedure:
        """Translate one procedure; unmapped parameter types raise MappingError"""
        parsed = parse_procedure_source(procedure.source_text)
        if parsed is None:
            return self._untranslatable(procedure)

        review: List[str] = []
        notes: List[str] = []

        defaults: Dict[str, str] = {}
        for text in parsed.parameters:
            param, default = _parse_parameter(text)
            if default:
                defaults[param.name.lower()] = rewrite_functions(default.strip())

        # Function arguments
        arguments = []
        for param in procedure.input_parameters:
            argument = f"{self._identifier(param.name)} {self._target_type(procedure.name, param)}"
            if param.name.lower() in defaults:
                argument += f" DEFAULT {defaults[param.name.lower()]}"
            arguments.append(argument)

        # Result shape
        epilogue: List[str] = []
        declarations: List[str] = []
        count_rows = False
        if procedure.result_columns:
            returns = [(self._identifier(c.name), self._target_type(procedure.name, c))
                       for c in procedure.result_columns]
            return_rows = True
        elif any(p.mode is not ParameterMode.IN for p in procedure.parameters):
            returns = []
            for param in procedure.parameters:
                if param.mode is ParameterMode.OUT:
                    returns.append((self._identifier(param.name), self._target_type(procedure.name, param)))
                elif param.mode is ParameterMode.INOUT:
                    column = self._identifier(f"{param.name}_out")
                    returns.append((column, self._target_type(procedure.name, param)))
                    epilogue.append(f"{column} := {self._identifier(param.name)}")
            epilogue.append("RETURN NEXT")
            return_rows = False
            notes.append("OUT parameters are returned as a single result row")
        else:
            returns = [(AFFECTED_ROWS, "bigint")]
            declarations += [f"v_{AFFECTED_ROWS} bigint := 0;", "v_row_count bigint;"]
            epilogue.append(f"RETURN QUERY SELECT v_{AFFECTED_ROWS}")
            return_rows = False
            count_rows = True
            if procedure.behavior is ProcedureBehavior.MUTATING_NO_RESULT:
                notes.append(
                    "Source procedure returns no result set; the function returns one row "
                    f"with {AFFECTED_ROWS}, the number of rows changed by its INSERT/UPDATE/DELETE statements"
                )
            else:
                notes.append(f"Source procedure returns no result set; the function returns {AFFECTED_ROWS} = 0")

        if procedure.behavior is ProcedureBehavior.MUTATING_WITH_RESULT:
            notes.append("Data changes and the result set are produced by the same function call")

        if not procedure.result_columns and has_result_select(parsed.body):
            review.append("result set shape is undeclared; add a RESULT clause or describe it from the catalog")

        if re.search(r"\bON\s+EXCEPTION\s+RESUME\b", parsed.options, re.I):
            review.append("ON EXCEPTION RESUME has no PL/pgSQL equivalent")

        body, local_declarations = self._rewrite_body(procedure, parsed.body, return_rows, count_rows, epilogue, review)
        declarations = local_declarations + declarations

        ddl = self._render(procedure, arguments, returns, declarations, body, epilogue)
        translated = TranslatedProcedure(
            name=procedure.name,
            target_name=self._identifier(procedure.name),
            ddl=ddl,
            returns=returns,
            behavior=procedure.behavior,
            behavior_notes=notes,
            manual_review=review,
        )
        log = logger.warning if translated.requires_review else logger.info
        log("Procedure translated", procedure=procedure.name, behavior=procedure.behavior.value,
            manual_review=len(review))
        return translated

    def _rewrite_body(self, procedure: ProcedureDescriptor, body: str, return_rows: bool, count_rows: bool,
                      epilogue: Sequence[str], review: List[str]) -> Tuple[str, List[str]]:
        masked = MaskedText(body)
        text = masked.text

        declarations = []
        pos = 0
        while True:
            match = _DECLARE.search(text, pos)
            if not match:
                break
            name, type_text, default = match.group(2), match.group(3), match.group(4)
            base, width, scale = parse_type_text(type_text)
            variable = ProcedureParameter(name, base, ParameterMode.IN, width, scale)
            declaration = f"{name} {self._target_type(procedure.name, variable)}"
            if default:
                declaration += f" := {masked.restore(rewrite_functions(default.strip()))}"
            declarations.append(declaration + ";")
            text = text[:match.start(1)] + text[match.end(1):]
            pos = match.start()

        for pattern, reason in REVIEW_PATTERNS:
            if pattern.search(text) and reason not in review:
                review.append(reason)

        text = rewrite_functions(text)
        text = _QUOTED_IDENTIFIER.sub(lambda m: '"' + self._identifier(m.group(1)) + '"', text)
        text = _SET.sub(r"\1\2\3 :=", text)
        text = _MESSAGE_CLIENT.sub(r"\1\2RAISE NOTICE '%', concat(\3)", text)
        text = _MESSAGE.sub(r"\1\2RAISE LOG '%', concat(\3)", text)
        text = _CALL.sub(lambda m: f"{m.group(1)}{m.group(2)}PERFORM {m.group(3)}"
                                   f"{'(' if m.group(4) == '(' else '()'}", text)
        text = _TOP.sub(self._limit, text)

        if return_rows:
            text = _RESULT_SELECT.sub(r"\1\2RETURN QUERY \3", text)
        if count_rows:
            text = _DML.sub(
                r"\1\2\3;\n    GET DIAGNOSTICS v_row_count = ROW_COUNT;\n"
                rf"    v_{AFFECTED_ROWS} := v_{AFFECTED_ROWS} + v_row_count",
                text,
            )
        if epilogue:
            exit_steps = "; ".join(epilogue)
            text = _BARE_RETURN.sub(lambda m: f"{m.group(1)}{m.group(2)}{exit_steps}; RETURN", text)

        return masked.restore(text), declarations

    @staticmethod
    def _limit(match: re.Match) -> str:
        boundary, space, distinct, count, start_at, rest, trailing = match.groups()
        clause = f" LIMIT {count}"
        if start_at and int(start_at) > 1:
            clause += f" OFFSET {int(start_at) - 1}"
        return f"{boundary}{space}SELECT {distinct or ''}{rest}{clause}{trailing}"

    def _render(self, procedure: ProcedureDescriptor, arguments: Sequence[str], returns: Sequence[Tuple[str, str]],
                declarations: Sequence[str], body: str, epilogue: Sequence[str]) -> str:
        lines = [
            f"CREATE OR REPLACE FUNCTION {self._qualified_name(procedure)}({', '.join(arguments)})",
            f"RETURNS TABLE ({', '.join(f'{name} {type_}' for name, type_ in returns)})",
            "LANGUAGE plpgsql",
            "AS $function$",
            "#variable_conflict use_column",
        ]
        if declarations:
            lines.append("DECLARE")
            lines.extend(f"    {declaration}" for declaration in declarations)
        lines.append("BEGIN")
        lines.append(body.strip("\n").rstrip())
        lines.extend(f"    {step};" for step in epilogue)
        lines.append("END;")
        lines.append("$function$;")
        return "\n".join(lines)

    def _untranslatable(self, procedure: ProcedureDescriptor) -> TranslatedProcedure:
        logger.warning("Procedure not in Watcom-SQL dialect", procedure=procedure.name)
        commented = "\n".join(f"-- {line}" for line in procedure.source_text.splitlines())
        return TranslatedProcedure(
            name=procedure.name,
            target_name=self._identifier(procedure.name),
            ddl=commented,
            returns=[],
            behavior=procedure.behavior,
            manual_review=["procedure is not written in Watcom-SQL (Transact-SQL dialect?); translate manually"],
        )

    def translate_all(self, procedures: Sequence[ProcedureDescriptor]) -> List[TranslatedProcedure]:
        return [self.translate(procedure) for procedure in procedures]


def render_script(translated: Sequence[TranslatedProcedure], source: str = "SQL Anywhere") -> str:
    """One reviewable SQL file with every translated function"""
    blocks = [
        "-- Stored procedure translation",
        f"-- Source: {source} -> Target: PostgreSQL",
        f"-- Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"-- {'=' * 68}",
        "",
    ]
    for procedure in translated:
        blocks.append(f"-- Procedure: {procedure.name} ({procedure.behavior.value})")
        blocks.extend(f"-- NOTE: {note}" for note in procedure.behavior_notes)
        blocks.extend(f"-- REVIEW: {item}" for item in procedure.manual_review)
        blocks.append(procedure.ddl)
        blocks.append("")
    return "\n".join(blocks)
