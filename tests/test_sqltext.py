"""
Watcom-SQL text helpers
"""

from sa2pg.models import ProcedureBehavior
from sa2pg.sqltext import (
    MaskedText,
    classify_behavior,
    has_result_select,
    parse_procedure_source,
    parse_type_text,
    split_top_level,
    strip_comments,
)

PROCEDURE = """
CREATE PROCEDURE "DBA"."orders_for"(IN p_customer integer, IN p_since date DEFAULT '2000-01-01')
RESULT (id integer, placed date)
ON EXCEPTION RESUME
BEGIN
    -- newest first
    SELECT id, placed FROM orders WHERE customer_id = p_customer AND placed >= p_since ORDER BY placed DESC;
END
"""


def test_parse_procedure_source_splits_header_and_body():
    parsed = parse_procedure_source(PROCEDURE)

    assert parsed.owner == "DBA"
    assert parsed.name == "orders_for"
    assert parsed.parameters == ["IN p_customer integer", "IN p_since date DEFAULT '2000-01-01'"]
    assert parsed.result_columns == ["id integer", "placed date"]
    assert parsed.options == "ON EXCEPTION RESUME"
    assert "SELECT id, placed FROM orders" in parsed.body
    assert "newest first" not in parsed.body


def test_transact_sql_text_is_not_parsed():
    assert parse_procedure_source("CREATE PROCEDURE dbo.p @id int AS SELECT * FROM t WHERE id = @id") is None


def test_split_top_level_ignores_nested_separators():
    assert split_top_level("a numeric(10,2), b varchar(5) DEFAULT 'x,y', c int") == [
        "a numeric(10,2)", "b varchar(5) DEFAULT 'x,y'", "c int",
    ]


def test_strip_comments_keeps_string_contents():
    text = "SELECT '--not a comment' /* gone */ FROM t // gone too\n"
    assert strip_comments(text).split() == ["SELECT", "'--not", "a", "comment'", "FROM", "t"]


def test_masked_text_round_trip():
    masked = MaskedText("MESSAGE 'it''s; done' TO CLIENT;")
    assert masked.text == "MESSAGE \x000\x00 TO CLIENT;"
    assert masked.restore(masked.text) == "MESSAGE 'it''s; done' TO CLIENT;"


def test_parse_type_text():
    assert parse_type_text("NUMERIC ( 10, 2 )") == ("numeric", 10, 2)
    assert parse_type_text("long  varchar") == ("long varchar", None, None)
    assert parse_type_text("varchar(40)") == ("varchar", 40, None)


def test_has_result_select_skips_select_into():
    assert has_result_select("BEGIN SELECT a FROM t; END")
    assert not has_result_select("BEGIN SELECT a INTO v FROM t; END")


def test_classify_behavior():
    read_only = "CREATE PROCEDURE p() BEGIN SELECT 'UPDATE' FROM t; END"
    with_result = "CREATE PROCEDURE p() BEGIN UPDATE t SET a = 1; SELECT a FROM t; END"
    no_result = "CREATE PROCEDURE p() BEGIN DELETE FROM t WHERE a = 1; END"

    assert classify_behavior(read_only, False) is ProcedureBehavior.READ_ONLY
    assert classify_behavior(with_result, False) is ProcedureBehavior.MUTATING_WITH_RESULT
    assert classify_behavior(no_result, True) is ProcedureBehavior.MUTATING_WITH_RESULT
    assert classify_behavior(no_result, False) is ProcedureBehavior.MUTATING_NO_RESULT


def test_locking_select_is_read_only():
    locking = "CREATE PROCEDURE p() BEGIN SELECT a FROM t WHERE a = 1 FOR  UPDATE; END"
    locking_then_update = "CREATE PROCEDURE p() BEGIN SELECT a FROM t FOR UPDATE OF a; UPDATE t SET a = 2; END"

    assert classify_behavior(locking, True) is ProcedureBehavior.READ_ONLY
    assert classify_behavior(locking_then_update, False) is ProcedureBehavior.MUTATING_WITH_RESULT
