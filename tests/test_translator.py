"""
Watcom-SQL -> PL/pgSQL translation
"""

import pytest

from sa2pg.errors import MappingError
from sa2pg.models import ProcedureBehavior
from sa2pg.translator import ProcedureTranslator, descriptor_from_source, render_script
from sa2pg.type_mapper import TypeMapper

GET_CUSTOMER = """
CREATE PROCEDURE DBA.get_customer(IN p_id integer)
RESULT (id integer, name varchar(40))
BEGIN
    SELECT id, name FROM customer WHERE id = p_id;
END
"""

RAISE_CREDIT = """
CREATE PROCEDURE DBA.raise_credit(IN p_id integer, IN p_amount numeric(10,2) DEFAULT 0)
BEGIN
    DECLARE v_old numeric(10,2);
    SELECT credit INTO v_old FROM customer WHERE id = p_id;
    UPDATE customer SET credit = ISNULL(v_old, 0) + p_amount WHERE id = p_id;
    MESSAGE 'credit raised for ', p_id TO CLIENT;
END
"""

CUSTOMER_COUNT = """
CREATE PROCEDURE DBA.customer_count(OUT p_total integer)
BEGIN
    SELECT COUNT(*) INTO p_total FROM customer;
END
"""

PAGE = """
CREATE PROCEDURE DBA.customer_page(IN p_tag varchar(10))
RESULT (id integer)
BEGIN
    DECLARE v_calls integer = 0;
    SET v_calls = v_calls + 1;
    CALL log_event('page', p_tag);
    SELECT TOP 5 START AT 11 id FROM customer ORDER BY id;
END
"""


def translator():
    return ProcedureTranslator(TypeMapper(), schema="erp")


def translate(text):
    return translator().translate(descriptor_from_source(text))


def test_result_clause_becomes_return_query():
    result = translate(GET_CUSTOMER)

    assert result.behavior is ProcedureBehavior.READ_ONLY
    assert result.returns == [("id", "integer"), ("name", "varchar(40)")]
    assert 'CREATE OR REPLACE FUNCTION "erp"."get_customer"(p_id integer)' in result.ddl
    assert "RETURNS TABLE (id integer, name varchar(40))" in result.ddl
    assert "RETURN QUERY SELECT id, name FROM customer WHERE id = p_id;" in result.ddl
    assert not result.requires_review


def test_procedure_without_result_set_reports_affected_rows():
    result = translate(RAISE_CREDIT)

    assert result.behavior is ProcedureBehavior.MUTATING_NO_RESULT
    assert result.returns == [("affected_rows", "bigint")]
    assert "p_amount numeric(10,2) DEFAULT 0" in result.ddl
    assert "v_old numeric(10,2);" in result.ddl
    assert "COALESCE(v_old, 0)" in result.ddl
    assert "GET DIAGNOSTICS v_row_count = ROW_COUNT;" in result.ddl
    assert "RAISE NOTICE '%', concat('credit raised for ', p_id);" in result.ddl
    assert result.ddl.rstrip().endswith("RETURN QUERY SELECT v_affected_rows;\nEND;\n$function$;")
    assert any("affected_rows" in note for note in result.behavior_notes)
    # SELECT ... INTO is an assignment, not a result set
    assert "RETURN QUERY SELECT credit" not in result.ddl


def test_out_parameters_become_a_result_row():
    result = translate(CUSTOMER_COUNT)

    assert result.returns == [("p_total", "integer")]
    assert '"erp"."customer_count"()' in result.ddl
    assert "RETURN NEXT;" in result.ddl


def test_statement_rewrites():
    ddl = translate(PAGE).ddl

    assert "v_calls integer := 0;" in ddl
    assert "v_calls := v_calls + 1;" in ddl
    assert "PERFORM log_event('page', p_tag);" in ddl
    assert "RETURN QUERY SELECT id FROM customer ORDER BY id LIMIT 5 OFFSET 10;" in ddl


def test_constructs_without_rewrite_are_flagged():
    text = """
    CREATE PROCEDURE DBA.archive()
    BEGIN
        DELETE FROM orders WHERE placed < '2000-01-01';
        COMMIT;
    END
    """
    result = translate(text)

    assert result.requires_review
    assert any("COMMIT" in item for item in result.manual_review)


def test_transact_sql_procedure_is_left_for_review():
    result = translate("CREATE PROCEDURE dbo.legacy @id int AS SELECT * FROM t WHERE id = @id")

    assert result.name == "legacy"
    assert result.requires_review
    assert result.ddl.startswith("-- CREATE PROCEDURE")


def test_unmapped_parameter_type_fails():
    text = "CREATE PROCEDURE DBA.p(IN p_flag tinyint) BEGIN SELECT p_flag; END"
    with pytest.raises(MappingError, match="tinyint"):
        translate(text)


def test_render_script_lists_notes_and_review_items():
    items = translator().translate_all([descriptor_from_source(RAISE_CREDIT), descriptor_from_source(GET_CUSTOMER)])
    script = render_script(items)

    assert "-- Procedure: raise_credit (mutating-no-result)" in script
    assert "-- NOTE:" in script
    assert script.count("CREATE OR REPLACE FUNCTION") == 2
