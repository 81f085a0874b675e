import pytest

from labquery.services.agent.validator import SqlValidator, enforce_limit, query_branches
from labquery.services.agent.tokenizer import TokenKind, significant, tokenize
from labquery.services.errors import DatastoreError, ValidationRejected

from conftest import OTHER_PATIENT_ID, PATIENT_ID


@pytest.fixture()
def validator(datastore):
    return SqlValidator(
        datastore,
        max_joins=5,
        max_subquery_depth=2,
        max_aggregates=10,
        explain_timeout_ms=1000,
    )


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM lab_results WHERE patient_id = :pid",
        "SELECT * FROM lab_results WHERE patient_id = $1",
        "SELECT * FROM lab_results WHERE patient_id = ?",
        "SELECT * FROM lab_results WHERE a = :a AND b = :b",
    ],
)
def test_placeholders_are_rejected(validator, sql):
    result = validator.prepare(sql, 20)

    assert not result.accepted
    assert result.codes == ["PLACEHOLDER_SYNTAX"]
    assert result.sanitized_sql is None


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT ':pid' AS label FROM t",
        "SELECT '$1' FROM t",
        "SELECT value::text FROM t",
        "SELECT 1 -- where id = :pid",
        "SELECT 1 /* $1 */",
        'SELECT ":col" FROM t',
    ],
)
def test_placeholder_lookalikes_are_allowed(validator, sql):
    assert validator.prepare(sql, 20).accepted


@pytest.mark.parametrize(
    ("sql", "row_limit", "expected_limit"),
    [
        ("SELECT * FROM t LIMIT 10", 20, 10),
        ("SELECT * FROM t LIMIT 10;", 20, 10),
        ("SELECT * FROM t LIMIT 500", 20, 20),
        ("SELECT * FROM t LIMIT 500;", 20, 20),
        ("SELECT * FROM t LIMIT 20", 20, 20),
        ("SELECT * FROM t LIMIT ALL", 20, 20),
        ("SELECT * FROM t LIMIT 0", 20, 0),
        ("SELECT * FROM t", 20, 20),
        ("SELECT * FROM t LIMIT 100 OFFSET 5", 20, 20),
    ],
)
def test_outermost_limit_is_min_of_requested_and_cap(validator, sql, row_limit, expected_limit):
    result = validator.prepare(sql, row_limit)

    assert result.accepted
    assert result.applied_limit == expected_limit


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM t LIMIT 10;",
        "SELECT * FROM t LIMIT 500",
        "SELECT * FROM t;\n-- example filter",
        "SELECT 1 -- keep me\n;",
        "WITH x AS (SELECT 1 AS a LIMIT 5) SELECT a FROM x",
        "SELECT * FROM (SELECT * FROM t LIMIT 1000) s",
    ],
)
def test_revalidating_sanitized_output_is_idempotent(validator, sql):
    first = validator.prepare(sql, 20)
    second = validator.prepare(first.sanitized_sql, 20)

    assert second.accepted
    assert second.sanitized_sql == first.sanitized_sql
    assert second.applied_limit == first.applied_limit


def test_accepted_limit_within_cap_is_left_unchanged(validator):
    result = validator.prepare("SELECT * FROM t LIMIT 10;", 20)

    assert result.sanitized_sql == "SELECT * FROM t LIMIT 10;"


def test_trailing_comment_after_terminator_is_dropped(validator):
    result = validator.prepare("SELECT * FROM t;\n-- example filter", 200)

    assert result.accepted
    assert result.sanitized_sql == "SELECT * FROM t LIMIT 200;"


def test_comment_before_terminator_does_not_swallow_it(validator):
    result = validator.prepare("SELECT 1 -- keep me\n;", 20)

    assert result.sanitized_sql == "SELECT 1 LIMIT 20 -- keep me\n;"


def test_inner_limit_is_not_treated_as_outermost(validator):
    result = validator.prepare("SELECT * FROM (SELECT * FROM t LIMIT 1000) s", 20)

    assert result.sanitized_sql == "SELECT * FROM (SELECT * FROM t LIMIT 1000) s LIMIT 20"


def test_limit_text_inside_literal_is_ignored(validator):
    result = validator.prepare("SELECT 'LIMIT 5' AS note FROM t", 20)

    assert result.sanitized_sql == "SELECT 'LIMIT 5' AS note FROM t LIMIT 20"
    assert result.applied_limit == 20


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM t LIMIT (SELECT 5)",
        "SELECT * FROM t LIMIT 5 + 1",
        "SELECT * FROM t LIMIT 1.5",
    ],
)
def test_non_literal_limit_is_rejected(validator, sql):
    assert validator.prepare(sql, 20).codes == ["LIMIT_NOT_LITERAL"]


def test_enforce_limit_appends_when_missing():
    text, applied, findings = enforce_limit(tokenize("SELECT 1"), 7)

    assert (text, applied, findings) == ("SELECT 1 LIMIT 7", 7, [])


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT 1; SELECT 2",
        "SELECT 1; DROP TABLE lab_results",
        "SELECT 1;;SELECT 2",
    ],
)
def test_multiple_statements_are_rejected(validator, sql):
    assert "MULTI_STATEMENT" in validator.prepare(sql, 20).codes


def test_semicolon_inside_literal_is_one_statement(validator):
    result = validator.prepare("SELECT 'a;b' FROM t", 20)

    assert result.accepted


@pytest.mark.parametrize(
    ("sql", "code"),
    [
        ("", "EMPTY_QUERY"),
        ("  ;  -- nothing", "EMPTY_QUERY"),
        ("UPDATE lab_results SET unit = 'x'", "INVALID_STATEMENT_TYPE"),
        ("EXPLAIN SELECT 1", "INVALID_STATEMENT_TYPE"),
        ("SELECT * INTO copy_t FROM t", "FORBIDDEN_KEYWORD"),
        ("WITH d AS (DELETE FROM t RETURNING *) SELECT * FROM d", "FORBIDDEN_KEYWORD"),
        ("SELECT * FROM t FOR UPDATE", "FORBIDDEN_KEYWORD"),
        ("SELECT * FROM t FOR SHARE", "FORBIDDEN_KEYWORD"),
        ("SELECT pg_sleep(10)", "FORBIDDEN_FUNCTION"),
        ("SELECT pg_read_file('/etc/passwd')", "FORBIDDEN_FUNCTION"),
        ("SELECT * FROM dblink('x', 'y') AS r(a int)", "FORBIDDEN_FUNCTION"),
        ("SELECT * FROM pg_temp.scratch", "FORBIDDEN_FUNCTION"),
        ("SELECT 'open", "UNTERMINATED_LITERAL"),
        ("SELECT 1 /* open", "UNTERMINATED_LITERAL"),
    ],
)
def test_guardrail_codes(validator, sql, code):
    result = validator.prepare(sql, 20)

    assert not result.accepted
    assert code in result.codes


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT 'please DELETE me' AS note FROM t",
        'SELECT "update" FROM t',
        "SELECT t.set FROM t",
        "SELECT updated_at, created_by FROM t",
        "select * from lab_results",
        "(SELECT 1)",
    ],
)
def test_keyword_lookalikes_are_allowed(validator, sql):
    assert validator.prepare(sql, 20).accepted


def test_too_many_joins(datastore):
    strict = SqlValidator(datastore, max_joins=1, max_subquery_depth=2, max_aggregates=10)

    result = strict.prepare("SELECT * FROM a JOIN b ON a.id = b.id JOIN c ON c.id = b.id", 20)

    assert result.codes == ["TOO_MANY_JOINS"]
    assert result.findings[0].detail == {"count": 2, "max": 1}


def test_subquery_depth(validator):
    sql = "SELECT * FROM (SELECT * FROM (SELECT * FROM (SELECT 1) a) b) c"

    assert validator.prepare(sql, 20).codes == ["SUBQUERY_TOO_DEEP"]


def test_too_many_aggregates(datastore):
    strict = SqlValidator(datastore, max_joins=5, max_subquery_depth=2, max_aggregates=2)

    result = strict.prepare("SELECT COUNT(*), MIN(a), MAX(a) FROM t", 20)

    assert result.codes == ["TOO_MANY_AGGREGATES"]


def test_patient_scope_requires_exact_filter(validator):
    scoped = f"SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}'"

    assert validator.prepare(scoped, 20, PATIENT_ID).accepted
    assert validator.prepare(
        f"SELECT * FROM lab_results lr WHERE lr.patient_id = '{PATIENT_ID}'::uuid", 20, PATIENT_ID
    ).accepted


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM lab_results",
        f"SELECT * FROM lab_results WHERE patient_id = '{OTHER_PATIENT_ID}'",
        f"SELECT * FROM lab_results WHERE patient_id <> '{PATIENT_ID}'",
        f"SELECT * FROM lab_results WHERE NOT patient_id = '{PATIENT_ID}'",
        f"SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}' OR 1 = 1",
        f"SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}' "
        f"UNION ALL SELECT * FROM lab_results WHERE patient_id = '{OTHER_PATIENT_ID}'",
        f"SELECT * FROM lab_results WHERE parameter_name = '{PATIENT_ID}'",
    ],
)
def test_patient_scope_violations(validator, sql):
    result = validator.prepare(sql, 20, PATIENT_ID)

    assert result.codes == ["PATIENT_SCOPE"]
    assert result.findings[0].detail["patient_id"] == PATIENT_ID


def test_patient_scope_allows_parenthesized_or(validator):
    sql = (
        f"SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}' "
        "AND (parameter_name = 'A' OR parameter_name = 'B')"
    )

    assert validator.prepare(sql, 20, PATIENT_ID).accepted


def test_unscoped_session_skips_patient_check(validator):
    assert validator.prepare("SELECT * FROM lab_results", 20).accepted


@pytest.mark.anyio
async def test_validate_runs_explain_on_sanitized_sql(validator, datastore):
    result = await validator.validate("SELECT * FROM t", 20)

    assert result.accepted
    assert datastore.explain_calls == ["SELECT * FROM t LIMIT 20"]


@pytest.mark.anyio
async def test_static_rejection_skips_explain(validator, datastore):
    result = await validator.validate("SELECT * FROM t WHERE a = :a", 20)

    assert not result.accepted
    assert datastore.explain_calls == []


@pytest.mark.anyio
async def test_explain_failure_carries_engine_message(validator, datastore):
    datastore.explain_errors.append(DatastoreError('column "nope" does not exist'))

    result = await validator.validate("SELECT nope FROM t", 20)

    assert result.codes == ["EXPLAIN_FAILED"]
    assert result.findings[0].detail["error"] == 'column "nope" does not exist'
    assert result.sanitized_sql == "SELECT nope FROM t LIMIT 20"


@pytest.mark.anyio
async def test_write_plan_is_rejected(validator, datastore):
    datastore.plan = [
        {"Plan": {"Node Type": "Limit", "Plans": [{"Node Type": "LockRows", "Plans": []}]}}
    ]

    result = await validator.validate("SELECT * FROM t", 20)

    assert result.codes == ["NON_READ_ONLY_PLAN"]
    assert result.findings[0].detail == {"nodes": ["LockRows"]}


def test_raise_for_findings(validator):
    result = validator.prepare("SELECT * FROM t WHERE a = $1", 20)

    with pytest.raises(ValidationRejected) as excinfo:
        result.raise_for_findings()

    assert excinfo.value.code == "VALIDATION_REJECTED"
    assert [finding.code for finding in excinfo.value.findings] == ["PLACEHOLDER_SYNTAX"]


def test_observation_lists_findings(validator):
    import json

    observation = json.loads(validator.prepare("SELECT 1; SELECT 2", 20).to_observation())

    assert observation["accepted"] is False
    assert observation["findings"][0]["code"] == "MULTI_STATEMENT"


@pytest.mark.parametrize(
    "sql",
    [
        f"SELECT parameter_name FROM lab_results WHERE patient_id = '{PATIENT_ID}' "
        "UNION ALL SELECT parameter_name FROM lab_results",
        "SELECT * FROM lab_results WHERE EXISTS "
        f"(SELECT 1 FROM lab_results x WHERE x.patient_id = '{PATIENT_ID}')",
        f"WITH mine AS (SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}') "
        "SELECT * FROM lab_results",
        "SELECT (SELECT COUNT(*) FROM lab_results) AS total FROM lab_results "
        f"WHERE patient_id = '{PATIENT_ID}'",
        f"SELECT * FROM lab_results a, lab_results b WHERE a.patient_id = '{PATIENT_ID}'",
        f"SELECT * FROM lab_results l WHERE l.patient_id = '{PATIENT_ID}' IS NOT TRUE",
        f"SELECT * FROM lab_results WHERE parameter_name = 'A' OR patient_id = '{PATIENT_ID}'",
        f"SELECT * FROM patients p JOIN lab_results l ON l.patient_id = p.id "
        f"WHERE l.patient_id = '{PATIENT_ID}'",
    ],
)
def test_patient_scope_cannot_be_widened_by_other_branches(validator, sql):
    result = validator.prepare(sql, 20, PATIENT_ID)

    assert result.codes == ["PATIENT_SCOPE"]


@pytest.mark.parametrize(
    "sql",
    [
        f"WITH mine AS (SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}') "
        "SELECT * FROM mine",
        f"SELECT * FROM lab_results WHERE patient_id = '{PATIENT_ID}' AND EXISTS "
        f"(SELECT 1 FROM lab_results x WHERE x.patient_id = '{PATIENT_ID}' AND x.unit = 'ng/mL')",
        f"SELECT * FROM lab_results WHERE patient_id IN ('{PATIENT_ID}')",
        f"SELECT * FROM lab_results WHERE '{PATIENT_ID}' = patient_id "
        "AND test_date BETWEEN '2024-01-01' AND '2024-12-31'",
        f"SELECT l.test_date, p.full_name FROM lab_results l JOIN patients p ON p.id = l.patient_id "
        f"WHERE l.patient_id = '{PATIENT_ID}' AND p.id = '{PATIENT_ID}'",
        f"SELECT full_name FROM patients WHERE id = '{PATIENT_ID}'",
        "SELECT code, name FROM analytes ORDER BY code",
    ],
)
def test_patient_scope_accepts_filtered_reads(validator, sql):
    assert validator.prepare(sql, 20, PATIENT_ID).accepted


def test_patient_scope_rejects_multi_element_in_list(validator):
    sql = f"SELECT * FROM lab_results WHERE patient_id IN ('{PATIENT_ID}', 'x')"

    assert validator.prepare(sql, 20, PATIENT_ID).codes == ["PATIENT_SCOPE"]


def test_query_branches_splits_subqueries_and_set_operations():
    statement = significant(
        tokenize("SELECT a FROM t WHERE b IN (SELECT c FROM u) UNION SELECT d FROM v")
    )

    branches = query_branches(statement)

    words = [[token.text for token, _ in branch if token.kind is TokenKind.WORD] for branch in branches]
    assert words == [
        ["SELECT", "a", "FROM", "t", "WHERE", "b", "IN"],
        ["SELECT", "d", "FROM", "v"],
        ["SELECT", "c", "FROM", "u"],
    ]
