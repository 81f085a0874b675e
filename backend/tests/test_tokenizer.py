import pytest

from labquery.services.agent.tokenizer import TokenKind, render, significant, tokenize


def _kinds(sql: str) -> list[TokenKind]:
    return [token.kind for token in significant(tokenize(sql))]


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM lab_results WHERE parameter_name = 'it''s' -- note\n;",
        "SELECT $$ body ; $$, $tag$ x $tag$ FROM t /* a /* nested */ b */",
        "SELECT E'line\\'s', \"Quoted \"\"Col\"\"\" FROM t WHERE x::int > 1.5e3",
    ],
)
def test_tokens_reproduce_input(sql):
    assert render(tokenize(sql)) == sql


def test_string_literal_hides_keywords_and_markers():
    tokens = significant(tokenize("SELECT 'DROP TABLE x; :pid $1' AS note"))

    assert [token.kind for token in tokens] == [
        TokenKind.WORD,
        TokenKind.STRING,
        TokenKind.WORD,
        TokenKind.WORD,
    ]
    assert tokens[1].string_value == "DROP TABLE x; :pid $1"


def test_placeholders_are_classified():
    kinds = _kinds("SELECT * FROM t WHERE a = :pid AND b = $1 AND c = ?")

    assert TokenKind.NAMED_PARAM in kinds
    assert TokenKind.PARAM in kinds
    assert TokenKind.QMARK in kinds


def test_cast_is_not_a_named_parameter():
    kinds = _kinds("SELECT value::numeric FROM t")

    assert TokenKind.CAST in kinds
    assert TokenKind.NAMED_PARAM not in kinds


def test_nested_block_comment_is_one_token():
    tokens = tokenize("/* outer /* inner */ still comment */ SELECT 1")

    assert tokens[0].kind is TokenKind.BLOCK_COMMENT
    assert tokens[0].text.endswith("still comment */")
    assert tokens[0].terminated


def test_unterminated_string_is_flagged():
    tokens = tokenize("SELECT 'open")

    assert tokens[-1].kind is TokenKind.STRING
    assert tokens[-1].terminated is False
    assert tokens[-1].string_value is None


def test_escape_string_value_strips_prefix():
    token = significant(tokenize("E'abc'"))[0]

    assert token.kind is TokenKind.STRING
    assert token.string_value == "abc"


def test_quoted_identifier_is_lowercased():
    token = significant(tokenize('"Patient_ID"'))[0]

    assert token.kind is TokenKind.QUOTED_IDENT
    assert token.identifier == "patient_id"


def test_dollar_string_hides_semicolons():
    kinds = _kinds("SELECT $$a; b$$")

    assert TokenKind.SEMICOLON not in kinds
    assert TokenKind.DOLLAR_STRING in kinds
