"""Safety checks for model-written SQL.

Every statement the agent executes passes through ``SqlValidator``. Static
checks run on the token stream from ``tokenizer`` so that keywords, markers
and LIMIT clauses inside string literals, quoted identifiers or comments are
never mistaken for code. The final check asks PostgreSQL to plan the
statement without running it.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from labquery.config import settings
from labquery.services.datastore import Datastore
from labquery.services.errors import DatastoreError, ValidationRejected
from labquery.services.agent.tokenizer import (
    PLACEHOLDERS,
    Token,
    TokenKind,
    render,
    significant,
    tokenize,
)

logger = logging.getLogger("labquery.validator")

FORBIDDEN_KEYWORDS = frozenset(
    {
        "INSERT", "UPDATE", "DELETE", "MERGE", "TRUNCATE",
        "ALTER", "DROP", "CREATE", "GRANT", "REVOKE",
        "COPY", "CALL", "VACUUM", "ANALYZE", "CLUSTER", "REFRESH",
        "SET", "RESET", "SHOW", "LISTEN", "UNLISTEN", "NOTIFY",
        "LOCK", "INTO",
    }
)
FORBIDDEN_FUNCTION_PREFIXES = (
    "pg_sleep",
    "pg_read_file",
    "pg_read_binary_file",
    "pg_ls_",
    "pg_stat_file",
    "pg_write",
    "pg_log",
    "lo_import",
    "lo_export",
    "dblink",
)
FORBIDDEN_SCHEMA_PREFIXES = ("pg_temp", "pg_toast")
AGGREGATE_FUNCTIONS = frozenset(
    {"COUNT", "SUM", "AVG", "MIN", "MAX", "STDDEV", "VARIANCE", "ARRAY_AGG", "STRING_AGG"}
)
WRITE_PLAN_NODES = frozenset({"ModifyTable", "LockRows"})

# Tables holding per-patient rows, mapped to the column that names the patient.
PATIENT_TABLES = {"lab_results": "patient_id", "patients": "id"}
PATIENT_COLUMNS = frozenset(PATIENT_TABLES.values())
SET_OPERATORS = ("UNION", "INTERSECT", "EXCEPT")
CLAUSE_KEYWORDS = frozenset(
    {"GROUP", "HAVING", "WINDOW", "ORDER", "LIMIT", "OFFSET", "FETCH", "FOR"}
)
ALIAS_STOP_WORDS = (
    "ON", "USING", "WHERE", "JOIN", "INNER", "LEFT", "RIGHT", "FULL", "CROSS",
    "NATURAL", "GROUP", "HAVING", "WINDOW", "ORDER", "LIMIT", "OFFSET", "FETCH",
    "UNION", "INTERSECT", "EXCEPT", "TABLESAMPLE", "FOR", "AND", "OR", "AS",
)

UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ValidationFinding:
    """One structured reason for rejecting a statement."""

    code: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


@dataclass(frozen=True)
class ValidatedQuery:
    """Outcome of one validation attempt. Never mutated; re-validate to get a new one."""

    raw_sql: str
    sanitized_sql: Optional[str]
    applied_limit: Optional[int]
    findings: tuple[ValidationFinding, ...] = ()

    @property
    def accepted(self) -> bool:
        return not self.findings

    @property
    def codes(self) -> list[str]:
        return [finding.code for finding in self.findings]

    def raise_for_findings(self) -> None:
        if self.findings:
            raise ValidationRejected(self.findings)

    def to_observation(self) -> str:
        """JSON handed back to the model after a rejection."""
        return json.dumps(
            {
                "accepted": self.accepted,
                "findings": [finding.to_dict() for finding in self.findings],
            },
            ensure_ascii=False,
        )


def check_single_statement(tokens: list[Token]) -> list[ValidationFinding]:
    statements = 0
    in_statement = False
    for token in significant(tokens):
        if token.kind is TokenKind.SEMICOLON:
            in_statement = False
        elif not in_statement:
            statements += 1
            in_statement = True
    if statements > 1:
        return [
            ValidationFinding(
                "MULTI_STATEMENT",
                "Only one SQL statement is allowed. Remove everything after the "
                "terminating semicolon.",
                {"statements": statements},
            )
        ]
    return []


def check_placeholders(tokens: list[Token]) -> list[ValidationFinding]:
    markers = sorted({token.text for token in tokens if token.kind in PLACEHOLDERS})
    if markers:
        return [
            ValidationFinding(
                "PLACEHOLDER_SYNTAX",
                "Bind placeholders are not supported. Write literal values directly "
                "into the SQL.",
                {"placeholders": markers},
            )
        ]
    return []


def check_literals(tokens: list[Token]) -> list[ValidationFinding]:
    broken = [token for token in tokens if not token.terminated]
    if broken:
        return [
            ValidationFinding(
                "UNTERMINATED_LITERAL",
                "The SQL has an unterminated string, quoted identifier or comment.",
                {"kind": broken[0].kind.value, "position": broken[0].start},
            )
        ]
    return []


def split_statement(tokens: list[Token]) -> tuple[list[Token], str, bool]:
    """Split into (statement body, trivia before the terminator, terminated).

    The body runs from the first to the last significant token. Anything after
    the terminating semicolon (trailing comments, extra semicolons) is dropped.
    Comments between the body and the terminator are kept.
    """
    positions = [
        index
        for index, token in enumerate(tokens)
        if not token.is_trivia and token.kind is not TokenKind.SEMICOLON
    ]
    first, last = positions[0], positions[-1]
    body = tokens[first : last + 1]
    tail = tokens[last + 1 :]
    terminator = next(
        (index for index, token in enumerate(tail) if token.kind is TokenKind.SEMICOLON),
        None,
    )
    gap = tail if terminator is None else tail[:terminator]
    gap_text = render(gap).rstrip()
    comments = [token for token in gap if token.kind is not TokenKind.WHITESPACE]
    if terminator is not None and comments and comments[-1].kind is TokenKind.LINE_COMMENT:
        gap_text += "\n"
    return body, gap_text, terminator is not None


def check_statement_type(statement: list[Token]) -> list[ValidationFinding]:
    first = next((token for token in statement if token.kind is not TokenKind.LPAREN), None)
    if first is None or not first.is_word("SELECT", "WITH"):
        return [
            ValidationFinding(
                "INVALID_STATEMENT_TYPE",
                "Only read-only SELECT (or WITH ... SELECT) statements are allowed.",
                {"starts_with": first.text if first else None},
            )
        ]
    return []


def check_forbidden_keywords(statement: list[Token]) -> list[ValidationFinding]:
    hits: list[str] = []
    for index, token in enumerate(statement):
        if token.kind is not TokenKind.WORD:
            continue
        previous = statement[index - 1] if index else None
        if previous is not None and previous.text == ".":
            continue
        word = token.upper
        if word in FORBIDDEN_KEYWORDS:
            hits.append(word)
        elif word == "SHARE" and previous is not None and previous.is_word("FOR", "KEY"):
            hits.append("FOR SHARE")
    if hits:
        keywords = list(dict.fromkeys(hits))
        return [
            ValidationFinding(
                "FORBIDDEN_KEYWORD",
                f"Forbidden keyword(s): {', '.join(keywords)}.",
                {"keywords": keywords},
            )
        ]
    return []


def check_forbidden_functions(statement: list[Token]) -> list[ValidationFinding]:
    functions: list[str] = []
    schemas: list[str] = []
    for token in statement:
        name = token.identifier
        if not name:
            continue
        if name.startswith(FORBIDDEN_FUNCTION_PREFIXES):
            functions.append(name)
        elif name.startswith(FORBIDDEN_SCHEMA_PREFIXES):
            schemas.append(name)
    findings = []
    if functions:
        findings.append(
            ValidationFinding(
                "FORBIDDEN_FUNCTION",
                f"Forbidden function(s): {', '.join(dict.fromkeys(functions))}.",
                {"functions": list(dict.fromkeys(functions))},
            )
        )
    if schemas:
        findings.append(
            ValidationFinding(
                "FORBIDDEN_FUNCTION",
                f"Access to system schema(s) {', '.join(dict.fromkeys(schemas))} is not allowed.",
                {"schemas": list(dict.fromkeys(schemas))},
            )
        )
    return findings


def subquery_depth(statement: list[Token]) -> int:
    stack: list[bool] = []
    depth = max_depth = 0
    for index, token in enumerate(statement):
        if token.kind is TokenKind.LPAREN:
            following = statement[index + 1] if index + 1 < len(statement) else None
            opens_query = following is not None and following.is_word("SELECT", "WITH")
            stack.append(opens_query)
            if opens_query:
                depth += 1
                max_depth = max(max_depth, depth)
        elif token.kind is TokenKind.RPAREN and stack:
            if stack.pop():
                depth -= 1
    return max_depth


def check_complexity(
    statement: list[Token],
    *,
    max_joins: int,
    max_subquery_depth: int,
    max_aggregates: int,
) -> list[ValidationFinding]:
    findings = []
    joins = sum(1 for token in statement if token.is_word("JOIN"))
    if joins > max_joins:
        findings.append(
            ValidationFinding(
                "TOO_MANY_JOINS",
                f"Query uses {joins} joins; at most {max_joins} are allowed.",
                {"count": joins, "max": max_joins},
            )
        )
    depth = subquery_depth(statement)
    if depth > max_subquery_depth:
        findings.append(
            ValidationFinding(
                "SUBQUERY_TOO_DEEP",
                f"Subqueries nest {depth} levels deep; at most {max_subquery_depth} are allowed.",
                {"depth": depth, "max": max_subquery_depth},
            )
        )
    aggregates = sum(
        1
        for token, following in zip(statement, statement[1:])
        if token.kind is TokenKind.WORD
        and token.upper in AGGREGATE_FUNCTIONS
        and following.kind is TokenKind.LPAREN
    )
    if aggregates > max_aggregates:
        findings.append(
            ValidationFinding(
                "TOO_MANY_AGGREGATES",
                f"Query uses {aggregates} aggregate functions; at most {max_aggregates} are allowed.",
                {"count": aggregates, "max": max_aggregates},
            )
        )
    return findings


def query_branches(statement: list[Token]) -> list[list[tuple[Token, int]]]:
    """Split a statement into the SELECT branches it is made of.

    Every parenthesized subquery (CTE bodies included) is its own block, and
    every UNION, INTERSECT or EXCEPT operand of a block is its own branch. Each
    token comes back with its plain parenthesis depth inside the branch that
    directly contains it; tokens of nested subqueries belong to their own branch.
    """
    blocks: list[list[tuple[Token, int]]] = [[]]
    frames = [[0, 0]]
    opens_query: list[bool] = []
    for index, token in enumerate(statement):
        frame = frames[-1]
        if token.kind is TokenKind.LPAREN:
            blocks[frame[0]].append((token, frame[1]))
            following = statement[index + 1] if index + 1 < len(statement) else None
            is_query = following is not None and following.is_word("SELECT", "WITH")
            opens_query.append(is_query)
            if is_query:
                blocks.append([])
                frames.append([len(blocks) - 1, 0])
            else:
                frame[1] += 1
        elif token.kind is TokenKind.RPAREN:
            if opens_query and opens_query.pop():
                frames.pop()
            else:
                frame[1] = max(frame[1] - 1, 0)
            outer = frames[-1]
            blocks[outer[0]].append((token, outer[1]))
        else:
            blocks[frame[0]].append((token, frame[1]))

    branches: list[list[tuple[Token, int]]] = []
    for block in blocks:
        branch: list[tuple[Token, int]] = []
        for token, depth in block:
            if depth == 0 and token.is_word(*SET_OPERATORS):
                branches.append(branch)
                branch = []
            else:
                branch.append((token, depth))
        branches.append(branch)
    return branches


def _branch_clauses(
    branch: list[tuple[Token, int]],
) -> tuple[list[tuple[Token, int]], list[tuple[Token, int]]]:
    """Return the (FROM, WHERE) clause tokens of one branch."""
    clauses: dict[str, list[tuple[Token, int]]] = {"from": [], "where": []}
    current: Optional[str] = None
    previous: Optional[Token] = None
    for token, depth in branch:
        if depth == 0 and token.kind is TokenKind.WORD:
            if token.is_word("FROM") and not (previous is not None and previous.is_word("DISTINCT")):
                current, previous = "from", token
                continue
            if token.is_word("WHERE"):
                current, previous = "where", token
                continue
            if token.upper in CLAUSE_KEYWORDS:
                current = None
        if current is not None:
            clauses[current].append((token, depth))
        previous = token
    return clauses["from"], clauses["where"]


def _patient_table_references(branch: list[tuple[Token, int]]) -> list[tuple[str, str]]:
    """(table, reference name) for every patient-data table the branch reads."""
    tokens = [token for token, _ in branch]
    references = []
    for index, token in enumerate(tokens):
        table = token.identifier
        if table not in PATIENT_TABLES:
            continue
        previous = tokens[index - 1] if index else None
        rest = tokens[index + 1 :]
        if rest and rest[0].text == ".":
            continue
        if previous is not None and previous.is_word("AS"):
            continue
        name = table
        if len(rest) > 1 and rest[0].is_word("AS") and rest[1].identifier:
            name = rest[1].identifier
        elif rest and rest[0].identifier and not rest[0].is_word(*ALIAS_STOP_WORDS):
            name = rest[0].identifier
        references.append((table, name))
    return references


def _conjuncts(where: list[tuple[Token, int]]) -> list[list[Token]]:
    parts: list[list[Token]] = [[]]
    in_between = False
    for token, depth in where:
        if depth == 0 and token.is_word("BETWEEN"):
            in_between = True
        elif depth == 0 and token.is_word("AND"):
            if not in_between:
                parts.append([])
                continue
            in_between = False
        parts[-1].append(token)
    return parts


def _column_reference(tokens: list[Token]) -> Optional[tuple[Optional[str], str]]:
    if len(tokens) == 1 and tokens[0].identifier:
        return None, tokens[0].identifier
    if (
        len(tokens) == 3
        and tokens[1].text == "."
        and tokens[0].identifier
        and tokens[2].identifier
    ):
        return tokens[0].identifier, tokens[2].identifier
    return None


def _is_scope_literal(tokens: list[Token], scope: str) -> bool:
    if len(tokens) == 3 and tokens[1].kind is TokenKind.CAST and tokens[2].kind is TokenKind.WORD:
        tokens = tokens[:1]
    if len(tokens) != 1:
        return False
    value = tokens[0].string_value
    return value is not None and value.strip().lower() == scope


def scope_comparison(conjunct: list[Token], scope: str) -> Optional[tuple[Optional[str], str]]:
    """Return (qualifier, column) when the conjunct is exactly ``column = '<scope>'``.

    ``'<scope>' = column`` and a single-element ``column IN ('<scope>')`` count
    too. Anything else around the comparison (NOT, IS, casts of the column,
    extra operators) makes it a different predicate.
    """
    equals = [index for index, token in enumerate(conjunct) if token.text == "="]
    if len(equals) == 1:
        left, right = conjunct[: equals[0]], conjunct[equals[0] + 1 :]
        for column_side, literal_side in ((left, right), (right, left)):
            column = _column_reference(column_side)
            if column and column[1] in PATIENT_COLUMNS and _is_scope_literal(literal_side, scope):
                return column
        return None
    in_at = next((index for index, token in enumerate(conjunct) if token.is_word("IN")), None)
    if in_at is None:
        return None
    column = _column_reference(conjunct[:in_at])
    listed = conjunct[in_at + 1 :]
    if (
        column
        and column[1] in PATIENT_COLUMNS
        and len(listed) >= 3
        and listed[0].kind is TokenKind.LPAREN
        and listed[-1].kind is TokenKind.RPAREN
        and _is_scope_literal(listed[1:-1], scope)
    ):
        return column
    return None


def check_patient_scope(statement: list[Token], patient_scope: str) -> list[ValidationFinding]:
    """Every read of patient data must be limited to ``patient_scope``.

    Each SELECT branch (subqueries, CTE bodies and set-operation operands
    included) that reads ``lab_results`` or ``patients`` needs, for every such
    table it reads, a top-level AND conjunct of its own WHERE clause comparing
    that table's patient column to the scope literal. No other patient id may
    appear anywhere in the statement.
    """
    scope = patient_scope.lower()
    problems: list[str] = []

    other_ids = {
        match.lower()
        for token in statement
        if token.kind is TokenKind.STRING
        for match in UUID_RE.findall(token.string_value or "")
        if match.lower() != scope
    }
    if other_ids:
        problems.append("references another patient's id")

    for branch in query_branches(statement):
        references = _patient_table_references(branch)
        if not references:
            continue
        from_clause, where_clause = _branch_clauses(branch)
        if any(depth == 0 and token.is_word("OR") for token, depth in where_clause):
            problems.append(
                "OR at the top level of a WHERE clause that holds the patient filter; "
                "wrap OR conditions in parentheses"
            )
            continue
        filters = {
            comparison
            for comparison in (scope_comparison(part, scope) for part in _conjuncts(where_clause))
            if comparison is not None
        }
        single_source = len(references) == 1 and not any(
            depth == 0 and (token.text == "," or token.is_word("JOIN"))
            for token, depth in from_clause
        )
        lab_reads = sum(1 for table, _ in references if table == "lab_results")
        for table, name in references:
            column = PATIENT_TABLES[table]
            unqualified_ok = lab_reads == 1 if table == "lab_results" else single_source
            if (name, column) in filters or ((None, column) in filters and unqualified_ok):
                continue
            problems.append(
                f"{name} is read without {column} = '{patient_scope}' "
                "in the WHERE clause of the same SELECT"
            )

    if problems:
        return [
            ValidationFinding(
                "PATIENT_SCOPE",
                f"Query must be restricted to patient {patient_scope}: "
                f"{'; '.join(dict.fromkeys(problems))}.",
                {"patient_id": patient_scope, "problems": list(dict.fromkeys(problems))},
            )
        ]
    return []


def enforce_limit(
    body: list[Token], row_limit: int
) -> tuple[Optional[str], Optional[int], list[ValidationFinding]]:
    """Clamp (never widen) the outermost LIMIT, or append one.

    Returns:
        Tuple of (statement text, effective limit, findings)
    """
    depth = 0
    limit_at = None
    for index, token in enumerate(body):
        if token.kind is TokenKind.LPAREN:
            depth += 1
        elif token.kind is TokenKind.RPAREN:
            depth -= 1
        elif depth == 0 and token.is_word("LIMIT"):
            limit_at = index

    if limit_at is None:
        return f"{render(body)} LIMIT {row_limit}", row_limit, []

    following = [
        (index, token)
        for index, token in enumerate(body)
        if index > limit_at and not token.is_trivia
    ]
    value_index, value = following[0] if following else (None, None)
    trailing_ok = len(following) < 2 or following[1][1].is_word("OFFSET")
    if value is not None and value.kind is TokenKind.NUMBER and value.text.isdigit() and trailing_ok:
        requested: Optional[int] = int(value.text)
    elif value is not None and value.is_word("ALL") and trailing_ok:
        requested = None
    else:
        return None, None, [
            ValidationFinding(
                "LIMIT_NOT_LITERAL",
                "The outermost LIMIT must be a plain integer.",
                {"limit": value.text if value is not None else None},
            )
        ]

    if requested is not None and requested <= row_limit:
        return render(body), requested, []

    clamped = Token(TokenKind.NUMBER, str(row_limit), value.start)
    return render(body[:value_index] + [clamped] + body[value_index + 1 :]), row_limit, []


def plan_node_types(plan: Any) -> Iterator[str]:
    if isinstance(plan, dict):
        node_type = plan.get("Node Type")
        if node_type:
            yield node_type
        for value in plan.values():
            if isinstance(value, (dict, list)):
                yield from plan_node_types(value)
    elif isinstance(plan, list):
        for item in plan:
            yield from plan_node_types(item)


class SqlValidator:
    """Validates and sanitizes SQL proposed by the reasoning model."""

    def __init__(
        self,
        datastore: Datastore,
        *,
        max_joins: Optional[int] = None,
        max_subquery_depth: Optional[int] = None,
        max_aggregates: Optional[int] = None,
        explain_timeout_ms: Optional[int] = None,
    ):
        self.datastore = datastore
        self.max_joins = max_joins if max_joins is not None else settings.sql_max_joins
        self.max_subquery_depth = (
            max_subquery_depth
            if max_subquery_depth is not None
            else settings.sql_max_subquery_depth
        )
        self.max_aggregates = (
            max_aggregates if max_aggregates is not None else settings.sql_max_aggregates
        )
        self.explain_timeout_ms = explain_timeout_ms or settings.agent_explain_timeout_ms

    def prepare(
        self,
        raw_sql: str,
        row_limit: int,
        patient_scope: Optional[str] = None,
    ) -> ValidatedQuery:
        """Run the static checks and produce the sanitized statement.

        Args:
            raw_sql: SQL exactly as proposed by the model
            row_limit: Maximum rows the statement may return
            patient_scope: Patient id the statement must be restricted to

        Returns:
            ValidatedQuery, with findings when rejected
        """
        raw_sql = raw_sql or ""
        tokens = tokenize(raw_sql)

        def rejected(findings: list[ValidationFinding]) -> ValidatedQuery:
            logger.info(
                "SQL rejected codes=%s",
                ",".join(finding.code for finding in findings),
            )
            return ValidatedQuery(raw_sql, None, None, tuple(findings))

        findings = check_literals(tokens)
        if findings:
            return rejected(findings)
        if not any(
            not token.is_trivia and token.kind is not TokenKind.SEMICOLON
            for token in tokens
        ):
            return rejected([ValidationFinding("EMPTY_QUERY", "The SQL statement is empty.")])

        findings = check_single_statement(tokens) + check_placeholders(tokens)
        if findings:
            return rejected(findings)

        body, gap_text, terminated = split_statement(tokens)
        statement = significant(body)
        findings = (
            check_statement_type(statement)
            + check_forbidden_keywords(statement)
            + check_forbidden_functions(statement)
            + check_complexity(
                statement,
                max_joins=self.max_joins,
                max_subquery_depth=self.max_subquery_depth,
                max_aggregates=self.max_aggregates,
            )
        )
        if patient_scope:
            findings += check_patient_scope(statement, patient_scope)
        if findings:
            return rejected(findings)

        limited, applied_limit, findings = enforce_limit(body, row_limit)
        if findings:
            return rejected(findings)

        sanitized = f"{limited}{gap_text}{';' if terminated else ''}"
        return ValidatedQuery(raw_sql, sanitized, applied_limit)

    async def validate(
        self,
        raw_sql: str,
        row_limit: int,
        patient_scope: Optional[str] = None,
    ) -> ValidatedQuery:
        """Static checks followed by an explain-only pass against the datastore."""
        prepared = self.prepare(raw_sql, row_limit, patient_scope)
        if not prepared.accepted:
            return prepared

        try:
            plan = await self.datastore.explain(
                prepared.sanitized_sql, timeout_ms=self.explain_timeout_ms
            )
        except DatastoreError as exc:
            logger.info("SQL rejected codes=EXPLAIN_FAILED error=%s", exc.message)
            return replace(
                prepared,
                findings=(
                    ValidationFinding(
                        "EXPLAIN_FAILED",
                        f"The database could not plan the query: {exc.message}",
                        {"error": exc.message},
                    ),
                ),
            )

        blocked = sorted(set(plan_node_types(plan)) & WRITE_PLAN_NODES)
        if blocked:
            logger.warning("SQL rejected codes=NON_READ_ONLY_PLAN nodes=%s", blocked)
            return replace(
                prepared,
                findings=(
                    ValidationFinding(
                        "NON_READ_ONLY_PLAN",
                        "The query plan is not read-only.",
                        {"nodes": blocked},
                    ),
                ),
            )
        return prepared
