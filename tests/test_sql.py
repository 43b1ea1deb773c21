"""Tests for SQL script splitting, quoting and tolerant apply."""

import pytest
from conftest import FakeDatabase, FakeConnection, run

from supabase_sync.errors import ErrorCategory, SyncError
from supabase_sync.utils.sql import (
    apply_statements,
    is_safe_identifier,
    join_statements,
    qualified_name,
    quote_ident,
    split_sql_statements,
)


# =============================================================================
# Statement splitting
# =============================================================================

class TestSplitSqlStatements:

    def test_simple_statements(self):
        script = "CREATE TABLE a (id int);\nINSERT INTO a VALUES (1);\n"
        assert split_sql_statements(script) == [
            "CREATE TABLE a (id int)",
            "INSERT INTO a VALUES (1)",
        ]

    def test_semicolon_inside_string_literal(self):
        script = "INSERT INTO t VALUES ('a;b', 'it''s; fine');SELECT 1;"
        assert split_sql_statements(script) == [
            "INSERT INTO t VALUES ('a;b', 'it''s; fine')",
            "SELECT 1",
        ]

    def test_escape_string_with_backslash_quote(self):
        script = "INSERT INTO t VALUES (E'a\\';b');SELECT 2;"
        statements = split_sql_statements(script)
        assert statements == ["INSERT INTO t VALUES (E'a\\';b')", "SELECT 2"]

    def test_dollar_quoted_function_body(self):
        script = (
            "CREATE FUNCTION f() RETURNS int AS $fn$\n"
            "BEGIN\n  PERFORM 1;\n  RETURN 2;\nEND;\n$fn$ LANGUAGE plpgsql;\n"
            "SELECT f();"
        )
        statements = split_sql_statements(script)
        assert len(statements) == 2
        assert statements[0].startswith("CREATE FUNCTION")
        assert "RETURN 2;" in statements[0]
        assert statements[1] == "SELECT f()"

    def test_anonymous_dollar_quote(self):
        script = "DO $$ BEGIN RAISE NOTICE 'x;'; END $$;SELECT 3;"
        assert split_sql_statements(script) == [
            "DO $$ BEGIN RAISE NOTICE 'x;'; END $$",
            "SELECT 3",
        ]

    def test_positional_parameter_is_not_a_dollar_quote(self):
        script = "PREPARE p AS SELECT $1;SELECT 4;"
        assert split_sql_statements(script) == ["PREPARE p AS SELECT $1", "SELECT 4"]

    def test_comments_are_dropped(self):
        script = (
            "--\n-- Name: users; Type: TABLE\n--\n\n"
            "CREATE TABLE users (id int); -- trailing; comment\n"
            "/* block; comment /* nested; */ still */ SELECT 5;"
        )
        assert split_sql_statements(script) == ["CREATE TABLE users (id int)", "SELECT 5"]

    def test_quoted_identifier_with_semicolon(self):
        script = 'CREATE TABLE "odd;name" ("a""b" int);'
        assert split_sql_statements(script) == ['CREATE TABLE "odd;name" ("a""b" int)']

    def test_psql_meta_commands_are_skipped(self):
        script = "\\restrict abc123\nSET x = 1;\n\\connect postgres\nSELECT 6;\n\\unrestrict abc123\n"
        assert split_sql_statements(script) == ["SET x = 1", "SELECT 6"]

    def test_empty_and_whitespace_statements_omitted(self):
        assert split_sql_statements(";;\n  ;\n") == []

    def test_join_statements_round_trip(self):
        statements = ["SELECT 1", "SELECT 'a;b'"]
        assert split_sql_statements(join_statements(statements)) == statements


# =============================================================================
# Identifiers
# =============================================================================

class TestIdentifiers:

    def test_quote_ident_escapes_double_quotes(self):
        assert quote_ident('we"ird') == '"we""ird"'

    def test_qualified_name(self):
        assert qualified_name("public", "posts") == '"public"."posts"'

    def test_safe_identifier_pattern(self):
        assert is_safe_identifier("avatar_url")
        assert is_safe_identifier("_x1")
        assert not is_safe_identifier("1abc")
        assert not is_safe_identifier("bad name")
        assert not is_safe_identifier('x"; DROP TABLE y; --')
        assert not is_safe_identifier("")


# =============================================================================
# Tolerant apply
# =============================================================================

class TestApplyStatements:

    def test_counts_applied_ignored_and_failed(self):
        db = FakeDatabase()
        db.existing_objects = ["public.already"]
        db.fail_statements = {"BROKEN": "syntax error at or near BROKEN"}
        conn = FakeConnection(db)
        statements = [
            "CREATE TABLE public.fresh (id int)",
            "CREATE TABLE public.already (id int)",
            "BROKEN STATEMENT",
            "CREATE INDEX i ON public.fresh (id)",
        ]

        result = run(apply_statements(conn, statements, label="test"))

        assert result.total == 4
        assert result.applied == 2
        assert result.ignored == 1
        assert result.failed == 1
        assert result.errors == ["syntax error at or near BROKEN"]

    def test_savepoint_per_statement(self):
        db = FakeDatabase()
        conn = FakeConnection(db)

        run(apply_statements(conn, ["SELECT 10", "SELECT 11"], label="t", use_savepoints=True))

        executed = db.statements_on(conn.id)
        assert executed == ["BEGIN", "SELECT 10", "COMMIT", "BEGIN", "SELECT 11", "COMMIT"]

    def test_failures_beyond_log_limit_still_recorded(self):
        db = FakeDatabase()
        db.fail_statements = {"BAD": "bad row"}
        conn = FakeConnection(db)

        result = run(apply_statements(conn, ["BAD"] * 25, label="t", max_logged_errors=3))

        assert result.failed == 25
        assert len(result.errors) == 25

    def test_lost_connection_raises(self):
        db = FakeDatabase()
        conn = FakeConnection(db)
        conn.closed = True

        with pytest.raises(SyncError) as excinfo:
            run(apply_statements(conn, ["SELECT 1"], label="t"))
        assert excinfo.value.category == ErrorCategory.CONNECTION
