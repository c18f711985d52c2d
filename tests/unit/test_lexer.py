"""Tests for SQL tokenizing and statement splitting."""

import pytest

from sqlnow.compiler import lexer
from sqlnow.exceptions import SchemaError


class TestTokenize:
    """Test the tokenizer."""

    def test_parameters_outside_strings(self) -> None:
        """Only placeholders outside literals are parameters."""
        tokens = lexer.tokenize("SELECT ':nope', \"a:b\" FROM t WHERE id = :id")
        params = [t.param_name for t in tokens if t.kind == lexer.PARAM]
        assert params == ["id"]

    def test_comment_kinds(self) -> None:
        """Line and block comments are separate token kinds."""
        tokens = lexer.tokenize("-- one\nSELECT /* two */ 1")
        kinds = [t.kind for t in tokens if t.kind in lexer.COMMENTS]
        assert kinds == [lexer.LINE_COMMENT, lexer.BLOCK_COMMENT]

    def test_doubled_quote_escape(self) -> None:
        """A doubled quote does not end a string."""
        tokens = lexer.tokenize("SELECT 'it''s'")
        strings = [t.text for t in tokens if t.kind == lexer.STRING]
        assert strings == ["'it''s'"]

    def test_unterminated_string(self) -> None:
        """An unterminated string reports its position."""
        with pytest.raises(SchemaError, match="q.sql:2:8: unterminated string"):
            lexer.tokenize("SELECT 1;\nSELECT 'abc", "q.sql")

    def test_unterminated_block_comment(self) -> None:
        """An unterminated block comment is an error."""
        with pytest.raises(SchemaError, match="unterminated block comment"):
            lexer.tokenize("SELECT 1 /* never closed")


class TestSplitStatements:
    """Test splitting files into statements."""

    def test_semicolons_in_strings(self) -> None:
        """Semicolons inside literals do not split."""
        statements = lexer.split_statements("INSERT INTO t VALUES ('a;b'); SELECT 1;")
        assert [s.code for s in statements] == ["INSERT INTO t VALUES ('a;b')", "SELECT 1"]

    def test_leading_comments_travel_with_statement(self) -> None:
        """Comments before a statement are attached to it."""
        text = "-- first\nSELECT 1;\n/* second */\nSELECT 2;\n-- trailing"
        statements = lexer.split_statements(text)
        assert len(statements) == 2
        assert [t.text for t in statements[0].leading] == ["-- first"]
        assert [t.text for t in statements[1].leading] == ["/* second */"]
        assert statements[1].line == 4

    def test_trigger_body_kept_whole(self) -> None:
        """Semicolons inside a trigger body do not split it."""
        text = """
            CREATE TRIGGER touch AFTER UPDATE ON t
            BEGIN
                UPDATE t SET n = CASE WHEN n IS NULL THEN 0 ELSE n + 1 END;
                DELETE FROM u;
            END;
            SELECT 1;
        """
        statements = lexer.split_statements(text)
        assert len(statements) == 2
        assert statements[0].code.startswith("CREATE TRIGGER")
        assert statements[0].code.endswith("END")

    def test_code_strips_comments(self) -> None:
        """Statement code has no comments or trailing semicolon."""
        (statement,) = lexer.split_statements("SELECT a, -- note\n b FROM t;")
        assert "note" not in statement.code
        assert not statement.code.endswith(";")

    def test_empty_statements_skipped(self) -> None:
        """Stray semicolons produce no statements."""
        assert [s.code for s in lexer.split_statements(";; SELECT 1;;")] == ["SELECT 1"]


class TestHelpers:
    """Test rendering helpers."""

    def test_parameter_names_in_order(self) -> None:
        """Parameters are listed once, in order of first appearance."""
        sql = "SELECT * FROM t WHERE a = :b OR c = :a OR d = :b"
        assert lexer.parameter_names(sql) == ["b", "a"]

    def test_render_replaces_parameters(self) -> None:
        """The replace callback sees each parameter and the token before it."""
        tokens = lexer.tokenize("SELECT * FROM t WHERE id IN :ids")
        seen: list[str | None] = []

        def replace(token: lexer.Token, previous: lexer.Token | None) -> str:
            seen.append(previous.upper if previous else None)
            return "(?)"

        assert lexer.render(tokens, replace_param=replace) == "SELECT * FROM t WHERE id IN (?)"
        assert seen == ["IN"]

    @pytest.mark.parametrize(
        ("quoted", "expected"),
        [('"my table"', "my table"), ("`x`", "x"), ("[y]", "y"), ('"a""b"', 'a"b'), ("z", "z")],
    )
    def test_unquote_identifier(self, quoted: str, expected: str) -> None:
        """Quoted identifiers lose their quoting."""
        assert lexer.unquote_identifier(quoted) == expected
