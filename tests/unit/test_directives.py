"""Tests for directive parsing and scope binding."""

import pytest

from sqlnow.compiler import AnnotationExtractor, parse_directive
from sqlnow.core.types import PropertyNameGenerator
from sqlnow.exceptions import AnnotationError


def extract_one(text: str, source: str = "test.sql"):
    statements = AnnotationExtractor(text, source).statements()
    assert len(statements) == 1
    return statements[0]


class TestParseDirective:
    """Test the directive grammar."""

    def test_scalars(self) -> None:
        """Bare values become booleans, numbers, null or strings."""
        values = parse_directive("{ a=true, b=false, c=null, d=12, e=1.5, f=word, g='q, x' }")
        assert values == {
            "a": True,
            "b": False,
            "c": None,
            "d": 12,
            "e": 1.5,
            "f": "word",
            "g": "q, x",
        }

    def test_nested_maps_and_lists(self) -> None:
        """Maps may use '=', ':' or nothing before a nested brace."""
        values = parse_directive("{ cascadeNotify { delete: [a, b], update = [c] } }")
        assert values == {"cascadeNotify": {"delete": ["a", "b"], "update": ["c"]}}

    def test_newline_separates_members(self) -> None:
        """Members may be separated by newlines instead of commas."""
        assert parse_directive("{ a=1\n b=2 }") == {"a": 1, "b": 2}

    def test_order_preserved(self) -> None:
        """Keys keep their written order."""
        assert list(parse_directive("{ z=1, a=2, m=3 }")) == ["z", "a", "m"]

    @pytest.mark.parametrize(
        ("text", "message"),
        [
            ("{ a=1", "unbalanced braces"),
            ("{ a=1 }}", "unbalanced braces"),
            ("{ a=[1, 2 }", "'}' inside a list"),
            ("{ a=1, a=2 }", "duplicate key 'a'"),
            ("{ a='open }", "unterminated string"),
            ("{ a }", "expected '=' or ':'"),
        ],
    )
    def test_malformed(self, text: str, message: str) -> None:
        """Malformed blocks raise AnnotationError."""
        with pytest.raises(AnnotationError, match=message):
            parse_directive(text)


class TestScopeBinding:
    """Test binding directive blocks to tables, columns, queries and shapes."""

    def test_table_and_column_scopes(self) -> None:
        """A leading block binds to the table; inner blocks to the next column."""
        directives = extract_one(
            """
            -- @@{ name=Person, propertyNameGenerator=lowerCamelCase }
            CREATE TABLE person (
                id INTEGER PRIMARY KEY,
                /* @@{ propertyType=date, notNull=true } */
                birth_date TEXT,
                -- @@{ field=nick_name, propertyName=alias }
                nick_name TEXT
            );
            """
        )
        assert directives.table is not None
        assert directives.table.name == "Person"
        assert directives.table.property_name_generator == PropertyNameGenerator.LOWER_CAMEL_CASE
        birth = directives.column("BIRTH_DATE")
        assert birth is not None
        assert birth.property_type == "date"
        assert birth.not_null is True
        nick = directives.column("nick_name")
        assert nick is not None and nick.property_name == "alias"

    def test_cascade_notify_single_table(self) -> None:
        """A single cascade target may be written without a list."""
        directives = extract_one(
            "-- @@{ cascadeNotify={ delete=child } }\nCREATE TABLE parent (id INTEGER);"
        )
        assert directives.table is not None
        assert directives.table.cascade_notify is not None
        assert directives.table.cascade_notify.delete == ["child"]
        assert directives.table.cascade_notify.update == []

    def test_query_scope_and_dynamic_fields(self) -> None:
        """Leading blocks on a query bind to the query, dynamicField blocks to shapes."""
        directives = extract_one(
            """
            -- @@{ sharedResult=Row, mapTo=RowModel }
            /* @@{ dynamicField=items,
                   mappingType=collection,
                   propertyType=Item,
                   sourceTable=i,
                   aliasPrefix=item__ } */
            SELECT o.id, i.id AS item__id
            FROM orders o LEFT JOIN item i ON i.order_id = o.id -- @@{ field=id, notNull=true }
            """
        )
        assert directives.query is not None
        assert directives.query.result_name == "Row"
        assert directives.query.map_to == "RowModel"
        (shape,) = directives.dynamic_fields
        assert shape.dynamic_field == "items"
        assert shape.mapping_type == "collection"
        assert shape.alias_prefix == "item__"
        assert directives.column("id") is not None

    def test_view_leading_block_is_query_scope(self) -> None:
        """Views take query directives."""
        directives = extract_one("-- @@{ queryResult=Summary }\nCREATE VIEW v AS SELECT 1 AS x;")
        assert directives.query is not None
        assert directives.query.result_name == "Summary"

    def test_blocks_across_comments_merge(self) -> None:
        """Separate blocks for the same column are merged."""
        directives = extract_one(
            """
            -- @@{ field=total, sqlTypeHint=INTEGER }

            -- @@{ field=total, notNull=true }
            SELECT SUM(n) AS total FROM t
            """
        )
        total = directives.column("total")
        assert total is not None
        assert total.sql_type_hint == "INTEGER"
        assert total.not_null is True


class TestDirectiveErrors:
    """Test directive validation errors."""

    def test_unknown_key_lists_allowed(self) -> None:
        """Unknown keys report the allowed keys and the location."""
        with pytest.raises(AnnotationError) as exc_info:
            extract_one("SELECT 1 AS x -- @@{ field=x, colour=red }\n", "q.sql")
        message = str(exc_info.value)
        assert message.startswith("q.sql:1:")
        assert "unknown key 'colour'" in message
        assert "propertyName" in message

    def test_duplicate_key_across_blocks(self) -> None:
        """The same key in two blocks of one scope is an error."""
        with pytest.raises(AnnotationError, match="more than one directive"):
            extract_one(
                "-- @@{ mapTo=A }\n\n-- @@{ mapTo=B }\nSELECT 1 AS x;"
            )

    def test_field_and_dynamic_field(self) -> None:
        """A block cannot be both a column and a shape directive."""
        with pytest.raises(AnnotationError, match="both 'field' and 'dynamicField'"):
            extract_one("-- @@{ field=x, dynamicField=y }\nSELECT 1 AS x;")

    def test_dynamic_field_requires_keys(self) -> None:
        """mappingType, sourceTable and aliasPrefix are required."""
        with pytest.raises(AnnotationError, match="sourceTable"):
            extract_one(
                "-- @@{ dynamicField=y, mappingType=perRow, propertyType=Y, aliasPrefix=y__ }\n"
                "SELECT 1 AS y__x;"
            )

    def test_bad_mapping_type(self) -> None:
        """mappingType is a closed set."""
        with pytest.raises(AnnotationError, match="invalid result_shape directive"):
            extract_one(
                "-- @@{ dynamicField=y, mappingType=many, propertyType=Y, sourceTable=t, "
                "aliasPrefix=y__ }\nSELECT 1 AS y__x;"
            )

    def test_different_result_names(self) -> None:
        """sharedResult and queryResult must agree."""
        with pytest.raises(AnnotationError, match="name different results"):
            extract_one("-- @@{ sharedResult=A, queryResult=B }\nSELECT 1 AS x;")

    def test_inner_block_without_field_in_query(self) -> None:
        """Blocks inside a query body must say what they bind to."""
        with pytest.raises(AnnotationError, match="must declare 'field' or 'dynamicField'"):
            extract_one("SELECT 1 AS x /* @@{ notNull=true } */ FROM t;")

    def test_dynamic_field_on_table(self) -> None:
        """Tables have no result shapes."""
        with pytest.raises(AnnotationError, match="not allowed on CREATE TABLE"):
            extract_one(
                "-- @@{ dynamicField=y, mappingType=perRow, propertyType=Y, sourceTable=t, "
                "aliasPrefix=y__ }\nCREATE TABLE t (id INTEGER);"
            )

    def test_unbalanced_block_location(self) -> None:
        """Syntax errors point into the source file."""
        with pytest.raises(AnnotationError) as exc_info:
            extract_one("SELECT 1;\n-- @@{ a=1\nSELECT 2;", "f.sql")
        assert exc_info.value.line == 2
