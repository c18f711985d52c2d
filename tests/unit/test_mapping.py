"""Tests for row mapping and value adapters."""

from datetime import date, datetime
from decimal import Decimal

from sqlnow.core.types import ResultColumn, ResultKind, ResultNode
from sqlnow.runtime.mapping import RowMapper, TypeAdapters


def col(label: str, prop: str | None = None, ptype: str = "Any") -> ResultColumn:
    return ResultColumn(label=label, property_name=prop or label, property_type=ptype)


def customer_tree() -> ResultNode:
    return ResultNode(
        parent_key="id",
        columns=[col("id", ptype="int"), col("name")],
        children=[
            ResultNode(
                kind=ResultKind.COLLECTION,
                name="addresses",
                grouping_key="address__id",
                columns=[col("address__id", "id"), col("address__city", "city")],
            ),
            ResultNode(
                kind=ResultKind.COLLECTION,
                name="orders",
                grouping_key="order__id",
                columns=[col("order__id", "id")],
            ),
        ],
    )


class TestRowMapper:
    """Test nesting of flat rows."""

    def test_flat_rows(self) -> None:
        mapper = RowMapper(ResultNode(columns=[col("id"), col("full_name", "fullName")]))
        rows = [{"id": 1, "full_name": "Ada"}, {"id": 2, "full_name": "Bob"}]
        assert mapper.map_rows(rows) == [
            {"id": 1, "fullName": "Ada"},
            {"id": 2, "fullName": "Bob"},
        ]

    def test_collections_group_and_deduplicate(self) -> None:
        """A join fan-out collapses into one object per parent with distinct elements."""
        rows = [
            {"id": 1, "name": "Ada", "address__id": 10, "address__city": "Oslo", "order__id": 100},
            {"id": 1, "name": "Ada", "address__id": 10, "address__city": "Oslo", "order__id": 101},
            {"id": 1, "name": "Ada", "address__id": 11, "address__city": "Rome", "order__id": 100},
            {"id": 1, "name": "Ada", "address__id": 11, "address__city": "Rome", "order__id": 101},
            {"id": 2, "name": "Bob", "address__id": None, "address__city": None, "order__id": None},
        ]
        assert RowMapper(customer_tree()).map_rows(rows) == [
            {
                "id": 1,
                "name": "Ada",
                "addresses": [{"id": 10, "city": "Oslo"}, {"id": 11, "city": "Rome"}],
                "orders": [{"id": 100}, {"id": 101}],
            },
            {"id": 2, "name": "Bob", "addresses": [], "orders": []},
        ]

    def test_parent_order_follows_first_appearance(self) -> None:
        rows = [
            {"id": 2, "name": "Bob", "address__id": 1, "address__city": "A", "order__id": None},
            {"id": 1, "name": "Ada", "address__id": 2, "address__city": "B", "order__id": None},
            {"id": 2, "name": "Bob", "address__id": 3, "address__city": "C", "order__id": None},
        ]
        mapped = RowMapper(customer_tree()).map_rows(rows)
        assert [m["id"] for m in mapped] == [2, 1]
        assert [a["id"] for a in mapped[0]["addresses"]] == [1, 3]

    def test_grouping_without_parent_key(self) -> None:
        """Without a parent key all flat columns identify the parent."""
        node = ResultNode(
            columns=[col("team")],
            children=[
                ResultNode(
                    kind=ResultKind.COLLECTION,
                    name="members",
                    grouping_key="m__name",
                    columns=[col("m__name", "name")],
                )
            ],
        )
        rows = [
            {"team": "red", "m__name": "a"},
            {"team": "blue", "m__name": "b"},
            {"team": "red", "m__name": "c"},
        ]
        assert RowMapper(node).map_rows(rows) == [
            {"team": "red", "members": [{"name": "a"}, {"name": "c"}]},
            {"team": "blue", "members": [{"name": "b"}]},
        ]

    def test_entity_with_collection(self) -> None:
        """Parents keyed by a column inside the entity stay separate."""
        node = ResultNode(
            parent_key="person__id",
            children=[
                ResultNode(
                    kind=ResultKind.ENTITY,
                    name="person",
                    columns=[col("person__id", "id"), col("person__name", "name")],
                ),
                ResultNode(
                    kind=ResultKind.COLLECTION,
                    name="addresses",
                    grouping_key="address__id",
                    columns=[col("address__id", "id")],
                ),
            ],
        )
        rows = [
            {"person__id": 1, "person__name": "Ada", "address__id": 10},
            {"person__id": 1, "person__name": "Ada", "address__id": 11},
            {"person__id": 2, "person__name": "Bob", "address__id": 12},
        ]
        assert RowMapper(node).map_rows(rows) == [
            {"person": {"id": 1, "name": "Ada"}, "addresses": [{"id": 10}, {"id": 11}]},
            {"person": {"id": 2, "name": "Bob"}, "addresses": [{"id": 12}]},
        ]

    def test_grouping_without_parent_key_uses_nested_columns(self) -> None:
        """Without a parent key, columns of entity and perRow fields identify the parent too."""
        node = ResultNode(
            children=[
                ResultNode(kind=ResultKind.ENTITY, name="team", columns=[col("t__name", "name")]),
                ResultNode(
                    kind=ResultKind.COLLECTION,
                    name="members",
                    grouping_key="m__name",
                    columns=[col("m__name", "name")],
                ),
            ],
        )
        rows = [
            {"t__name": "red", "m__name": "a"},
            {"t__name": "blue", "m__name": "b"},
        ]
        assert RowMapper(node).map_rows(rows) == [
            {"team": {"name": "red"}, "members": [{"name": "a"}]},
            {"team": {"name": "blue"}, "members": [{"name": "b"}]},
        ]

    def test_nullable_per_row(self) -> None:
        """A per-row object whose columns are all NULL is None."""
        node = ResultNode(
            columns=[col("id")],
            children=[
                ResultNode(
                    kind=ResultKind.PER_ROW,
                    name="owner",
                    nullable=True,
                    columns=[col("owner__id", "id"), col("owner__name", "name")],
                )
            ],
        )
        rows = [
            {"id": 1, "owner__id": 5, "owner__name": "Ada"},
            {"id": 2, "owner__id": None, "owner__name": None},
        ]
        assert RowMapper(node).map_rows(rows) == [
            {"id": 1, "owner": {"id": 5, "name": "Ada"}},
            {"id": 2, "owner": None},
        ]

    def test_required_per_row_is_always_built(self) -> None:
        node = ResultNode(
            columns=[col("id")],
            children=[
                ResultNode(kind=ResultKind.PER_ROW, name="owner", columns=[col("o__id", "id")])
            ],
        )
        assert RowMapper(node).map_rows([{"id": 1, "o__id": None}]) == [
            {"id": 1, "owner": {"id": None}}
        ]

    def test_values_are_decoded_by_property_type(self) -> None:
        node = ResultNode(
            columns=[
                col("active", ptype="bool"),
                col("born", ptype="date"),
                col("seen", ptype="datetime"),
                col("note", ptype="str"),
            ]
        )
        row = {"active": 1, "born": "1990-04-01", "seen": "2024-01-02T03:04:05", "note": None}
        assert RowMapper(node).map_rows([row]) == [
            {
                "active": True,
                "born": date(1990, 4, 1),
                "seen": datetime(2024, 1, 2, 3, 4, 5),
                "note": None,
            }
        ]


class TestTypeAdapters:
    """Test value conversions."""

    def test_decode_bool(self) -> None:
        adapters = TypeAdapters()
        assert adapters.decode("bool", 0) is False
        assert adapters.decode("bool", "true") is True
        assert adapters.decode("bool", None) is None
        assert adapters.decode("unknown", 5) == 5

    def test_encode(self) -> None:
        adapters = TypeAdapters()
        assert adapters.encode(True) == 1
        assert adapters.encode(date(2024, 5, 6)) == "2024-05-06"
        assert adapters.encode([True, date(2024, 5, 6)]) == [1, "2024-05-06"]
        assert adapters.encode("text") == "text"

    def test_register_custom_type(self) -> None:
        adapters = TypeAdapters()
        adapters.register("money", Decimal, python_type=Decimal, encoder=str)
        assert adapters.decode("money", "1.50") == Decimal("1.50")
        assert adapters.encode(Decimal("2.25")) == "2.25"
