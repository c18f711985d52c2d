"""Shared test fixtures for SQLNow."""

from collections.abc import Callable
from pathlib import Path
from textwrap import dedent

import pytest

from sqlnow import CompiledDatabase, CompilerConfig, SqlCompiler

SHOP_SCHEMA = """
-- @@{ name=Customer, cascadeNotify={ delete=[address, purchase], update=[address] } }
CREATE TABLE customer (
    id INTEGER PRIMARY KEY,
    -- @@{ propertyName=fullName }
    name TEXT NOT NULL,
    email TEXT,
    active BOOLEAN NOT NULL DEFAULT 1,
    created_at TIMESTAMP
);

CREATE TABLE address (
    id INTEGER PRIMARY KEY,
    customer_id INTEGER NOT NULL REFERENCES customer(id) ON DELETE CASCADE,
    city TEXT NOT NULL,
    street TEXT
);

CREATE TABLE purchase (
    id INTEGER PRIMARY KEY,
    customer_id INTEGER NOT NULL REFERENCES customer(id) ON DELETE CASCADE,
    total REAL NOT NULL
);
"""

SHOP_QUERIES = {
    "customer/all.sql": """
        -- @@{ sharedResult=Customer }
        SELECT id, name, email, active, created_at FROM customer ORDER BY id;
    """,
    "customer/by_id.sql": """
        -- @@{ sharedResult=Customer }
        SELECT id, name, email, active, created_at FROM customer WHERE id = :id;
    """,
    "customer/by_ids.sql": """
        SELECT id, name FROM customer WHERE id IN :ids ORDER BY id;
    """,
    "customer/count.sql": """
        SELECT COUNT(*) AS total FROM customer;
    """,
    "customer/insert.sql": """
        INSERT INTO customer (name, email, active, created_at)
        VALUES (:name, :email, :active, :created_at);
    """,
    "customer/add.sql": """
        INSERT INTO customer (name) VALUES (:name) RETURNING id, name;
    """,
    "customer/rename.sql": """
        UPDATE customer SET name = :name WHERE id = :id;
    """,
    "customer/delete.sql": """
        DELETE FROM customer WHERE id = :id;
    """,
    "customer/with_addresses.sql": """
        -- @@{ dynamicField=addresses, mappingType=collection, propertyType=Address,
        --     sourceTable=a, aliasPrefix=address__ }
        SELECT c.id, c.name,
               a.id AS address__id, a.city AS address__city, a.street AS address__street
        FROM customer c
        LEFT JOIN address a ON a.customer_id = c.id
        ORDER BY c.id, a.id;
    """,
    "customer/with_everything.sql": """
        -- @@{ dynamicField=addresses, mappingType=collection, propertyType=Address,
        --     sourceTable=a, aliasPrefix=address__ }
        -- @@{ dynamicField=purchases, mappingType=collection, propertyType=Purchase,
        --     sourceTable=p, aliasPrefix=purchase__ }
        SELECT c.id, c.name,
               a.id AS address__id, a.city AS address__city,
               p.id AS purchase__id, p.total AS purchase__total
        FROM customer c
        LEFT JOIN address a ON a.customer_id = c.id
        LEFT JOIN purchase p ON p.customer_id = c.id
        ORDER BY c.id, a.id, p.id;
    """,
    "address/all.sql": """
        SELECT id, customer_id, city FROM address ORDER BY id;
    """,
    "address/by_customer.sql": """
        SELECT id, city, street FROM address WHERE customer_id = :customer_id ORDER BY id;
    """,
    "address/with_customer.sql": """
        -- @@{ dynamicField=customer, mappingType=perRow, propertyType=Customer,
        --     sourceTable=c, aliasPrefix=customer__ }
        SELECT a.id, a.city, c.id AS customer__id, c.name AS customer__name
        FROM address a
        LEFT JOIN customer c ON c.id = a.customer_id
        ORDER BY a.id;
    """,
    "address/insert.sql": """
        INSERT INTO address (customer_id, city, street) VALUES (:customer_id, :city, :street);
    """,
    "purchase/insert.sql": """
        INSERT INTO purchase (customer_id, total) VALUES (:customer_id, :total);
    """,
}


PERSON_SCHEMA = """
CREATE TABLE person (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE address (
    id INTEGER PRIMARY KEY,
    person_id INTEGER NOT NULL REFERENCES person(id),
    city TEXT NOT NULL
);
"""

PERSON_ENTITY = """
    /* @@{ dynamicField=person, mappingType=entity, propertyType=Person,
           sourceTable=p, aliasPrefix=person__ } */
"""

PERSON_QUERIES = {
    "person/entity.sql": PERSON_ENTITY
    + """
    SELECT p.id AS person__id, p.name AS person__name FROM person p ORDER BY p.id;
    """,
    "person/with_addresses.sql": PERSON_ENTITY
    + """
    /* @@{ dynamicField=addresses, mappingType=collection, propertyType=Address,
           sourceTable=a, aliasPrefix=address__ } */
    SELECT p.id AS person__id, p.name AS person__name,
           a.id AS address__id, a.city AS address__city
    FROM person p
    LEFT JOIN address a ON a.person_id = p.id
    ORDER BY p.id, a.id;
    """,
}

# Views built on prefixed views, nesting an entity and a perRow inside a collection
PARENT_COMPLEX_SCHEMA = """
CREATE TABLE parent_entity (
    id INTEGER PRIMARY KEY NOT NULL,
    doc_id TEXT NOT NULL UNIQUE,
    category_id INTEGER NOT NULL
);

CREATE TABLE parent_category (
    id INTEGER PRIMARY KEY NOT NULL,
    doc_id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL
);

CREATE TABLE child_entity (
    id INTEGER PRIMARY KEY NOT NULL,
    parent_doc_id TEXT NOT NULL,
    title TEXT NOT NULL
);

CREATE TABLE child_schedule (
    id INTEGER PRIMARY KEY NOT NULL,
    child_id INTEGER NOT NULL,
    frequency TEXT,
    start_day INTEGER
);

CREATE VIEW parent_to_join AS
SELECT
    p.id AS parent__id,
    p.doc_id AS parent__doc_id,
    p.category_id AS parent__category_id
FROM parent_entity AS p;

CREATE VIEW parent_category_to_join AS
SELECT
    c.id AS category__id,
    c.doc_id AS category__doc_id,
    c.title AS category__title
FROM parent_category AS c;

CREATE VIEW child_to_join AS
SELECT
    ch.id AS child__id,
    ch.parent_doc_id AS child__parent_doc_id,
    ch.title AS child__title
FROM child_entity AS ch;

CREATE VIEW child_schedule_to_join AS
SELECT
    s.id AS schedule__id,
    s.child_id AS schedule__child_id,
    s.frequency AS schedule__frequency,
    s.start_day AS schedule__start_day
FROM child_schedule AS s;

CREATE VIEW parent_detailed_view AS
SELECT
    parent.*,
    category.*

    /* @@{ dynamicField=main,
           mappingType=entity,
           propertyType=ParentMainDoc,
           sourceTable=parent,
           aliasPrefix=parent__,
           notNull=true } */

    /* @@{ dynamicField=category,
           mappingType=perRow,
           propertyType=ParentCategoryDoc,
           sourceTable=category,
           aliasPrefix=category__,
           notNull=true } */

FROM parent_to_join parent
LEFT JOIN parent_category_to_join category ON parent.parent__category_id = category.category__id;

CREATE VIEW child_detailed_view AS
SELECT
    child.*,
    sched.*

    /* @@{ dynamicField=main,
           mappingType=entity,
           propertyType=ChildMainDoc,
           sourceTable=child,
           aliasPrefix=child__,
           notNull=true } */

    /* @@{ dynamicField=schedule,
           mappingType=perRow,
           propertyType=ChildScheduleDoc,
           sourceTable=sched,
           aliasPrefix=schedule__ } */

FROM child_to_join child
LEFT JOIN child_schedule_to_join sched ON child.child__id = sched.schedule__child_id;

-- @@{ collectionKey=parent__doc_id }
CREATE VIEW parent_with_children_view AS
SELECT
    pdv.*,
    cdv.*

    /* @@{ dynamicField=children,
           mappingType=collection,
           propertyType=List<ParentChildDoc>,
           sourceTable=cdv,
           collectionKey=child__id,
           aliasPrefix=child__,
           notNull=true } */

FROM parent_detailed_view pdv
LEFT JOIN child_detailed_view cdv ON pdv.parent__doc_id = cdv.child__parent_doc_id;
"""


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Write SQL sources below ``root``; keys are paths relative to it."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dedent(content).strip() + "\n", encoding="utf-8")
    return root


def make_tree(
    root: Path,
    schema: str,
    queries: dict[str, str] | None = None,
    extra: dict[str, str] | None = None,
) -> Path:
    """Write a database source tree with one schema file."""
    files = {"schema/001_schema.sql": schema}
    for relative, content in (queries or {}).items():
        files[f"queries/{relative}"] = content
    files.update(extra or {})
    return write_tree(root, files)


@pytest.fixture
def tree(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a source tree below tmp_path: tree(schema, queries, extra, name)."""

    def factory(
        schema: str,
        queries: dict[str, str] | None = None,
        extra: dict[str, str] | None = None,
        name: str = "db",
    ) -> Path:
        return make_tree(tmp_path / name, schema, queries, extra)

    return factory


@pytest.fixture
def compile_tree(tree: Callable[..., Path]) -> Callable[..., CompiledDatabase]:
    """Factory writing and compiling a source tree in one step."""

    def factory(
        schema: str,
        queries: dict[str, str] | None = None,
        extra: dict[str, str] | None = None,
        name: str = "db",
        config: CompilerConfig | None = None,
    ) -> CompiledDatabase:
        return SqlCompiler(config).compile(tree(schema, queries, extra, name))

    return factory


@pytest.fixture
def shop_root(tmp_path: Path) -> Path:
    """Source tree of a small shop database."""
    return make_tree(tmp_path / "shop", SHOP_SCHEMA, SHOP_QUERIES)


@pytest.fixture
def shop(shop_root: Path) -> CompiledDatabase:
    """The compiled shop database."""
    return SqlCompiler().compile(shop_root)


@pytest.fixture
def people(compile_tree: Callable[..., CompiledDatabase]) -> CompiledDatabase:
    """Persons mapped through an entity field, alone and beside an addresses collection."""
    return compile_tree(PERSON_SCHEMA, PERSON_QUERIES, name="people")


@pytest.fixture
def nested_views(compile_tree: Callable[..., CompiledDatabase]) -> CompiledDatabase:
    """Views nesting entity and perRow fields inside a collection, plus a query over them."""
    return compile_tree(
        PARENT_COMPLEX_SCHEMA,
        {
            "parent/with_children.sql": """
                SELECT * FROM parent_with_children_view ORDER BY parent__id, child__id;
            """,
        },
        name="nested",
    )
