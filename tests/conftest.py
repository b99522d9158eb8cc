from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_relations import relations_cache_clear
from sqla_relations.registry import Registry, get_registry, init_registry

from .models import (
    SEEDED_AT,
    Base,
    Category,
    Comment,
    Country,
    Membership,
    Post,
    Profile,
    Reaction,
    Role,
    Team,
    User,
    role_user,
)


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres", "mysql"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_registry() -> None:
    """Initialize the Registry singleton with the test models.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Registry()
    except RuntimeError:
        Registry.reset()
        init_registry(get_registry(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                dsn = (
                    f"mysql+asyncmy://{my.username}:{my.password}"
                    f"@{host}:{port}/{my.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


def _sqlite_savepoints(engine: AsyncEngine) -> None:
    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    engine = create_async_engine(db_config, echo=False)
    if engine.dialect.name == "sqlite":
        _sqlite_savepoints(engine)

    return engine


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(
        bind=connection,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    yield sess
    await sess.close()


class QueryCounter:
    """Collects the SELECT statements sent through an engine."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()

    def __call__(
        self,
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        if statement.lstrip().upper().startswith("SELECT"):
            self.statements.append(statement)


@pytest.fixture
def query_counter(engine: AsyncEngine) -> Iterator[QueryCounter]:
    counter = QueryCounter()
    event.listen(engine.sync_engine, "before_cursor_execute", counter)
    yield counter
    event.remove(engine.sync_engine, "before_cursor_execute", counter)


@pytest.fixture
async def seed_data(session: AsyncSession) -> dict[str, list[Base]]:
    norway = Country(id=1, name="Norway")
    peru = Country(id=2, name="Peru")
    chad = Country(id=3, name="Chad")
    session.add_all([norway, peru, chad])
    await session.flush()

    alice = User(id=1, name="alice", active=True, country_id=1)
    bob = User(id=2, name="bob", active=True, country_id=1)
    carol = User(id=3, name="carol", active=False, country_id=2)
    dave = User(id=4, name="dave", active=True, country_id=None)
    session.add_all([alice, bob, carol, dave])
    await session.flush()

    post1 = Post(id=1, title="Alice Post 1", published=True, user_id=1)
    post2 = Post(id=2, title="Alice Post 2", published=True, user_id=1)
    post3 = Post(id=3, title="Alice Draft", published=False, user_id=1)
    post4 = Post(id=4, title="Bob Post 1", published=True, user_id=2)
    session.add_all([post1, post2, post3, post4])
    await session.flush()

    comment1 = Comment(id=1, body="first", approved=True, post_id=1)
    comment2 = Comment(id=2, body="second", approved=False, post_id=1)
    comment3 = Comment(id=3, body="third", approved=True, post_id=2)
    comment4 = Comment(id=4, body="bob's", approved=True, post_id=4)
    session.add_all([comment1, comment2, comment3, comment4])
    await session.flush()

    reaction1 = Reaction(id=1, emoji="+1", comment_id=1)
    reaction2 = Reaction(id=2, emoji="<3", comment_id=1)
    reaction3 = Reaction(id=3, emoji="+1", comment_id=3)
    session.add_all([reaction1, reaction2, reaction3])
    await session.flush()

    profile_alice = Profile(id=1, bio="Alice bio", user_id=1)
    profile_bob = Profile(id=2, bio="Bob bio", user_id=2)
    session.add_all([profile_alice, profile_bob])
    await session.flush()

    admin = Role(id=1, name="admin", level=10)
    editor = Role(id=2, name="editor", level=5)
    viewer = Role(id=3, name="viewer", level=1)
    session.add_all([admin, editor, viewer])
    await session.flush()

    await session.execute(
        role_user.insert(),
        [
            {"user_id": 1, "role_id": 1, "granted_by": "root", "created_at": SEEDED_AT, "updated_at": SEEDED_AT},
            {"user_id": 1, "role_id": 2, "granted_by": "root", "created_at": SEEDED_AT, "updated_at": SEEDED_AT},
            {"user_id": 2, "role_id": 2, "granted_by": None, "created_at": SEEDED_AT, "updated_at": SEEDED_AT},
            {"user_id": 2, "role_id": 3, "granted_by": None, "created_at": SEEDED_AT, "updated_at": SEEDED_AT},
        ],
    )

    root = Category(id=1, name="root", parent_id=None)
    child1 = Category(id=2, name="child_1", parent_id=1)
    child2 = Category(id=3, name="child_2", parent_id=1)
    grandchild = Category(id=4, name="grandchild", parent_id=2)
    session.add_all([root])
    await session.flush()
    session.add_all([child1, child2])
    await session.flush()
    session.add_all([grandchild])
    await session.flush()

    core = Team(id=1, name="core")
    docs = Team(id=2, name="docs")
    session.add_all([core, docs])
    await session.flush()

    session.add_all([
        Membership(user_id=1, team_id=1, role="lead"),
        Membership(user_id=2, team_id=1, role="member"),
        Membership(user_id=2, team_id=2, role="member"),
    ])
    await session.flush()

    session.expunge_all()

    return {
        "countries": [norway, peru, chad],
        "users": [alice, bob, carol, dave],
        "posts": [post1, post2, post3, post4],
        "comments": [comment1, comment2, comment3, comment4],
        "reactions": [reaction1, reaction2, reaction3],
        "profiles": [profile_alice, profile_bob],
        "roles": [admin, editor, viewer],
        "categories": [root, child1, child2, grandchild],
        "teams": [core, docs],
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relations_cache_clear()


@pytest.fixture
def reset_registry_singleton() -> Iterator[None]:
    saved = Registry._Registry__instance  # type: ignore[attr-defined]
    yield
    Registry._Registry__instance = saved  # type: ignore[attr-defined]
