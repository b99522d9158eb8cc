from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_relations import (
    ConfigurationError,
    ModelQuery,
    QueryExecutionError,
    get_meta,
    get_pivot,
    get_related,
    is_loaded,
    load,
)

from ..conftest import QueryCounter
from ..models import SEEDED_AT, Base, Category, Comment, Country, Post, Role, User

pytestmark = pytest.mark.anyio


def _ids(entities: list[Base]) -> list[int]:
    return sorted(entity.id for entity in entities)  # type: ignore[attr-defined]


def _by_name(entities: list[User]) -> dict[str, User]:
    return {entity.name: entity for entity in entities}


class TestOneQueryPerPath:
    async def test_each_relation_path_costs_one_query(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        query_counter: QueryCounter,
    ) -> None:
        query_counter.reset()
        users = await ModelQuery(User).with_("posts.comments.reactions").with_("roles").all(session)

        # base + posts + comments + reactions + roles
        assert query_counter.count == 5
        assert len(users) == 4

    async def test_indirect_costs_one_query(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        query_counter: QueryCounter,
    ) -> None:
        query_counter.reset()
        await ModelQuery(Country).with_("posts").all(session)

        assert query_counter.count == 2

    async def test_thousand_parents_cost_two_queries(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        query_counter: QueryCounter,
    ) -> None:
        session.add_all([User(id=ident, name=f"user_{ident}") for ident in range(1000, 2000)])
        await session.flush()
        session.add_all([Post(id=ident, title=f"post_{ident}", user_id=ident) for ident in range(1000, 2000)])
        await session.flush()

        query_counter.reset()
        users = await ModelQuery(User).where(User.id >= 1000).with_("posts").all(session)

        assert query_counter.count == 2
        assert len(users) == 1000
        assert all(_ids(get_related(user, "posts")) == [user.id] for user in users)

    async def test_null_keys_issue_no_query(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        query_counter: QueryCounter,
    ) -> None:
        query_counter.reset()
        users = await ModelQuery(User).where(User.name == "dave").with_("country").all(session)

        assert query_counter.count == 1
        assert get_related(users[0], "country") is None

    async def test_no_parents_no_relation_query(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        query_counter: QueryCounter,
    ) -> None:
        query_counter.reset()
        users = await ModelQuery(User).where(User.name == "nobody").with_("posts").all(session)

        assert users == []
        assert query_counter.count == 1

    async def test_unknown_path_fails_before_any_query(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        query_counter: QueryCounter,
    ) -> None:
        query_counter.reset()
        with pytest.raises(ConfigurationError, match="No relation 'tags' on Post"):
            await ModelQuery(User).with_("posts.tags").all(session)

        assert query_counter.count == 0


class TestStitching:
    async def test_one_to_many_nested(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("posts.comments.reactions").all(session))

        alice_posts = get_related(users["alice"], "posts")
        assert _ids(alice_posts) == [1, 2, 3]
        post1 = next(post for post in alice_posts if post.id == 1)
        assert _ids(get_related(post1, "comments")) == [1, 2]
        comment1 = next(c for c in get_related(post1, "comments") if c.id == 1)
        assert _ids(get_related(comment1, "reactions")) == [1, 2]

    async def test_empty_collections_are_lists(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("posts.comments").all(session))

        assert get_related(users["carol"], "posts") == []
        post3 = next(p for p in get_related(users["alice"], "posts") if p.id == 3)
        assert get_related(post3, "comments") == []

    async def test_one_to_one(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("profile").all(session))

        assert get_related(users["alice"], "profile").bio == "Alice bio"
        assert get_related(users["carol"], "profile") is None

    async def test_inverse_one_to_one(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        posts = await ModelQuery(Post).order_by(Post.id).with_("author").all(session)

        assert [get_related(post, "author").name for post in posts] == ["alice", "alice", "alice", "bob"]

    async def test_shared_related_entity_is_one_instance(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        posts = await ModelQuery(Post).where(Post.user_id == 1).with_("author").all(session)

        authors = {id(get_related(post, "author")) for post in posts}
        assert len(authors) == 1

    async def test_many_to_many_with_pivot(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("roles").all(session))
        alice = users["alice"]
        roles = {role.name: role for role in get_related(alice, "roles")}

        assert set(roles) == {"admin", "editor"}
        assert get_pivot(alice, "roles", roles["admin"]) == {
            "user_id": 1,
            "role_id": 1,
            "granted_by": "root",
            "created_at": SEEDED_AT,
            "updated_at": SEEDED_AT,
        }
        assert get_related(users["carol"], "roles") == []

    async def test_pivot_data_is_per_owner(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("roles").all(session))
        editor_of_alice = next(r for r in get_related(users["alice"], "roles") if r.name == "editor")
        editor_of_bob = next(r for r in get_related(users["bob"], "roles") if r.name == "editor")

        assert editor_of_alice is editor_of_bob
        assert get_pivot(users["alice"], "roles", editor_of_alice)["granted_by"] == "root"
        assert get_pivot(users["bob"], "roles", editor_of_bob)["granted_by"] is None

    async def test_many_to_many_back_and_forth(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("roles.users").all(session))
        editor = next(r for r in get_related(users["alice"], "roles") if r.name == "editor")

        assert {user.name for user in get_related(editor, "users")} == {"alice", "bob"}

    async def test_pivot_model(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(await ModelQuery(User).with_("teams").all(session))
        alice = users["alice"]
        teams = get_related(alice, "teams")

        assert [team.name for team in teams] == ["core"]
        assert get_pivot(alice, "teams", teams[0])["role"] == "lead"
        assert {team.name for team in get_related(users["bob"], "teams")} == {"core", "docs"}

    async def test_indirect(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        countries = {c.name: c for c in await ModelQuery(Country).with_("posts").all(session)}

        assert _ids(get_related(countries["Norway"], "posts")) == [1, 2, 3, 4]
        assert get_related(countries["Peru"], "posts") == []
        assert get_related(countries["Chad"], "posts") == []

    async def test_self_referential(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        roots = await ModelQuery(Category).where(Category.parent_id.is_(None)).with_("children.children").all(session)

        assert len(roots) == 1
        children = {c.name: c for c in get_related(roots[0], "children")}
        assert set(children) == {"child_1", "child_2"}
        assert [c.name for c in get_related(children["child_1"], "children")] == ["grandchild"]
        assert get_related(children["child_2"], "children") == []

    async def test_self_referential_parent(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        categories = {c.name: c for c in await ModelQuery(Category).with_("parent").all(session)}

        assert get_related(categories["grandchild"], "parent").name == "child_1"
        assert get_related(categories["root"], "parent") is None

    async def test_not_loaded_relation_raises(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = await ModelQuery(User).with_("posts").all(session)

        assert not is_loaded(users[0], "roles")
        with pytest.raises(AttributeError, match="was not loaded"):
            get_related(users[0], "roles")


class TestConstraints:
    async def test_constraint_filters_relation(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(
            await ModelQuery(User).with_("posts", lambda q: q.where(Post.published.is_(True))).all(session)
        )

        assert _ids(get_related(users["alice"], "posts")) == [1, 2]

    async def test_nested_with_inside_constraint(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(
            await ModelQuery(User)
            .with_(
                "posts",
                lambda q: q.where(Post.published.is_(True)).with_(
                    "comments", lambda c: c.where(Comment.approved.is_(True))
                ),
            )
            .all(session)
        )
        posts = {p.id: p for p in get_related(users["alice"], "posts")}

        assert set(posts) == {1, 2}
        assert _ids(get_related(posts[1], "comments")) == [1]
        assert _ids(get_related(posts[2], "comments")) == [3]

    async def test_mapping_declares_several_paths(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(
            await ModelQuery(User)
            .with_({"roles": lambda q: q.where(Role.level >= 5), "profile": None})
            .all(session)
        )

        assert {r.name for r in get_related(users["bob"], "roles")} == {"editor"}
        assert get_related(users["bob"], "profile").bio == "Bob bio"

    async def test_per_parent_limit(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(
            await ModelQuery(User).with_("posts", lambda q: q.order_by(Post.id.desc()).limit(1)).all(session)
        )

        assert _ids(get_related(users["alice"], "posts")) == [3]
        assert _ids(get_related(users["bob"], "posts")) == [4]
        assert get_related(users["carol"], "posts") == []

    async def test_per_parent_limit_with_offset(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(
            await ModelQuery(User).with_("posts", lambda q: q.order_by(Post.id).offset(1).limit(1)).all(session)
        )

        assert _ids(get_related(users["alice"], "posts")) == [2]
        assert get_related(users["bob"], "posts") == []

    async def test_per_parent_limit_many_to_many(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = _by_name(
            await ModelQuery(User).with_("roles", lambda q: q.order_by(Role.level.desc()).limit(1)).all(session)
        )
        alice = users["alice"]
        roles = get_related(alice, "roles")

        assert [r.name for r in roles] == ["admin"]
        assert get_pivot(alice, "roles", roles[0])["granted_by"] == "root"
        assert [r.name for r in get_related(users["bob"], "roles")] == ["editor"]


    async def test_per_parent_limit_indirect(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        countries = {
            c.name: c
            for c in await ModelQuery(Country)
            .with_("posts", lambda q: q.order_by(Post.id).limit(1))
            .all(session)
        }

        assert _ids(get_related(countries["Norway"], "posts")) == [1]
        assert get_related(countries["Peru"], "posts") == []

    async def test_indirect_ordering_spans_intermediate_rows(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        countries = await (
            ModelQuery(Country)
            .where(Country.id == 1)
            .with_("posts", lambda q: q.order_by(Post.id.desc()))
            .all(session)
        )

        assert [post.id for post in get_related(countries[0], "posts")] == [4, 3, 2, 1]


class TestAtomicity:
    async def test_failed_sibling_leaves_entities_untouched(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        users = await ModelQuery(User).all(session)

        with pytest.raises(QueryExecutionError):
            await load(
                session,
                users,
                {"posts": None, "roles": lambda q: q.where(sa.text("no_such_column = 1"))},
            )

        assert not any(is_loaded(user, "posts") or is_loaded(user, "roles") for user in users)

    async def test_failed_nested_load_writes_no_pivot_data(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        alice = await session.get(User, 1)
        admin = await session.get(Role, 1)
        assert alice is not None and admin is not None

        with pytest.raises(QueryExecutionError):
            await alice.roles().with_("users", lambda q: q.where(sa.text("no_such_column = 1"))).fetch(session)

        with pytest.raises(KeyError):
            get_pivot(alice, "roles", admin)

    async def test_failed_nested_load_writes_no_counts(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        alice = await session.get(User, 1)
        post = await session.get(Post, 1)
        assert alice is not None and post is not None

        with pytest.raises(QueryExecutionError):
            await (
                alice.posts()
                .with_count("comments")
                .with_("comments", lambda q: q.where(sa.text("no_such_column = 1")))
                .fetch(session)
            )

        assert get_meta(post) == {}


class TestLazyLoad:
    async def test_single_entity_single_path(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        alice = await session.get(User, 1)
        assert alice is not None

        await load(session, alice, "posts", lambda q: q.where(Post.published.is_(False)))

        assert _ids(get_related(alice, "posts")) == [3]

    async def test_sequence_of_paths(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        users = await ModelQuery(User).all(session)

        await load(session, users, ["posts.comments", "profile"])

        assert all(is_loaded(user, "posts") and is_loaded(user, "profile") for user in users)

    async def test_single_constraint_with_several_paths_is_rejected(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        users = await ModelQuery(User).all(session)

        with pytest.raises(ValueError, match="use a mapping"):
            await load(session, users, ["posts", "roles"], lambda q: q.limit(1))

    async def test_empty_batch(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        await load(session, [], "posts")
