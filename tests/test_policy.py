"""
Tests for the policy enhancement (warden.policy.handler / warden.policy.guard)

Covers:
  - read filtering, relation filters and required to-one hoisting
  - create fast path, post-create checks and rollback
  - update pre-checks, nested creates, postUpdate rollback
  - delete, update_many, delete_many, count, upsert
  - validation failures and unreadable results
  - connectOrCreate, set, skipDuplicates, omitted fields and input checkers
  - field-level read and update guards
"""

from dataclasses import replace

import pytest

from warden.client.memory import MemoryClient
from warden.enhance import enhance
from warden.errors import DataValidationError, DeniedByPolicyError, NotFoundError, ResultNotReadableError
from warden.metadata.loader import SchemaLoader

ANN = {"id": 1}
BOB = {"id": 2}


def _titles(rows):
    return sorted(row["title"] for row in rows)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


class TestRead:
    @pytest.mark.asyncio
    async def test_author_sees_own_drafts(self, seeded_blog, blog_for):
        posts = await blog_for(ANN).model("Post").find_many()
        assert _titles(posts) == ["Draft", "Hello"]

    @pytest.mark.asyncio
    async def test_anonymous_sees_published(self, seeded_blog, blog_for):
        posts = await blog_for(None).model("Post").find_many()
        assert _titles(posts) == ["Hello"]

    @pytest.mark.asyncio
    async def test_guard_is_combined_with_where(self, seeded_blog, blog_for):
        posts = await blog_for(BOB).model("Post").find_many({"where": {"authorId": 1}})
        assert _titles(posts) == ["Hello"]

    @pytest.mark.asyncio
    async def test_unreadable_unique_is_not_found(self, seeded_blog, blog_for):
        db = blog_for(None)
        assert await db.model("Post").find_unique({"where": {"id": 1}}) is None
        with pytest.raises(NotFoundError):
            await db.model("Post").find_unique_or_throw({"where": {"id": 1}})

    @pytest.mark.asyncio
    async def test_count_and_aggregate_are_guarded(self, seeded_blog, blog_for):
        db = blog_for(None)
        assert await db.model("Post").count() == 1
        assert await db.model("Post").aggregate({"_count": True}) == {"_count": 1}

    @pytest.mark.asyncio
    async def test_every_only_considers_readable_rows(self, seeded_blog, blog_for):
        await seeded_blog.model("User").create({"data": {"email": "cy@example.com"}})
        users = await blog_for(BOB).model("User").find_many(
            {"where": {"posts": {"every": {"published": True}}}, "orderBy": {"id": "asc"}}
        )
        # ann's draft is invisible to bob, cy has no posts
        assert [u["id"] for u in users] == [1, 3]

    @pytest.mark.asyncio
    async def test_included_to_many_is_filtered(self, seeded_blog, blog_for):
        user = await blog_for(BOB).model("User").find_unique({"where": {"id": 1}, "include": {"posts": True}})
        assert _titles(user["posts"]) == ["Hello"]

    @pytest.mark.asyncio
    async def test_required_to_one_guard_applies_to_parent(self, seeded_blog, blog_for):
        comments = seeded_blog.model("Comment")
        await comments.create({"data": {"body": "on draft", "postId": 1}})
        await comments.create({"data": {"body": "on published", "postId": 2}})
        rows = await blog_for(None).model("Comment").find_many({"include": {"post": True}})
        assert [r["body"] for r in rows] == ["on published"]
        assert rows[0]["post"]["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_to_one_relations_read_with_true(self, seeded_blog, blog_for):
        posts = await blog_for(ANN).model("Post").find_many({"include": {"author": True}})
        assert _titles(posts) == ["Draft", "Hello"]
        assert {p["author"]["email"] for p in posts} == {"ann@example.com"}

        await seeded_blog.model("Comment").create({"data": {"body": "hidden", "postId": 1}})
        await seeded_blog.model("Comment").create({"data": {"body": "shown", "postId": 2}})
        rows = await blog_for(None).model("Comment").find_many({"select": {"id": True, "post": True}})
        assert [r["post"]["title"] for r in rows] == ["Hello"]

    @pytest.mark.asyncio
    async def test_omitted_fields(self):
        loaded = SchemaLoader().load_string(
            "models:\n"
            "  ApiKey:\n"
            "    fields:\n"
            "      id: {type: Int, id: true, default: autoincrement()}\n"
            "      name: String\n"
            "      token: {type: String, omit: true}\n"
            "    policy:\n"
            "      all: true\n"
        )
        raw = MemoryClient(loaded.meta)
        await raw.model("ApiKey").create({"data": {"name": "ci", "token": "s3cret"}})
        keys = enhance(raw, loaded.meta, loaded.policy).model("ApiKey")

        rows = await keys.find_many()
        assert rows[0]["name"] == "ci"
        assert "token" not in rows[0]
        selected = await keys.find_unique({"where": {"id": 1}, "select": {"token": True}})
        assert selected["token"] == "s3cret"


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_owner_lifecycle(self, seeded_blog, blog_for):
        ann, anonymous = blog_for(ANN), blog_for(None)
        created = await ann.model("Post").create({"data": {"title": "Mine", "authorId": 1}})
        assert created["published"] is False

        assert created["id"] in [p["id"] for p in await ann.model("Post").find_many()]
        assert created["id"] not in [p["id"] for p in await anonymous.model("Post").find_many()]

        await ann.model("Post").update({"where": {"id": created["id"]}, "data": {"published": True}})
        assert created["id"] in [p["id"] for p in await anonymous.model("Post").find_many()]

    @pytest.mark.asyncio
    async def test_anonymous_create_is_rejected(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(None).model("Post").create({"data": {"title": "x"}})

    @pytest.mark.asyncio
    async def test_input_decides_guard(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError) as exc_info:
            await blog_for(ANN).model("Post").create({"data": {"title": "x", "authorId": 2}})
        assert exc_info.value.code == "P2004"
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_post_create_check_rolls_back(self, seeded_blog, blog_for):
        # no authorId in the payload, so the guard is checked against the stored row
        with pytest.raises(DeniedByPolicyError):
            await blog_for(ANN).model("Post").create({"data": {"title": "Orphan"}})
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_select_is_honored(self, seeded_blog, blog_for):
        created = await blog_for(ANN).model("Post").create(
            {"data": {"title": "Mine", "authorId": 1}, "select": {"title": True}}
        )
        assert created == {"title": "Mine"}

    @pytest.mark.asyncio
    async def test_input_validation(self, seeded_blog, blog_for):
        with pytest.raises(DataValidationError):
            await blog_for(ANN).model("Post").create({"data": {"title": "", "authorId": 1}})

    @pytest.mark.asyncio
    async def test_nested_create_is_post_checked(self, seeded_blog, blog_for):
        # the nested post belongs to the new user, not the principal
        with pytest.raises(DeniedByPolicyError):
            await blog_for(ANN).model("User").create(
                {"data": {"email": "dee@example.com", "posts": {"create": {"title": "Nested"}}}}
            )
        assert await seeded_blog.model("User").count() == 2
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_nested_create_for_the_principal(self, blog_raw, blog_for):
        user = await blog_for(ANN).model("User").create(
            {
                "data": {"email": "ann@example.com", "posts": {"create": {"title": "First"}}},
                "include": {"posts": True},
            }
        )
        assert user["id"] == 1
        assert _titles(user["posts"]) == ["First"]

    @pytest.mark.asyncio
    async def test_create_many(self, seeded_blog, blog_for):
        posts = blog_for(ANN).model("Post")
        result = await posts.create_many({"data": [{"title": "a", "authorId": 1}, {"title": "b", "authorId": 1}]})
        assert result == {"count": 2}
        with pytest.raises(DeniedByPolicyError):
            await posts.create_many({"data": [{"title": "c", "authorId": 1}, {"title": "d", "authorId": 2}]})
        assert await seeded_blog.model("Post").count() == 5

    @pytest.mark.asyncio
    async def test_unreadable_result(self, blog, seeded_blog):
        guards = {**blog.policy.guard, "Post": {**blog.policy.guard["Post"], "read": False}}
        db = enhance(seeded_blog, blog.meta, replace(blog.policy, guard=guards), user=ANN)
        with pytest.raises(ResultNotReadableError):
            await db.model("Post").create({"data": {"title": "Hidden", "authorId": 1}})
        # the write itself went through
        assert await seeded_blog.model("Post").count() == 4

    @pytest.mark.asyncio
    async def test_create_many_checks_each_undecided_item(self, seeded_blog, blog_for):
        # the second item has no authorId so the guard can't be decided upfront
        with pytest.raises(DeniedByPolicyError):
            await blog_for(ANN).model("Post").create_many({"data": [{"title": "x", "authorId": 1}, {"title": "y"}]})
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_create_many_skip_duplicates(self, seeded_blog, blog_for):
        result = await blog_for(ANN).model("User").create_many(
            {"data": [{"email": "ann@example.com"}, {"email": "cat@example.com"}], "skipDuplicates": True}
        )
        assert result == {"count": 1}
        assert await seeded_blog.model("User").count() == 3

    @pytest.mark.asyncio
    async def test_connect_or_create_connects_existing(self, seeded_blog, blog_for):
        post = await blog_for(ANN).model("Post").create(
            {
                "data": {
                    "title": "Linked",
                    "author": {
                        "connectOrCreate": {"where": {"email": "ann@example.com"}, "create": {"email": "ann@example.com"}}
                    },
                }
            }
        )
        assert post["authorId"] == 1
        assert await seeded_blog.model("User").count() == 2

    @pytest.mark.asyncio
    async def test_connect_or_create_for_someone_else_rolls_back(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(ANN).model("Post").create(
                {
                    "data": {
                        "title": "Ghost",
                        "author": {
                            "connectOrCreate": {"where": {"email": "dan@example.com"}, "create": {"email": "dan@example.com"}}
                        },
                    }
                }
            )
        assert await seeded_blog.model("User").count() == 2
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_input_checker(self, blog, seeded_blog):
        policy = replace(blog.policy, input_checker={"Post": {"create": lambda data, ctx: data.get("title") == "ok"}})
        posts = enhance(seeded_blog, blog.meta, policy, user=ANN).model("Post")
        with pytest.raises(DeniedByPolicyError):
            await posts.create({"data": {"title": "nope", "authorId": 1}})
        created = await posts.create({"data": {"title": "ok", "authorId": 1}})
        assert created["title"] == "ok"
        assert await seeded_blog.model("Post").count() == 4


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_non_author_is_rejected(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(BOB).model("Post").update({"where": {"id": 1}, "data": {"title": "Mine now"}})
        post = await seeded_blog.model("Post").find_unique({"where": {"id": 1}})
        assert post["title"] == "Draft"

    @pytest.mark.asyncio
    async def test_missing_entity(self, seeded_blog, blog_for):
        with pytest.raises(NotFoundError):
            await blog_for(ANN).model("Post").update({"where": {"id": 99}, "data": {"title": "x"}})

    @pytest.mark.asyncio
    async def test_post_update_rule_rolls_back(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(ANN).model("Post").update({"where": {"id": 1}, "data": {"views": {"decrement": 5}}})
        post = await seeded_blog.model("Post").find_unique({"where": {"id": 1}})
        assert post["views"] == 0

    @pytest.mark.asyncio
    async def test_update_validation(self, seeded_blog, blog_for):
        with pytest.raises(DataValidationError):
            await blog_for(ANN).model("Post").update({"where": {"id": 1}, "data": {"title": "x" * 51}})

    @pytest.mark.asyncio
    async def test_nested_create_is_linked_and_checked(self, seeded_blog, blog_for):
        await blog_for(ANN).model("User").update(
            {"where": {"id": 1}, "data": {"posts": {"create": {"title": "Nested"}}}}
        )
        post = await seeded_blog.model("Post").find_first({"where": {"title": "Nested"}})
        assert post["authorId"] == 1

    @pytest.mark.asyncio
    async def test_nested_create_for_someone_else_rolls_back(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(ANN).model("User").update(
                {"where": {"id": 2}, "data": {"posts": {"create": {"title": "Sneaky"}}}}
            )
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_nested_update_checks_the_related_row(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(BOB).model("User").update(
                {"where": {"id": 1}, "data": {"posts": {"update": {"where": {"id": 1}, "data": {"title": "x"}}}}}
            )
        post = await seeded_blog.model("Post").find_unique({"where": {"id": 1}})
        assert post["title"] == "Draft"

    @pytest.mark.asyncio
    async def test_nested_update_outside_the_relation(self, seeded_blog, blog_for):
        # post 1 isn't one of bob's posts
        with pytest.raises(NotFoundError):
            await blog_for(BOB).model("User").update(
                {
                    "where": {"id": 2},
                    "data": {"email": "robert@example.com", "posts": {"update": {"where": {"id": 1}, "data": {"title": "x"}}}},
                }
            )
        user = await seeded_blog.model("User").find_unique({"where": {"id": 2}})
        assert user["email"] == "bob@example.com"

    @pytest.mark.asyncio
    async def test_update_many_only_touches_permitted_rows(self, seeded_blog, blog_for):
        result = await blog_for(ANN).model("Post").update_many({"data": {"published": True}})
        assert result == {"count": 2}
        bobs = await seeded_blog.model("Post").find_unique({"where": {"id": 3}})
        assert bobs["published"] is False

    @pytest.mark.asyncio
    async def test_upsert(self, seeded_blog, blog_for):
        posts = blog_for(ANN).model("Post")
        created = await posts.upsert(
            {"where": {"id": 99}, "create": {"title": "New", "authorId": 1}, "update": {"title": "Updated"}}
        )
        assert created["title"] == "New"
        updated = await posts.upsert(
            {"where": {"id": 1}, "create": {"title": "New", "authorId": 1}, "update": {"title": "Updated"}}
        )
        assert updated["title"] == "Updated"

    @pytest.mark.asyncio
    async def test_set_replaces_own_posts(self, seeded_blog, blog_for):
        await blog_for(ANN).model("User").update({"where": {"id": 1}, "data": {"posts": {"set": [{"id": 2}]}}})
        dropped = await seeded_blog.model("Post").find_unique({"where": {"id": 1}})
        kept = await seeded_blog.model("Post").find_unique({"where": {"id": 2}})
        assert dropped["authorId"] is None
        assert kept["authorId"] == 1

    @pytest.mark.asyncio
    async def test_set_cannot_take_other_posts(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(BOB).model("User").update({"where": {"id": 2}, "data": {"posts": {"set": [{"id": 1}]}}})
        ann_post = await seeded_blog.model("Post").find_unique({"where": {"id": 1}})
        bob_post = await seeded_blog.model("Post").find_unique({"where": {"id": 3}})
        assert ann_post["authorId"] == 1
        assert bob_post["authorId"] == 2


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_author_receives_deleted_entity(self, seeded_blog, blog_for):
        deleted = await blog_for(ANN).model("Post").delete({"where": {"id": 1}})
        assert deleted["title"] == "Draft"
        assert await seeded_blog.model("Post").count() == 2

    @pytest.mark.asyncio
    async def test_non_author_is_rejected(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(BOB).model("Post").delete({"where": {"id": 2}})
        assert await seeded_blog.model("Post").count() == 3

    @pytest.mark.asyncio
    async def test_missing_entity(self, seeded_blog, blog_for):
        with pytest.raises(NotFoundError):
            await blog_for(ANN).model("Post").delete({"where": {"id": 99}})

    @pytest.mark.asyncio
    async def test_delete_many_is_guarded(self, seeded_blog, blog_for):
        result = await blog_for(BOB).model("Post").delete_many({"where": {"published": False}})
        assert result == {"count": 1}
        assert _titles(await seeded_blog.model("Post").find_many()) == ["Draft", "Hello"]

    @pytest.mark.asyncio
    async def test_anonymous_delete_is_rejected_upfront(self, seeded_blog, blog_for):
        with pytest.raises(DeniedByPolicyError):
            await blog_for(None).model("Post").delete_many()


# ---------------------------------------------------------------------------
# Field policies
# ---------------------------------------------------------------------------

STAFF_SCHEMA = """
authModel: User
models:
  User:
    fields:
      id: {type: Int, id: true, default: autoincrement()}
      name: String
      salary:
        type: Int
        default: 0
        policy:
          read: {id: {$auth: id}}
          update: false
      bio:
        type: String
        optional: true
        policy:
          update: {id: {$auth: id}}
    policy:
      all: true
"""


async def _staff():
    loaded = SchemaLoader().load_string(STAFF_SCHEMA)
    raw = MemoryClient(loaded.meta)
    await raw.model("User").create({"data": {"name": "ann", "salary": 100}})
    await raw.model("User").create({"data": {"name": "bob", "salary": 200}})
    return raw, lambda user: enhance(raw, loaded.meta, loaded.policy, user=user).model("User")


class TestFieldPolicies:
    @pytest.mark.asyncio
    async def test_unreadable_field_is_stripped(self):
        _, users_for = await _staff()
        users = users_for(ANN)
        own = await users.find_unique({"where": {"id": 1}})
        other = await users.find_unique({"where": {"id": 2}})
        assert own["salary"] == 100
        assert other["name"] == "bob"
        assert "salary" not in other

    @pytest.mark.asyncio
    async def test_select_of_guarded_field_only(self):
        _, users_for = await _staff()
        users = users_for(ANN)
        assert await users.find_unique({"where": {"id": 1}, "select": {"salary": True}}) == {"salary": 100}
        assert await users.find_unique({"where": {"id": 2}, "select": {"salary": True}}) == {}

    @pytest.mark.asyncio
    async def test_locked_field_cannot_be_updated(self):
        raw, users_for = await _staff()
        with pytest.raises(DeniedByPolicyError):
            await users_for(ANN).update({"where": {"id": 1}, "data": {"salary": 1000}})
        assert (await raw.model("User").find_unique({"where": {"id": 1}}))["salary"] == 100

    @pytest.mark.asyncio
    async def test_field_update_guard(self):
        raw, users_for = await _staff()
        with pytest.raises(DeniedByPolicyError):
            await users_for(BOB).update({"where": {"id": 1}, "data": {"bio": "hacked"}})
        assert (await raw.model("User").find_unique({"where": {"id": 1}}))["bio"] is None

        updated = await users_for(ANN).update({"where": {"id": 1}, "data": {"bio": "hi", "name": "Ann"}})
        assert updated["bio"] == "hi"
        assert updated["name"] == "Ann"

    @pytest.mark.asyncio
    async def test_unguarded_fields_stay_updatable(self):
        raw, users_for = await _staff()
        await users_for(BOB).update({"where": {"id": 1}, "data": {"name": "Annie"}})
        assert (await raw.model("User").find_unique({"where": {"id": 1}}))["name"] == "Annie"

    @pytest.mark.asyncio
    async def test_update_many_skips_rows_failing_field_guard(self):
        raw, users_for = await _staff()
        assert await users_for(ANN).update_many({"data": {"bio": "same"}}) == {"count": 1}
        assert (await raw.model("User").find_unique({"where": {"id": 2}}))["bio"] is None
        with pytest.raises(DeniedByPolicyError):
            await users_for(ANN).update_many({"data": {"salary": 0}})
