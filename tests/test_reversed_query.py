"""
Tests for warden.query.utils.QueryUtils

Covers:
  - build_reversed_query() for foreign key, to-many and multi-level paths
  - parent id lookup when the parent filter isn't an id filter
  - mutation-payload shapes
  - compound unique key composition
"""

import textwrap

import pytest

from warden.errors import UnknownRequestError
from warden.metadata.loader import SchemaLoader
from warden.nested_write import NestingPathItem
from warden.query.utils import QueryUtils


def _path(meta, *steps):
    """Build a nesting path from (model, where, relation field name on the parent) triples."""
    items = []
    parent = None
    for model, where, via in steps:
        field = meta.require_field(parent, via) if via else None
        items.append(NestingPathItem(model=model, where=where, field=field))
        parent = model
    return items


class TestBuildReversedQuery:
    @pytest.mark.asyncio
    async def test_foreign_key_back_link(self, blog, blog_raw):
        path = _path(blog.meta, ("Post", {"id": 1}, None), ("Comment", {"id": 5}, "comments"))
        result = await QueryUtils(blog.meta).build_reversed_query(blog_raw, path)
        assert result == {"id": 5, "postId": 1}

    @pytest.mark.asyncio
    async def test_to_many_back_link_uses_some(self, blog, blog_raw):
        path = _path(blog.meta, ("Post", {"id": 2}, None), ("User", None, "author"))
        result = await QueryUtils(blog.meta).build_reversed_query(blog_raw, path)
        assert result == {"posts": {"some": {"id": 2}}}

    @pytest.mark.asyncio
    async def test_three_levels(self, blog, blog_raw):
        path = _path(
            blog.meta,
            ("User", {"id": 1}, None),
            ("Post", {"id": 2}, "posts"),
            ("Comment", {"id": 3}, "comments"),
        )
        result = await QueryUtils(blog.meta).build_reversed_query(blog_raw, path)
        assert result == {"id": 3, "postId": 2, "post": {"authorId": 1}}

    @pytest.mark.asyncio
    async def test_looks_up_parent_ids(self, blog, seeded_blog):
        path = _path(blog.meta, ("User", {"email": "bob@example.com"}, None), ("Post", {"id": 3}, "posts"))
        result = await QueryUtils(blog.meta).build_reversed_query(seeded_blog, path)
        assert result == {"id": 3, "authorId": 2}

    @pytest.mark.asyncio
    async def test_single_segment(self, blog, blog_raw):
        path = _path(blog.meta, ("Post", {"id": 7}, None))
        assert await QueryUtils(blog.meta).build_reversed_query(blog_raw, path) == {"id": 7}

    @pytest.mark.asyncio
    async def test_missing_field_in_path(self, blog, blog_raw):
        path = [NestingPathItem(model="Post", where={"id": 1}), NestingPathItem(model="Comment", where={"id": 1})]
        with pytest.raises(UnknownRequestError):
            await QueryUtils(blog.meta).build_reversed_query(blog_raw, path)


class TestMutationPayloadShape:
    @pytest.mark.asyncio
    async def test_to_many_back_link_is_not_wrapped(self, blog, blog_raw):
        path = _path(blog.meta, ("Post", {"id": 2}, None), ("User", None, "author"))
        result = await QueryUtils(blog.meta).build_reversed_query(blog_raw, path, for_mutation_payload=True)
        assert result == {"posts": {"id": 2}}

    @pytest.mark.asyncio
    async def test_direct_parent_keeps_relation(self, blog, blog_raw):
        path = _path(blog.meta, ("User", {"id": 1}, None), ("Post", {"id": 2}, "posts"))
        utils = QueryUtils(blog.meta)
        checked = await utils.build_reversed_query(blog_raw, path, for_mutation_payload=True)
        unchecked = await utils.build_reversed_query(
            blog_raw, path, for_mutation_payload=True, unchecked_operation=True
        )
        assert checked == {"id": 2, "author": {"id": 1}}
        assert unchecked == {"id": 2, "authorId": 1}


class TestUniqueKeys:
    @pytest.fixture
    def membership(self):
        return SchemaLoader().load_string(
            textwrap.dedent(
                """
                models:
                  Membership:
                    fields:
                      id: {type: Int, id: true}
                      orgId: Int
                      userId: Int
                    unique:
                      - [orgId, userId]
                """
            )
        )

    def test_compose_and_flatten(self, membership):
        utils = QueryUtils(membership.meta)
        composed = utils.compose_compound_unique_field("Membership", {"orgId": 1, "userId": 2})
        assert composed == {"orgId_userId": {"orgId": 1, "userId": 2}}
        assert utils.flatten_generated_unique_field("Membership", composed) == {"orgId": 1, "userId": 2}

    def test_partial_key_is_left_alone(self, membership):
        utils = QueryUtils(membership.meta)
        assert utils.compose_compound_unique_field("Membership", {"orgId": 1}) == {"orgId": 1}

    def test_entity_ids(self, blog):
        utils = QueryUtils(blog.meta)
        assert utils.make_id_selection("Post") == {"id": True}
        assert utils.get_entity_ids("Post", {"id": 4, "title": "x"}) == {"id": 4}


class TestTransaction:
    @pytest.mark.asyncio
    async def test_joins_running_transaction(self, blog, blog_raw):
        utils = QueryUtils(blog.meta)

        async def outer(tx):
            async def inner(db):
                return db

            return await utils.transaction(tx, inner), tx

        joined, tx = await utils.transaction(blog_raw, outer)
        assert joined is tx
