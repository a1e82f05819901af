"""
Tests for warden.delegate.DelegateProxyHandler

Covers:
  - creating concrete models writes one row per hierarchy level
  - reads through any level return flat entities
  - inherited fields in where/select/update payloads are relocated
  - deletes remove every level, including delegate dependents of lower levels
  - the policy layer on top of the delegate layer
"""

import textwrap

import pytest
import pytest_asyncio

from warden.client.memory import MemoryClient
from warden.enhance import enhance
from warden.errors import DeniedByPolicyError, UsageError
from warden.metadata.loader import SchemaLoader

RATED = {
    "id": 1,
    "assetType": "Video",
    "viewCount": 3,
    "ownerId": 1,
    "videoType": "RatedVideo",
    "duration": 100,
    "rating": 5,
}

IMAGE = {"id": 2, "assetType": "Image", "viewCount": 0, "ownerId": 2, "format": "png"}


@pytest_asyncio.fixture
async def asset_raw(assets):
    raw = MemoryClient(assets.meta)
    await raw.model("User").create({"data": {"name": "ann"}})
    await raw.model("User").create({"data": {"name": "bob"}})
    return raw


@pytest.fixture
def asset_db(assets, asset_raw):
    return enhance(asset_raw, assets.meta, kinds=["delegate"])


@pytest_asyncio.fixture
async def stocked(asset_db):
    """One rated video owned by ann and one image owned by bob."""
    await asset_db.model("RatedVideo").create({"data": {"duration": 100, "rating": 5, "viewCount": 3, "ownerId": 1}})
    await asset_db.model("Image").create({"data": {"format": "png", "ownerId": 2}})
    return asset_db


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_returns_flat_entity(self, asset_db):
        created = await asset_db.model("RatedVideo").create(
            {"data": {"duration": 100, "rating": 5, "viewCount": 3, "ownerId": 1}}
        )
        assert created == RATED

    @pytest.mark.asyncio
    async def test_writes_one_row_per_level(self, asset_db, asset_raw):
        await asset_db.model("RatedVideo").create({"data": {"duration": 100, "rating": 5, "viewCount": 3, "ownerId": 1}})
        assert await asset_raw.model("Asset").find_many() == [
            {"id": 1, "assetType": "Video", "viewCount": 3, "ownerId": 1}
        ]
        assert await asset_raw.model("Video").find_many() == [{"id": 1, "videoType": "RatedVideo", "duration": 100}]
        assert await asset_raw.model("RatedVideo").find_many() == [{"id": 1, "rating": 5}]

    @pytest.mark.asyncio
    async def test_single_level_sub_model(self, asset_db):
        created = await asset_db.model("Image").create({"data": {"format": "png", "ownerId": 2}})
        assert created == {**IMAGE, "id": 1}

    @pytest.mark.asyncio
    async def test_assigned_id_is_shared(self, asset_db, asset_raw):
        created = await asset_db.model("Image").create({"data": {"id": 10, "format": "gif"}})
        assert created["id"] == 10
        assert await asset_raw.model("Asset").find_many({"select": {"id": True}}) == [{"id": 10}]

    @pytest.mark.asyncio
    async def test_delegate_model_cannot_be_created(self, asset_db):
        with pytest.raises(UsageError, match="is a delegate"):
            await asset_db.model("Asset").create({"data": {"assetType": "Image"}})
        with pytest.raises(UsageError, match="is a delegate"):
            await asset_db.model("Video").create({"data": {"duration": 1}})

    @pytest.mark.asyncio
    async def test_nested_create_of_delegate_model(self, asset_db):
        with pytest.raises(UsageError, match="is a delegate"):
            await asset_db.model("User").create({"data": {"name": "cy", "assets": {"create": {"assetType": "Image"}}}})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["videoType", "assetType"])
    async def test_discriminator_is_managed(self, asset_db, field):
        with pytest.raises(UsageError, match="discriminator"):
            await asset_db.model("RatedVideo").create({"data": {"duration": 1, "rating": 1, field: "Other"}})

    @pytest.mark.asyncio
    async def test_auxiliary_relations_are_hidden(self, asset_db):
        with pytest.raises(UsageError, match="cannot be set directly"):
            await asset_db.model("RatedVideo").create(
                {"data": {"rating": 1, "delegate_aux_video": {"create": {"duration": 1}}}}
            )

    @pytest.mark.asyncio
    async def test_create_many(self, asset_db, asset_raw):
        result = await asset_db.model("RatedVideo").create_many(
            {"data": [{"duration": 1, "rating": 1, "ownerId": 1}, {"duration": 2, "rating": 2}]}
        )
        assert result == {"count": 2}
        assert await asset_raw.model("Asset").count() == 2
        assert await asset_raw.model("Video").count() == 2

    @pytest.mark.asyncio
    async def test_create_many_and_return(self, asset_db):
        created = await asset_db.model("Image").create_many_and_return(
            {"data": [{"format": "png"}, {"format": "gif"}]}
        )
        assert [(c["id"], c["assetType"], c["format"]) for c in created] == [(1, "Image", "png"), (2, "Image", "gif")]

    @pytest.mark.asyncio
    async def test_create_many_skip_duplicates(self, asset_db):
        with pytest.raises(UsageError, match="skipDuplicates"):
            await asset_db.model("Image").create_many({"data": [{"format": "png"}], "skipDuplicates": True})


# ---------------------------------------------------------------------------
# Find
# ---------------------------------------------------------------------------


class TestFind:
    @pytest.mark.asyncio
    async def test_base_model_returns_concrete_entities(self, stocked):
        assert await stocked.model("Asset").find_many({"orderBy": {"id": "asc"}}) == [RATED, IMAGE]

    @pytest.mark.asyncio
    async def test_intermediate_model(self, stocked):
        assert await stocked.model("Video").find_many() == [RATED]

    @pytest.mark.asyncio
    async def test_filter_on_inherited_field(self, stocked):
        videos = stocked.model("RatedVideo")
        assert await videos.find_many({"where": {"viewCount": {"gte": 3}}}) == [RATED]
        assert await videos.find_first({"where": {"ownerId": 2}}) is None
        assert await videos.find_first({"where": {"OR": [{"ownerId": 2}, {"rating": 5}]}}) == RATED

    @pytest.mark.asyncio
    async def test_select_inherited_field(self, stocked):
        found = await stocked.model("RatedVideo").find_first({"select": {"rating": True, "viewCount": True}})
        assert found == {"rating": 5, "viewCount": 3}

    @pytest.mark.asyncio
    async def test_find_unique(self, stocked):
        assert await stocked.model("Image").find_unique({"where": {"id": 2}}) == IMAGE
        assert await stocked.model("Image").find_unique({"where": {"id": 1}}) is None

    @pytest.mark.asyncio
    async def test_included_relation_is_flattened(self, stocked):
        user = await stocked.model("User").find_first({"where": {"id": 1}, "include": {"assets": True}})
        assert user == {"id": 1, "name": "ann", "assets": [RATED]}

    @pytest.mark.asyncio
    async def test_count(self, stocked):
        assert await stocked.model("Asset").count() == 2
        assert await stocked.model("RatedVideo").count({"where": {"viewCount": 3}}) == 1
        assert await stocked.model("RatedVideo").count({"where": {"viewCount": 4}}) == 0

    @pytest.mark.asyncio
    async def test_aggregation_over_base_fields(self, stocked):
        with pytest.raises(UsageError, match="not supported"):
            await stocked.model("RatedVideo").aggregate({"_sum": {"viewCount": True}})
        with pytest.raises(UsageError, match="not supported"):
            await stocked.model("RatedVideo").group_by({"by": ["viewCount"]})

    @pytest.mark.asyncio
    async def test_aggregation_over_own_fields(self, stocked):
        assert await stocked.model("RatedVideo").aggregate({"_sum": {"rating": True}}) == {"_sum": {"rating": 5}}


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_inherited_and_own_fields(self, stocked, asset_raw):
        updated = await stocked.model("RatedVideo").update(
            {"where": {"id": 1}, "data": {"viewCount": 10, "duration": 90, "rating": 4}}
        )
        assert updated == {**RATED, "viewCount": 10, "duration": 90, "rating": 4}
        assert (await asset_raw.model("Asset").find_unique({"where": {"id": 1}}))["viewCount"] == 10

    @pytest.mark.asyncio
    async def test_update_many_writes_base_rows(self, stocked, asset_raw):
        result = await stocked.model("RatedVideo").update_many({"where": {"rating": 5}, "data": {"viewCount": 0}})
        assert result == {"count": 1}
        assert (await asset_raw.model("Asset").find_unique({"where": {"id": 1}}))["viewCount"] == 0

    @pytest.mark.asyncio
    async def test_update_many_own_fields(self, stocked):
        assert await stocked.model("Image").update_many({"data": {"format": "jpg"}}) == {"count": 1}
        assert (await stocked.model("Image").find_first())["format"] == "jpg"

    @pytest.mark.asyncio
    async def test_upsert(self, stocked):
        videos = stocked.model("RatedVideo")
        create = {"duration": 5, "rating": 1}
        updated = await videos.upsert(
            {"where": {"id": 1}, "create": create, "update": {"viewCount": {"increment": 1}}}
        )
        assert updated["viewCount"] == 4

        created = await videos.upsert({"where": {"id": 9}, "create": create, "update": {"rating": 2}})
        assert created["id"] == 3
        assert created["videoType"] == "RatedVideo"
        assert created["rating"] == 1

    @pytest.mark.asyncio
    async def test_delegate_model_cannot_be_upserted(self, stocked):
        with pytest.raises(UsageError, match="doesn't support upsert"):
            await stocked.model("Asset").upsert({"where": {"id": 1}, "create": {}, "update": {}})


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_concrete_delete_removes_base_rows(self, stocked, asset_raw):
        assert await stocked.model("RatedVideo").delete({"where": {"id": 1}}) == RATED
        assert await asset_raw.model("Video").count() == 0
        assert await asset_raw.model("Asset").count() == 1

    @pytest.mark.asyncio
    async def test_base_delete_removes_concrete_rows(self, stocked, asset_raw):
        assert await stocked.model("Asset").delete({"where": {"id": 1}}) == RATED
        assert await asset_raw.model("RatedVideo").count() == 0
        assert await asset_raw.model("Video").count() == 0

    @pytest.mark.asyncio
    async def test_delete_many_on_inherited_field(self, stocked, asset_raw):
        assert await stocked.model("RatedVideo").delete_many({"where": {"viewCount": 3}}) == {"count": 1}
        assert await asset_raw.model("Asset").find_many({"select": {"id": True}}) == [{"id": 2}]

    @pytest.mark.asyncio
    async def test_owner_delete_cascades_through_levels(self, stocked, asset_raw):
        await stocked.model("User").delete({"where": {"id": 1}})
        assert await asset_raw.model("RatedVideo").count() == 0
        assert await asset_raw.model("Asset").count() == 1

    @pytest.mark.asyncio
    async def test_base_delete_reaches_dependents_of_lower_levels(self):
        loaded = SchemaLoader().load_string(
            textwrap.dedent(
                """
                models:
                  Content:
                    delegate: kind
                    fields:
                      id: {type: Int, id: true, default: autoincrement()}
                      kind: String
                  Album:
                    extends: Content
                    fields:
                      title: String
                      photos: {type: Photo, list: true, backLink: album}
                  Photo:
                    extends: Content
                    fields:
                      album:
                        type: Album
                        optional: true
                        backLink: photos
                        relation: {fields: [albumId], references: [id], onDelete: Cascade}
                      albumId: Int?
                """
            )
        )
        raw = MemoryClient(loaded.meta)
        db = enhance(raw, loaded.meta, kinds=["delegate"])
        album = await db.model("Album").create({"data": {"title": "Trip"}})
        await db.model("Photo").create({"data": {"albumId": album["id"]}})
        assert await raw.model("Content").count() == 2

        await db.model("Content").delete({"where": {"id": album["id"]}})
        assert await raw.model("Photo").count() == 0
        assert await raw.model("Content").count() == 0


# ---------------------------------------------------------------------------
# With access policies
# ---------------------------------------------------------------------------


class TestWithPolicies:
    @pytest.fixture
    def client_for(self, assets, asset_raw):
        def make(user):
            return enhance(asset_raw, assets.meta, assets.policy, user=user)

        return make

    @pytest.mark.asyncio
    async def test_owner_creates_and_reads(self, client_for):
        ann = client_for({"id": 1})
        created = await ann.model("RatedVideo").create({"data": {"duration": 100, "rating": 5, "ownerId": 1}})
        assert created == {**RATED, "viewCount": 0}
        assert await ann.model("Asset").find_many() == [created]

    @pytest.mark.asyncio
    async def test_others_see_nothing(self, client_for):
        await client_for({"id": 1}).model("Image").create({"data": {"format": "png", "ownerId": 1}})
        bob = client_for({"id": 2})
        assert await bob.model("Asset").find_many() == []
        assert await bob.model("Image").count() == 0

    @pytest.mark.asyncio
    async def test_create_for_someone_else_is_denied(self, client_for, asset_raw):
        with pytest.raises(DeniedByPolicyError):
            await client_for({"id": 2}).model("RatedVideo").create({"data": {"duration": 1, "rating": 1, "ownerId": 1}})
        assert await asset_raw.model("Asset").count() == 0
