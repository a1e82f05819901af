"""Shared schemas and clients for the warden test suite."""

import pytest
import pytest_asyncio

from warden.client.memory import MemoryClient
from warden.enhance import enhance
from warden.metadata.loader import SchemaLoader

BLOG_SCHEMA = """
authModel: User
models:
  User:
    fields:
      id: {type: Int, id: true, default: autoincrement()}
      email: {type: String, unique: true}
      role: {type: String, default: USER}
      posts: {type: Post, list: true, backLink: author}
    policy:
      create: true
      read: true
      update: {id: {$auth: id}}
      delete: {id: {$auth: id}}
  Post:
    fields:
      id: {type: Int, id: true, default: autoincrement()}
      title: {type: String, validate: {minLength: 1, maxLength: 50}}
      published: {type: Boolean, default: false}
      views: {type: Int, default: 0}
      author:
        type: User
        optional: true
        backLink: posts
        relation: {fields: [authorId], references: [id], onDelete: Cascade}
      authorId: Int?
      comments: {type: Comment, list: true, backLink: post}
    policy:
      create: {authorId: {$auth: id}}
      read: {OR: [{published: true}, {authorId: {$auth: id}}]}
      update: {authorId: {$auth: id}}
      postUpdate: {views: {gte: 0}}
      delete: {authorId: {$auth: id}}
  Comment:
    fields:
      id: {type: Int, id: true, default: autoincrement()}
      body: String
      post:
        type: Post
        backLink: comments
        relation: {fields: [postId], references: [id], onDelete: Cascade}
      postId: Int
    policy:
      all: true
"""

ASSET_SCHEMA = """
authModel: User
models:
  User:
    fields:
      id: {type: Int, id: true, default: autoincrement()}
      name: String
      assets: {type: Asset, list: true, backLink: owner}
    policy:
      all: true
  Asset:
    delegate: assetType
    fields:
      id: {type: Int, id: true, default: autoincrement()}
      assetType: String
      viewCount: {type: Int, default: 0}
      owner:
        type: User
        optional: true
        backLink: assets
        relation: {fields: [ownerId], references: [id], onDelete: Cascade}
      ownerId: Int?
    policy:
      all: {ownerId: {$auth: id}}
  Video:
    extends: Asset
    delegate: videoType
    fields:
      duration: Int
      videoType: String
  RatedVideo:
    extends: Video
    fields:
      rating: Int
  Image:
    extends: Asset
    fields:
      format: String
"""


@pytest.fixture
def blog():
    """Loaded blog schema (User, Post, Comment)."""
    return SchemaLoader().load_string(BLOG_SCHEMA)


@pytest.fixture
def assets():
    """Loaded polymorphic asset schema (Asset > Video > RatedVideo, Asset > Image)."""
    return SchemaLoader().load_string(ASSET_SCHEMA)


@pytest.fixture
def blog_raw(blog):
    return MemoryClient(blog.meta)


@pytest.fixture
def blog_for(blog, blog_raw):
    """Factory for policy-enhanced blog clients sharing one store."""

    def make(user):
        return enhance(blog_raw, blog.meta, blog.policy, user=user)

    return make


@pytest_asyncio.fixture
async def seeded_blog(blog_raw):
    """Two users and three posts, written without policies.

    Post 1: author 1, draft.  Post 2: author 1, published.  Post 3: author 2, draft.
    """
    users = blog_raw.model("User")
    await users.create({"data": {"email": "ann@example.com"}})
    await users.create({"data": {"email": "bob@example.com"}})
    posts = blog_raw.model("Post")
    await posts.create({"data": {"title": "Draft", "authorId": 1}})
    await posts.create({"data": {"title": "Hello", "authorId": 1, "published": True}})
    await posts.create({"data": {"title": "Bob's draft", "authorId": 2}})
    return blog_raw
