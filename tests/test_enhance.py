"""Tests for enhance(), user context validation, EnhancementOptions and transaction options."""

import logging

import pytest

from warden.client.memory import MemoryClient
from warden.client.proxy import EnhancedClient, ProxyHandler
from warden.config import EnhancementOptions, TransactionOptions
from warden.enhance import enhance, validate_user_context
from warden.errors import UnknownRequestError, UsageError
from warden.policy.types import PolicyDef


class TestOptions:
    def test_defaults(self):
        options = EnhancementOptions()
        assert options.log_queries is False
        assert options.transaction.as_kwargs() == {"isolation_level": None, "max_wait": None, "timeout": None}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("WARDEN_LOG_QUERIES", "Yes")
        monkeypatch.setenv("WARDEN_TX_ISOLATION_LEVEL", "Serializable")
        monkeypatch.setenv("WARDEN_TX_MAX_WAIT", "500")
        monkeypatch.delenv("WARDEN_TX_TIMEOUT", raising=False)
        options = EnhancementOptions.from_env()
        assert options.log_queries is True
        assert options.transaction == TransactionOptions(isolation_level="Serializable", max_wait=500.0)

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("WARDEN_TX_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="WARDEN_TX_TIMEOUT"):
            EnhancementOptions.from_env()


class TestEnhance:
    def test_unknown_kind(self, blog, blog_raw):
        with pytest.raises(UsageError, match="Unknown enhancement kinds"):
            enhance(blog_raw, blog.meta, blog.policy, kinds=["policy", "encryption"])

    def test_policy_requires_definition(self, blog, blog_raw):
        with pytest.raises(UsageError):
            enhance(blog_raw, blog.meta)

    def test_delegate_layer_needs_delegate_models(self, blog, blog_raw):
        assert enhance(blog_raw, blog.meta, kinds=["delegate"]) is blog_raw

    def test_layering(self, assets):
        raw = MemoryClient(assets.meta)
        db = enhance(raw, assets.meta, assets.policy, user={"id": 1})
        assert isinstance(db, EnhancedClient)
        assert db.name == "policy"
        assert db.inner.name == "delegate"
        assert db.inner.inner is raw

    def test_unknown_model(self, blog, blog_raw):
        db = enhance(blog_raw, blog.meta, blog.policy)
        with pytest.raises(UsageError):
            db.model("Invoice")

    @pytest.mark.asyncio
    async def test_transaction_handles_stay_enhanced(self, blog_for):
        db = blog_for(None)

        async def work(tx):
            assert isinstance(tx, EnhancedClient)
            assert tx.in_transaction
            return await tx.model("Post").find_many()

        assert await db.transaction(work) == []

    @pytest.mark.asyncio
    async def test_collaborator_failures_are_wrapped(self):
        class BrokenModel:
            model = "Post"

            async def find_many(self, args=None):
                raise RuntimeError("connection reset")

        class BrokenClient:
            in_transaction = False

            def model(self, name):
                return BrokenModel()

        with pytest.raises(UnknownRequestError) as exc_info:
            await ProxyHandler(BrokenClient(), "Post").find_many()
        assert isinstance(exc_info.value.cause, RuntimeError)


class RecordingClient(MemoryClient):
    """MemoryClient remembering the options of every transaction it opens."""

    def __init__(self, meta):
        super().__init__(meta)
        self.transactions = []

    async def transaction(self, fn, **kwargs):
        self.transactions.append(kwargs)
        return await super().transaction(fn, **kwargs)


class TestTransactionOptions:
    @pytest.mark.asyncio
    async def test_policy_transactions_use_configured_options(self, blog):
        raw = RecordingClient(blog.meta)
        await raw.model("User").create({"data": {"email": "ann@example.com"}})
        options = EnhancementOptions(
            transaction=TransactionOptions(isolation_level="Serializable", max_wait=500.0, timeout=2000.0)
        )
        db = enhance(raw, blog.meta, blog.policy, user={"id": 1}, options=options)
        await db.model("User").update({"where": {"id": 1}, "data": {"posts": {"create": {"title": "Nested"}}}})
        assert raw.transactions == [{"isolation_level": "Serializable", "max_wait": 500.0, "timeout": 2000.0}]

    @pytest.mark.asyncio
    async def test_explicit_transaction_options_pass_through(self, blog):
        raw = RecordingClient(blog.meta)
        db = enhance(raw, blog.meta, blog.policy)

        async def work(tx):
            return await tx.model("Post").count()

        assert await db.transaction(work, isolation_level="ReadCommitted", timeout=100.0) == 0
        assert raw.transactions == [{"isolation_level": "ReadCommitted", "max_wait": None, "timeout": 100.0}]


class TestUserContext:
    def test_missing_id(self, blog):
        with pytest.raises(UsageError, match="must have valid ID field 'id'"):
            validate_user_context(blog.meta, blog.policy, {"email": "ann@example.com"})

    def test_not_a_mapping(self, blog):
        with pytest.raises(UsageError):
            validate_user_context(blog.meta, blog.policy, ["id", 1])

    def test_anonymous(self, blog):
        validate_user_context(blog.meta, blog.policy, None)

    def test_missing_referenced_attribute_warns(self, blog, caplog):
        policy = PolicyDef(guard={"Post": {"read": {"authorId": {"$auth": "org.ownerId"}}}}, auth_model="User")
        with caplog.at_level(logging.WARNING, logger="warden.enhance"):
            validate_user_context(blog.meta, policy, {"id": 1})
        assert "org.ownerId" in caplog.text

    def test_enhance_rejects_invalid_user(self, blog, blog_raw):
        with pytest.raises(UsageError):
            enhance(blog_raw, blog.meta, blog.policy, user={"email": "ann@example.com"})
