"""
Unit tests for the subscription store helpers
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import store
from errors import UnknownCorrelationError
from models import Hook, OAuthCorrelation, User

pytestmark = [pytest.mark.unit]


class TestHooks:
    """Test hook creation and lookup"""

    def test_add_user_hook(self, test_db):
        hook = store.add_hook(test_db, "uhook0000001", ["alpha", "beta"], chats=[10, -20], user_id=1)

        assert hook.user_id == 1
        assert hook.chat_id is None
        assert hook.services == ["alpha", "beta"]
        assert hook.chats == [10, -20]
        assert store.get_user(test_db, 1) is not None

    def test_hooks_keep_insertion_order(self, test_db):
        for token in ("usecond00001", "ufirst000001", "uthird000001"):
            store.add_hook(test_db, token, ["alpha"], user_id=1)

        user = store.get_user(test_db, 1)
        assert [hook.token for hook in user.hooks] == ["usecond00001", "ufirst000001", "uthird000001"]

    def test_duplicate_token_rejected(self, test_db):
        store.add_hook(test_db, "uhook0000001", ["alpha"], user_id=1)

        with pytest.raises(ValueError):
            store.add_hook(test_db, "uhook0000001", ["beta"], chat_id=-100)

    def test_duplicate_token_rejected_by_schema(self, test_db):
        store.add_hook(test_db, "uhook0000001", ["alpha"], user_id=1)
        test_db.add(Hook(token="uhook0000001", services=["beta"], chats=[], position=1, user_id=1))

        with pytest.raises(IntegrityError):
            test_db.commit()
        test_db.rollback()

    def test_hook_needs_exactly_one_owner(self, test_db):
        with pytest.raises(ValueError):
            store.add_hook(test_db, "uhook0000001", ["alpha"])
        with pytest.raises(ValueError):
            store.add_hook(test_db, "uhook0000001", ["alpha"], user_id=1, chat_id=-100)

    def test_empty_token_rejected(self, test_db):
        with pytest.raises(ValueError):
            store.add_hook(test_db, "", ["alpha"], user_id=1)

    def test_lookup_is_split_by_owner(self, test_db):
        store.add_hook(test_db, "uhook0000001", ["alpha"], user_id=1)
        store.add_hook(test_db, "cchat0000001", ["alpha"], chat_id=-100)

        assert store.find_user_by_hook_token(test_db, "uhook0000001").id == 1
        assert store.find_chat_by_hook_token(test_db, "uhook0000001") is None
        assert store.find_chat_by_hook_token(test_db, "cchat0000001").id == -100
        assert store.find_user_by_hook_token(test_db, "cchat0000001") is None

    def test_remove_hook(self, test_db):
        store.add_hook(test_db, "uhook0000001", ["alpha"], user_id=1)

        assert store.remove_hook(test_db, "uhook0000001") is True
        assert store.remove_hook(test_db, "uhook0000001") is False
        assert store.find_user_by_hook_token(test_db, "uhook0000001") is None


class TestQueries:
    """Test store queries as returned by token handlers"""

    def test_mapping_query(self, test_db):
        for user_id in (3, 1, 2):
            store.get_or_create_user(test_db, user_id)
        store.set_user_timezone(test_db, 3, "UTC")
        store.set_user_timezone(test_db, 1, "UTC")

        assert [user.id for user in store.find_users(test_db, {"tz": "UTC"})] == [1, 3]

    def test_clause_query(self, test_db):
        for chat_id in (-1, -2, 5):
            store.get_or_create_chat(test_db, chat_id)

        from models import Chat
        assert [chat.id for chat in store.find_chats(test_db, Chat.id < 0)] == [-2, -1]

    def test_set_timezone_of_unknown_user(self, test_db):
        assert store.set_user_timezone(test_db, 42, "UTC") is False

    def test_user_data_is_detached(self, test_db):
        store.add_hook(test_db, "uhook0000001", ["alpha"], chats=[10], user_id=1)
        store.save_settings(test_db, 1, "alpha", {"branch": "main"})

        user_data = store.get_user_data(test_db, 1)
        user_data.settings["alpha"]["branch"] = "dev"

        assert [hook.token for hook in user_data.hooks] == ["uhook0000001"]
        assert store.get_user(test_db, 1).settings == {"alpha": {"branch": "main"}}
        assert store.get_user_data(test_db, 2) is None


class TestSettings:
    """Test per-service settings and credentials"""

    def test_save_protected_settings_merges(self, test_db):
        store.save_protected_settings(test_db, 1, "alpha", {"oauth_token": "t1"})
        store.save_protected_settings(test_db, 1, "alpha", {"oauth_refresh_token": "r1"})
        store.save_protected_settings(test_db, 1, "beta", {"oauth_token": "t2"})

        test_db.expire_all()
        user = test_db.query(User).filter(User.id == 1).one()
        assert user.protected == {
            "alpha": {"oauth_token": "t1", "oauth_refresh_token": "r1"},
            "beta": {"oauth_token": "t2"},
        }

    def test_save_settings(self, test_db):
        store.save_settings(test_db, 1, "alpha", {"branch": "main"})

        test_db.expire_all()
        assert store.get_user(test_db, 1).settings == {"alpha": {"branch": "main"}}


class TestCorrelation:
    """Test OAuth correlation records"""

    def test_create_and_get(self, test_db):
        auth_id = store.create_correlation(test_db, 1, "alpha", base_url="https://git.example.com")

        record = store.get_correlation(test_db, auth_id)
        assert record.key == "auth_" + auth_id
        assert record.user_id == 1
        assert record.service == "alpha"
        assert record.val == {"base_url": "https://git.example.com"}

    def test_unknown_id(self, test_db):
        assert store.get_correlation(test_db, "nope") is None
        assert store.get_correlation(test_db, "") is None

    def test_require_correlation(self, test_db):
        auth_id = store.create_correlation(test_db, 1, "alpha")
        orphan = store.create_correlation(test_db, 0, "alpha")

        assert store.require_correlation(test_db, auth_id).user_id == 1
        with pytest.raises(UnknownCorrelationError):
            store.require_correlation(test_db, orphan)
        with pytest.raises(UnknownCorrelationError):
            store.require_correlation(test_db, "nope")

    def test_expired_record_is_missing(self, test_db):
        auth_id = store.create_correlation(test_db, 1, "alpha", ttl=timedelta(minutes=5))

        later = datetime.utcnow() + timedelta(minutes=10)
        assert store.get_correlation(test_db, auth_id, now=later) is None
        assert store.get_correlation(test_db, auth_id) is not None

    def test_request_token_is_kept_with_base_url(self, test_db):
        auth_id = store.create_correlation(test_db, 1, "alpha", base_url="https://api.example.com")
        record = store.get_correlation(test_db, auth_id)

        store.set_correlation_request_token(test_db, record, {"oauth_token": "rt", "oauth_token_secret": "rs"})

        test_db.expire_all()
        record = store.get_correlation(test_db, auth_id)
        assert record.val == {
            "base_url": "https://api.example.com",
            "request_token": {"oauth_token": "rt", "oauth_token_secret": "rs"},
        }

    def test_purge_expired(self, test_db):
        store.create_correlation(test_db, 1, "alpha", ttl=timedelta(minutes=1))
        keep = store.create_correlation(test_db, 2, "alpha", ttl=timedelta(hours=2))

        deleted = store.purge_expired_correlations(test_db, now=datetime.utcnow() + timedelta(minutes=30))

        assert deleted == 1
        assert test_db.query(OAuthCorrelation).count() == 1
        assert store.get_correlation(test_db, keep) is not None


class TestProviders:
    """Test self-hosted OAuth provider records"""

    def test_save_and_update(self, test_db):
        store.save_oauth_provider(test_db, "p1", "alpha", "https://git.example.com", "id1", "secret1")
        provider = store.save_oauth_provider(test_db, "p1", "alpha", "https://git.example.com", "id2", "secret2")

        assert provider.client_id == "id2"
        assert store.find_oauth_provider(test_db, "p1").client_secret == "secret2"
        assert store.find_oauth_provider(test_db, "p2") is None
