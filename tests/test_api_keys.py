"""Tests for API key issuance, validation and revocation."""

import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from gatehouse.service.api_keys import (
    API_KEY_PATTERN,
    ApiKeyManager,
    api_key_prefix,
    hash_api_key,
)
from gatehouse.service.errors import (
    AccountDisabled,
    NotFoundError,
    UserNotFound,
    ValidationError,
)


class ManualUtcClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def utc_clock():
    return ManualUtcClock()


@pytest.fixture
def timed_keys(store, utc_clock):
    return ApiKeyManager(store, clock=utc_clock)


@pytest.fixture
def user(store):
    return store.create_user("Jane.Doe-42@example.com", "Jane", roles=["USER"])


class TestKeyFormat:
    def test_prefix_from_email_local_part(self):
        assert api_key_prefix("Jane.Doe-42@example.com") == "janedoe"

    def test_prefix_truncated_to_twelve(self):
        assert api_key_prefix("averyveryverylongname@example.com") == "averyveryver"

    def test_prefix_may_be_empty(self):
        assert api_key_prefix("1234@example.com") == ""

    def test_created_key_matches_wire_format(self, api_keys, user):
        _, plaintext = api_keys.create_api_key(user.id)
        assert API_KEY_PATTERN.fullmatch(plaintext)
        prefix, body = plaintext.split("_")
        assert prefix == "janedoe"
        assert len(body) == 128

    def test_key_without_prefix(self, api_keys, store):
        owner = store.create_user("007@example.com")
        _, plaintext = api_keys.create_api_key(owner.id)
        assert "_" not in plaintext
        assert len(plaintext) == 128

    def test_only_hash_is_stored(self, api_keys, store, user):
        api_key, plaintext = api_keys.create_api_key(user.id, name="ci")
        stored = store.get_api_key(api_key.id)
        assert stored.key_hash == hashlib.sha256(plaintext.encode()).hexdigest()
        assert plaintext not in vars(stored).values()

    def test_fingerprint_is_last_six_hash_chars(self, api_keys, user):
        api_key, plaintext = api_keys.create_api_key(user.id)
        assert api_key.fingerprint == hash_api_key(plaintext)[-6:]


class TestCreateApiKey:
    def test_unknown_user(self, api_keys):
        with pytest.raises(UserNotFound):
            api_keys.create_api_key("missing-user")

    def test_inactive_user(self, api_keys, store, user):
        store.set_user_active(user.id, False)
        with pytest.raises(AccountDisabled):
            api_keys.create_api_key(user.id)

    def test_expiry_in_the_past_is_rejected(self, timed_keys, user, utc_clock):
        with pytest.raises(ValidationError):
            timed_keys.create_api_key(user.id, expires_at=utc_clock.now - timedelta(seconds=1))

    def test_naive_expiry_is_rejected(self, timed_keys, user):
        with pytest.raises(ValidationError):
            timed_keys.create_api_key(user.id, expires_at=datetime(2999, 1, 1))


class TestValidateApiKey:
    def test_round_trip(self, api_keys, user):
        api_key, plaintext = api_keys.create_api_key(user.id, name="ci")
        principal, found = api_keys.validate_api_key(plaintext)
        assert principal.id == user.id
        assert principal.email == user.email
        assert principal.roles == ("USER",)
        assert found.id == api_key.id

    def test_tampered_key_is_rejected(self, api_keys, user):
        _, plaintext = api_keys.create_api_key(user.id)
        last = plaintext[-1]
        tampered = plaintext[:-1] + ("0" if last != "0" else "1")
        assert api_keys.validate_api_key(tampered) is None

    @pytest.mark.parametrize(
        "candidate",
        [
            "",
            "not-a-key",
            "a" * 127,
            "A" * 128,
            "toolongprefixx_" + "a" * 128,
            "bad-prefix_" + "a" * 128,
            "a" * 128 + "\n",
            "ci_" + "a" * 128 + "\n",
            " " + "a" * 128,
        ],
    )
    def test_malformed_keys_are_rejected(self, candidate):
        store = MagicMock()
        keys = ApiKeyManager(store)

        assert keys.validate_api_key(candidate) is None
        store.find_active_api_key_by_hash.assert_not_called()

    def test_well_formed_unknown_key(self, api_keys):
        assert api_keys.validate_api_key("a" * 128) is None

    def test_expired_key_is_rejected(self, timed_keys, user, utc_clock):
        _, plaintext = timed_keys.create_api_key(
            user.id, expires_at=utc_clock.now + timedelta(hours=1)
        )
        assert timed_keys.validate_api_key(plaintext) is not None

        utc_clock.advance(hours=1)
        assert timed_keys.validate_api_key(plaintext) is None

    def test_inactive_owner_is_rejected(self, api_keys, store, user):
        _, plaintext = api_keys.create_api_key(user.id)
        store.set_user_active(user.id, False)
        assert api_keys.validate_api_key(plaintext) is None

    def test_store_failure_collapses_to_none(self, user):
        store = MagicMock()
        store.find_active_api_key_by_hash.side_effect = RuntimeError("db down")
        assert ApiKeyManager(store).validate_api_key("a" * 128) is None

    def test_prefix_is_not_checked_against_owner(self, api_keys, user):
        _, plaintext = api_keys.create_api_key(user.id)
        # The hash covers the prefix, so a swapped prefix is simply an unknown key
        swapped = "other_" + plaintext.split("_", 1)[1]
        assert api_keys.validate_api_key(swapped) is None


class TestBookkeeping:
    def test_update_last_used(self, timed_keys, store, user, utc_clock):
        api_key, _ = timed_keys.create_api_key(user.id)
        utc_clock.advance(minutes=5)
        timed_keys.update_last_used(api_key.id)
        assert store.get_api_key(api_key.id).last_used_at == utc_clock.now

    def test_update_last_used_swallows_errors(self):
        store = MagicMock()
        store.touch_api_key.side_effect = RuntimeError("db down")
        ApiKeyManager(store).update_last_used("key-1")

    def test_list_is_newest_first_and_hides_hash(self, timed_keys, user, utc_clock):
        first, _ = timed_keys.create_api_key(user.id, name="first")
        utc_clock.advance(seconds=1)
        second, _ = timed_keys.create_api_key(user.id, name="second")

        listed = timed_keys.list_user_api_keys(user.id)

        assert [meta.id for meta in listed] == [second.id, first.id]
        assert listed[0].key_fingerprint == second.fingerprint
        assert not hasattr(listed[0], "key_hash")

    def test_delete_requires_ownership(self, api_keys, store, user):
        api_key, plaintext = api_keys.create_api_key(user.id)
        stranger = store.create_user("stranger@example.com")

        with pytest.raises(NotFoundError):
            api_keys.delete_api_key(api_key.id, stranger.id)
        assert api_keys.validate_api_key(plaintext) is not None

        api_keys.delete_api_key(api_key.id, user.id)
        assert api_keys.validate_api_key(plaintext) is None

    def test_delete_unknown_key(self, api_keys, user):
        with pytest.raises(NotFoundError):
            api_keys.delete_api_key("missing", user.id)

    def test_delete_all_user_api_keys(self, api_keys, user):
        for _ in range(3):
            api_keys.create_api_key(user.id)
        assert api_keys.delete_all_user_api_keys(user.id) == 3
        assert api_keys.list_user_api_keys(user.id) == []

    def test_cleanup_expired(self, timed_keys, user, utc_clock):
        timed_keys.create_api_key(user.id, expires_at=utc_clock.now + timedelta(minutes=1))
        keeper, _ = timed_keys.create_api_key(user.id)
        utc_clock.advance(minutes=2)

        assert timed_keys.cleanup_expired_api_keys() == 1
        assert [meta.id for meta in timed_keys.list_user_api_keys(user.id)] == [keeper.id]

    def test_cleanup_never_raises(self):
        store = MagicMock()
        store.delete_expired_api_keys.side_effect = RuntimeError("db down")
        assert ApiKeyManager(store).cleanup_expired_api_keys() == 0
