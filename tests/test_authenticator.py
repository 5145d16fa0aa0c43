"""Tests for credential resolution and the unified authenticator."""

import pytest

from gatehouse.service.authenticator import (
    ApiKeyCredential,
    SessionCookieCredential,
    resolve_credential,
)
from gatehouse.service.errors import (
    AuthenticationRequired,
    InvalidToken,
    UserInactive,
)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "Alice", roles=["USER"])


class TestResolveCredential:
    def test_bearer_header_wins_over_cookie(self):
        credential = resolve_credential("Bearer abc", "cookie-token")
        assert credential == ApiKeyCredential("abc")

    def test_cookie_when_no_header(self):
        assert resolve_credential(None, "cookie-token") == SessionCookieCredential("cookie-token")

    def test_non_bearer_header_falls_through_to_cookie(self):
        credential = resolve_credential("Basic dXNlcjpwdw==", "cookie-token")
        assert credential == SessionCookieCredential("cookie-token")

    def test_scheme_is_case_sensitive(self):
        assert resolve_credential("bearer abc", None) is None

    def test_nothing_presented(self):
        assert resolve_credential(None, None) is None
        assert resolve_credential("", "") is None


class TestApiKeyPath:
    async def test_valid_key(self, authenticator, api_keys, store, user):
        api_key, plaintext = api_keys.create_api_key(user.id)

        result = await authenticator.authenticate(ApiKeyCredential(plaintext))
        await authenticator.wait_for_background_tasks()

        assert result.method == "api_key"
        assert result.principal.id == user.id
        assert result.api_key_id == api_key.id
        assert result.session is None
        assert store.get_api_key(api_key.id).last_used_at is not None

    async def test_invalid_key_does_not_fall_back_to_cookie(self, authenticator, sessions, user):
        token = await sessions.create_session(user.id, user.roles)
        credential = resolve_credential("Bearer " + "a" * 128, token)

        with pytest.raises(InvalidToken) as excinfo:
            await authenticator.authenticate(credential)
        assert excinfo.value.clear_session_cookie is False

    async def test_touch_failure_does_not_fail_request(self, authenticator, api_keys, store, user):
        _, plaintext = api_keys.create_api_key(user.id)

        def _boom(*args, **kwargs):
            raise RuntimeError("db down")

        store.touch_api_key = _boom
        result = await authenticator.authenticate(ApiKeyCredential(plaintext))
        await authenticator.wait_for_background_tasks()
        assert result.principal.id == user.id


class TestSessionPath:
    async def test_no_credential(self, authenticator):
        with pytest.raises(AuthenticationRequired):
            await authenticator.authenticate(None)

    async def test_valid_session(self, authenticator, sessions, user):
        token = await sessions.create_session(user.id, user.roles)

        result = await authenticator.authenticate(SessionCookieCredential(token))

        assert result.method == "session"
        assert result.principal.email == "alice@example.com"
        assert result.session_token == token
        assert result.session.user_id == user.id

    async def test_unknown_session_clears_cookie(self, authenticator):
        with pytest.raises(InvalidToken) as excinfo:
            await authenticator.authenticate(SessionCookieCredential("f" * 64))
        assert excinfo.value.clear_session_cookie is True

    async def test_missing_user_removes_orphaned_session(self, authenticator, sessions, store, user):
        token = await sessions.create_session(user.id, user.roles)
        store.delete_user(user.id)

        with pytest.raises(AuthenticationRequired):
            await authenticator.authenticate(SessionCookieCredential(token))
        assert await sessions.get_session(token) is None

    async def test_inactive_user_keeps_session(self, authenticator, sessions, store, user):
        token = await sessions.create_session(user.id, user.roles)
        store.set_user_active(user.id, False)

        with pytest.raises(UserInactive):
            await authenticator.authenticate(SessionCookieCredential(token))
        assert await sessions.get_session(token) is not None

    async def test_principal_reflects_live_roles(self, authenticator, sessions, store, user):
        token = await sessions.create_session(user.id, user.roles)
        store.update_user_roles(user.id, ["ADMIN"])

        result = await authenticator.authenticate(SessionCookieCredential(token))
        assert result.principal.roles == ("ADMIN",)


class TestSessionOnly:
    async def test_api_key_is_ignored(self, authenticator, api_keys, user):
        _, plaintext = api_keys.create_api_key(user.id)
        with pytest.raises(AuthenticationRequired):
            await authenticator.authenticate_session_only(ApiKeyCredential(plaintext))

    async def test_session_accepted(self, authenticator, sessions, user):
        token = await sessions.create_session(user.id, user.roles)
        result = await authenticator.authenticate_session_only(SessionCookieCredential(token))
        assert result.method == "session"

    async def test_expired_session_rejected(self, authenticator, sessions, clock, user):
        token = await sessions.create_session(user.id, user.roles)
        clock.advance(86400)
        with pytest.raises(InvalidToken):
            await authenticator.authenticate_session_only(SessionCookieCredential(token))
