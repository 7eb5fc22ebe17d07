"""Tests for the session manager: login, rotation, logout, and authentication."""

import threading

import pytest

from authkeeper.service.errors import (
    AccountNotFound,
    AccountUnavailable,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    MalformedToken,
    TokenBlacklisted,
    TokenExpired,
)
from authkeeper.service.identity import IdentityResolver
from authkeeper.service.sessions import SessionManager
from authkeeper.storage.errors import StorageUnavailable
from authkeeper.storage.memory import MemoryStore
from authkeeper.storage.models import Account, AccountKind, LoginChannel, Role


@pytest.fixture
def alice(store, hasher):
    return store.save(Account.new(email="a@x.com", password_hash=hasher.hash("p1")))


class TestLogin:
    def test_login_returns_tokens_and_uuid(self, sessions, alice, codec):
        pair = sessions.login("a@x.com", "p1")
        assert pair.uuid == alice.uuid
        assert pair.token_type == "bearer"
        assert codec.parse(pair.access_token).uuid == alice.uuid
        assert sessions.revocations.is_refresh_active(pair.refresh_token)

    def test_wrong_password_and_unknown_account_look_the_same(self, sessions, alice):
        with pytest.raises(InvalidCredentials) as wrong:
            sessions.login("a@x.com", "wrong")
        with pytest.raises(InvalidCredentials) as unknown:
            sessions.login("nobody@example.com", "x")
        assert type(wrong.value) is type(unknown.value)
        assert wrong.value.message == unknown.value.message
        assert wrong.value.status_code == unknown.value.status_code == 401

    def test_passwordless_account_cannot_password_login(self, sessions):
        account = sessions.resolver.resolve_passwordless_login("+15550001234", "WHATSAPP")
        assert account.password_hash is None
        for attempt in ("", "anything", "None"):
            with pytest.raises(InvalidCredentials):
                sessions.login("+15550001234", attempt)

    def test_social_account_cannot_password_login(self, sessions):
        sessions.login_oauth("social@example.com", "FACEBOOK")
        with pytest.raises(InvalidCredentials):
            sessions.login("social@example.com", "guess")

    def test_login_by_username(self, sessions, resolver):
        resolver.signup(email="bob@example.com", password="Password123", username="bobby")
        assert sessions.login("bobby", "Password123").uuid

    def test_directory_failure_is_not_invalid_credentials(self, hasher, codec, revocations, clock):
        class DownStore(MemoryStore):
            def find_by_email(self, email):
                raise StorageUnavailable("timeout")

        store = DownStore()
        resolver = IdentityResolver(store, hasher)
        manager = SessionManager(store, hasher, codec, revocations, resolver, clock=clock)
        with pytest.raises(AccountUnavailable):
            manager.login("a@x.com", "p1")


class TestOtherLoginFlows:
    def test_oauth_login_tracks_refresh_token(self, sessions):
        pair = sessions.login_oauth("g@example.com", LoginChannel.GOOGLE)
        assert sessions.revocations.is_refresh_active(pair.refresh_token)
        assert sessions.refresh(pair.refresh_token).uuid == pair.uuid

    def test_passwordless_login_tracks_refresh_token(self, sessions, codec):
        pair = sessions.login_passwordless("+15550009876", "SMS")
        assert sessions.revocations.is_refresh_active(pair.refresh_token)
        assert codec.parse(pair.access_token).login_channel == LoginChannel.SMS


class TestRefresh:
    def test_end_to_end_scenario(self, sessions, alice):
        first = sessions.login("a@x.com", "p1")

        second = sessions.refresh(first.refresh_token)
        assert second.access_token != first.access_token
        assert second.refresh_token != first.refresh_token
        assert second.uuid == alice.uuid

        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(first.refresh_token)

        sessions.logout_access(second.access_token)
        assert sessions.is_blacklisted(second.access_token)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(second.refresh_token)

    def test_rotation_is_single_use(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        sessions.refresh(pair.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(pair.refresh_token)

    def test_replay_fails_like_unknown_token(self, sessions, alice, codec):
        pair = sessions.login("a@x.com", "p1")
        sessions.refresh(pair.refresh_token)
        unknown = codec.mint(alice, "refresh")
        errors = []
        for token in (pair.refresh_token, unknown, "not-a-token"):
            with pytest.raises(InvalidRefreshToken) as exc_info:
                sessions.refresh(token)
            errors.append((type(exc_info.value), exc_info.value.message))
        assert len(set(errors)) == 1

    def test_expired_refresh_token_fails(self, sessions, alice, clock):
        pair = sessions.login("a@x.com", "p1")
        clock.advance(7 * 24 * 60 * 60 + 1)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(pair.refresh_token)

    @pytest.mark.parametrize(
        "token",
        [
            "eyJhbGciOiJIUzI1NiJ9.eyJzdWIiOiJ4In0.\u00e9",
            "W1tbW1tbW1tbW1tbW1tbW1tb" * 60 + ".eyJzdWIiOiJ4In0.sig",
        ],
    )
    def test_hostile_token_is_invalid_refresh(self, sessions, token):
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(token)

    def test_access_token_cannot_refresh(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(pair.access_token)

    def test_refresh_reflects_role_change(self, sessions, store, alice, codec):
        pair = sessions.login("a@x.com", "p1")
        promoted = store.find_by_uuid(alice.uuid)
        promoted.role = Role.ADMIN
        store.save(promoted)
        refreshed = sessions.refresh(pair.refresh_token)
        assert codec.parse(refreshed.access_token).role == Role.ADMIN

    def test_deleted_account_cannot_refresh(self, sessions, store, alice):
        pair = sessions.login("a@x.com", "p1")
        store.delete(alice.id)
        with pytest.raises(AccountNotFound):
            sessions.refresh(pair.refresh_token)
        assert not sessions.revocations.is_refresh_active(pair.refresh_token)


class TestLogout:
    def test_logout_blacklists_immediately(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        assert not sessions.is_blacklisted(pair.access_token)
        sessions.logout_access(pair.access_token)
        assert sessions.is_blacklisted(pair.access_token)

    def test_logout_tears_down_every_session(self, sessions, alice):
        phone_session = sessions.login("a@x.com", "p1")
        laptop_session = sessions.login("a@x.com", "p1")
        sessions.logout_access(phone_session.access_token)
        for token in (phone_session.refresh_token, laptop_session.refresh_token):
            with pytest.raises(InvalidRefreshToken):
                sessions.refresh(token)

    def test_logout_does_not_touch_other_accounts(self, sessions, alice, resolver):
        resolver.signup(email="b@x.com", password="Password123")
        mine = sessions.login("a@x.com", "p1")
        theirs = sessions.login("b@x.com", "Password123")
        sessions.logout_access(mine.access_token)
        assert sessions.refresh(theirs.refresh_token).uuid == theirs.uuid

    def test_logout_with_garbage_token(self, sessions):
        with pytest.raises(MalformedToken):
            sessions.logout_access("garbage")

    def test_refresh_token_cannot_log_out_as_access(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        with pytest.raises(InvalidToken):
            sessions.logout_access(pair.refresh_token)
        assert not sessions.is_blacklisted(pair.refresh_token)
        assert sessions.revocations.is_refresh_active(pair.refresh_token)

    def test_logout_refresh_revokes_single_token(self, sessions, alice):
        one = sessions.login("a@x.com", "p1")
        two = sessions.login("a@x.com", "p1")
        assert sessions.logout_refresh(one.refresh_token) is True
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(one.refresh_token)
        assert sessions.refresh(two.refresh_token).uuid == alice.uuid

    def test_logout_racing_refresh_leaves_no_live_chain(self, sessions, alice):
        for _ in range(20):
            pairs = [sessions.login("a@x.com", "p1") for _ in range(4)]
            barrier = threading.Barrier(len(pairs) + 1)
            rotated = []

            def do_refresh(token):
                barrier.wait()
                try:
                    rotated.append(sessions.refresh(token))
                except InvalidRefreshToken:
                    pass

            def do_logout():
                barrier.wait()
                sessions.logout_access(pairs[0].access_token)

            threads = [threading.Thread(target=do_refresh, args=(p.refresh_token,)) for p in pairs]
            threads.append(threading.Thread(target=do_logout))
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            # Whatever the interleaving, no refresh token of the account survives logout.
            assert sessions.revocations.stats()["active_refresh"] == 0
            for pair in pairs + rotated:
                with pytest.raises(InvalidRefreshToken):
                    sessions.refresh(pair.refresh_token)


class TestAuthenticate:
    def test_valid_access_token(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        ctx = sessions.authenticate(pair.access_token)
        assert ctx.uuid == alice.uuid
        assert ctx.role == Role.USER
        assert ctx.kind == AccountKind.USER
        assert ctx.subject == alice.uuid

    def test_blacklisted_token_rejected(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        sessions.logout_access(pair.access_token)
        with pytest.raises(TokenBlacklisted):
            sessions.authenticate(pair.access_token)

    def test_expired_token_rejected(self, sessions, alice, clock):
        pair = sessions.login("a@x.com", "p1")
        clock.advance(20 * 60 + 1)
        with pytest.raises(TokenExpired):
            sessions.authenticate(pair.access_token)

    def test_refresh_token_is_not_an_access_token(self, sessions, alice):
        pair = sessions.login("a@x.com", "p1")
        with pytest.raises(InvalidToken):
            sessions.authenticate(pair.refresh_token)

    def test_deleted_account(self, sessions, store, alice):
        pair = sessions.login("a@x.com", "p1")
        store.delete(alice.id)
        with pytest.raises(AccountNotFound):
            sessions.authenticate(pair.access_token)

    def test_role_change_invalidates_access_token(self, sessions, store, alice):
        pair = sessions.login("a@x.com", "p1")
        demoted = store.find_by_uuid(alice.uuid)
        demoted.role = Role.FAN
        store.save(demoted)
        with pytest.raises(InvalidToken):
            sessions.authenticate(pair.access_token)

    def test_role_gate(self, sessions, store, hasher):
        store.save(Account.new(email="admin@x.com", role=Role.ADMIN, password_hash=hasher.hash("pw")))
        store.save(
            Account.new(
                kind=AccountKind.CREATOR, email="maker@x.com", password_hash=hasher.hash("pw")
            )
        )
        admin = sessions.login("admin@x.com", "pw")
        creator = sessions.login("maker@x.com", "pw")

        assert sessions.authenticate(admin.access_token, required_role="creator").role == Role.ADMIN
        assert sessions.authenticate(creator.access_token, required_role=Role.CREATOR)
        with pytest.raises(ForbiddenError):
            sessions.authenticate(creator.access_token, required_role="ROLE_ADMIN")

    def test_token_errors_are_authentication_errors(self):
        for exc in (TokenBlacklisted, TokenExpired, InvalidToken, InvalidRefreshToken):
            assert issubclass(exc, AuthenticationError)


class TestBearerExtraction:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer   abc", "abc"),
            ("Basic dXNlcjpwYXNz", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert SessionManager.extract_bearer(header) == expected


class TestSweep:
    def test_maybe_sweep_respects_interval(self, sessions, alice, clock):
        pair = sessions.login("a@x.com", "p1")
        sessions.logout_access(pair.access_token)
        assert sessions.revocations.stats()["blacklisted"] == 1

        clock.advance(100)
        assert sessions.maybe_sweep() == 0

        clock.advance(20 * 60)
        assert sessions.maybe_sweep() == 1
        assert sessions.revocations.stats()["blacklisted"] == 0

    def test_sweep_revocations_forces_eviction(self, sessions, alice, clock):
        sessions.login("a@x.com", "p1")
        clock.advance(7 * 24 * 60 * 60 + 1)
        assert sessions.sweep_revocations() == 1
        assert sessions.revocations.stats()["active_refresh"] == 0
