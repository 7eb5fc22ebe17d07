"""Tests for the in-memory revocation store."""

import threading

from authkeeper.logging import token_fingerprint


class TestRefreshRegistry:
    def test_registered_token_is_active(self, revocations, clock):
        revocations.register_refresh("r1", "acct-1", int(clock.now) + 60)
        assert revocations.is_refresh_active("r1")
        assert not revocations.is_refresh_active("unknown")

    def test_rotate_swaps_tokens(self, revocations, clock):
        exp = int(clock.now) + 60
        revocations.register_refresh("r1", "acct-1", exp)
        assert revocations.rotate_refresh("r1", "r2", "acct-1", exp)
        assert not revocations.is_refresh_active("r1")
        assert revocations.is_refresh_active("r2")

    def test_rotate_is_single_use(self, revocations, clock):
        exp = int(clock.now) + 60
        revocations.register_refresh("r1", "acct-1", exp)
        assert revocations.rotate_refresh("r1", "r2", "acct-1", exp)
        assert not revocations.rotate_refresh("r1", "r3", "acct-1", exp)
        assert not revocations.is_refresh_active("r3")

    def test_rotate_rejects_other_account(self, revocations, clock):
        exp = int(clock.now) + 60
        revocations.register_refresh("r1", "acct-1", exp)
        assert not revocations.rotate_refresh("r1", "r2", "acct-2", exp)
        assert revocations.is_refresh_active("r1")

    def test_revoke_account_drops_every_chain(self, revocations, clock):
        exp = int(clock.now) + 60
        revocations.register_refresh("a", "acct-1", exp)
        revocations.register_refresh("b", "acct-1", exp)
        revocations.register_refresh("c", "acct-2", exp)
        assert revocations.revoke_account("acct-1") == 2
        assert not revocations.is_refresh_active("a")
        assert not revocations.is_refresh_active("b")
        assert revocations.is_refresh_active("c")
        assert revocations.revoke_account("acct-1") == 0

    def test_revoke_refresh_single_entry(self, revocations, clock):
        revocations.register_refresh("a", "acct-1", int(clock.now) + 60)
        assert revocations.revoke_refresh("a") is True
        assert revocations.revoke_refresh("a") is False

    def test_expired_entry_is_inactive(self, revocations, clock):
        revocations.register_refresh("a", "acct-1", int(clock.now) + 10)
        clock.advance(11)
        assert not revocations.is_refresh_active("a")
        assert revocations.stats()["active_refresh"] == 0

    def test_raw_tokens_are_not_kept_as_keys(self, revocations, clock):
        revocations.register_refresh("raw-secret-token", "acct-1", int(clock.now) + 60)
        assert "raw-secret-token" not in revocations._refresh
        assert token_fingerprint("raw-secret-token") in revocations._refresh


class TestBlacklist:
    def test_blacklisted_token_is_visible(self, revocations, clock):
        assert not revocations.is_blacklisted("t1")
        revocations.blacklist("t1", "acct-1", int(clock.now) + 60)
        assert revocations.is_blacklisted("t1")

    def test_blacklist_visible_across_threads(self, revocations, clock):
        revocations.blacklist("t1", "acct-1", int(clock.now) + 60)
        seen = []
        thread = threading.Thread(target=lambda: seen.append(revocations.is_blacklisted("t1")))
        thread.start()
        thread.join()
        assert seen == [True]


class TestSweep:
    def test_sweep_evicts_by_token_expiry(self, revocations, clock):
        now = int(clock.now)
        revocations.register_refresh("old-refresh", "acct-1", now + 10)
        revocations.register_refresh("new-refresh", "acct-1", now + 1000)
        revocations.blacklist("old-access", "acct-1", now + 10)
        revocations.blacklist("new-access", "acct-1", now + 1000)
        clock.advance(20)

        assert revocations.sweep_expired() == 2
        stats = revocations.stats()
        assert stats == {"active_refresh": 1, "accounts": 1, "blacklisted": 1}
        assert revocations.is_blacklisted("new-access")
        assert not revocations.is_blacklisted("old-access")

    def test_sweep_with_nothing_expired(self, revocations, clock):
        revocations.register_refresh("r", "acct-1", int(clock.now) + 10)
        assert revocations.sweep_expired() == 0


class TestConcurrency:
    def test_concurrent_registrations_are_not_lost(self, revocations, clock):
        exp = int(clock.now) + 60
        barrier = threading.Barrier(8)

        def register(worker: int) -> None:
            barrier.wait()
            for i in range(50):
                revocations.register_refresh(f"w{worker}-{i}", f"acct-{worker}", exp)

        threads = [threading.Thread(target=register, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert revocations.stats()["active_refresh"] == 400

    def test_only_one_rotation_of_a_token_wins(self, revocations, clock):
        exp = int(clock.now) + 60
        revocations.register_refresh("r1", "acct-1", exp)
        barrier = threading.Barrier(10)
        results = []

        def rotate(n: int) -> None:
            barrier.wait()
            results.append(revocations.rotate_refresh("r1", f"next-{n}", "acct-1", exp))

        threads = [threading.Thread(target=rotate, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert revocations.stats()["active_refresh"] == 1
