"""Unit tests for refresh-token issue, rotation and revocation."""

import threading
from datetime import timedelta

import pytest

from tokenkeep.config import TokenConfig
from tokenkeep.service.refresh import RefreshTokenLifecycle
from tokenkeep.service.security import looks_like_opaque_token
from tokenkeep.storage.models import RefreshTokenRecord


@pytest.fixture
def lifecycle(store, codec, token_config, clock):
    return RefreshTokenLifecycle(store, codec, token_config, clock=clock.now)


@pytest.fixture
def user(store):
    return store.create_user("holder@example.com", role="admin")


class TestIssue:
    """Issuing refresh tokens."""

    def test_issued_tokens_are_distinct_opaque_hex(self, lifecycle, user):
        tokens = {lifecycle.issue(user.id) for _ in range(50)}
        assert len(tokens) == 50
        assert all(looks_like_opaque_token(token) for token in tokens)

    def test_issued_token_expires_after_refresh_ttl(self, lifecycle, store, user, clock):
        token = lifecycle.issue(user.id)
        record = store.refresh_tokens[token]
        assert record.expires_at == clock.now() + timedelta(days=7)
        assert record.revoked_at is None

    def test_issue_pair_matches_user(self, lifecycle, codec, user):
        pair = lifecycle.issue_pair(user.id, user.role)
        claims = codec.decode(pair.access_token)
        assert claims.subject_id == user.id
        assert claims.role == "admin"
        assert pair.token_type == "bearer"
        assert pair.expires_in == 3600

    def test_collision_is_retried(self, lifecycle, store, user, monkeypatch, clock):
        existing = RefreshTokenRecord.new(user.id, "a" * 64, 60, now=clock.now())
        store.insert_refresh_token(existing)
        generated = iter(["a" * 64, "b" * 64])
        monkeypatch.setattr(
            "tokenkeep.service.refresh.generate_token", lambda: next(generated)
        )
        assert lifecycle.issue(user.id) == "b" * 64


class TestRefresh:
    """Rotation on use."""

    def test_refresh_rotates_and_returns_new_pair(self, lifecycle, codec, store, user):
        original = lifecycle.issue(user.id)
        result = lifecycle.refresh(original)

        assert result.ok
        pair = result.value
        assert pair.refresh_token != original
        assert codec.decode(pair.access_token).subject_id == user.id
        assert store.refresh_tokens[original].revoked_at is not None
        assert store.refresh_tokens[pair.refresh_token].revoked_at is None

    def test_second_use_of_same_token_fails(self, lifecycle, user):
        original = lifecycle.issue(user.id)
        assert lifecycle.refresh(original).ok

        replay = lifecycle.refresh(original)
        assert not replay.ok
        assert replay.kind == "unauthorized"

    def test_rotated_token_can_itself_be_refreshed(self, lifecycle, user):
        first = lifecycle.refresh(lifecycle.issue(user.id)).value
        second = lifecycle.refresh(first.refresh_token)
        assert second.ok

    def test_expired_token_fails(self, lifecycle, user, clock):
        token = lifecycle.issue(user.id)
        clock.advance(days=7)
        assert lifecycle.refresh(token).kind == "unauthorized"

    @pytest.mark.parametrize("value", ["", "short", "G" * 64, "A" * 64, None])
    def test_malformed_token_fails_without_store_lookup(self, lifecycle, value):
        assert lifecycle.refresh(value).kind == "unauthorized"

    def test_unknown_token_fails(self, lifecycle):
        assert lifecycle.refresh("f" * 64).kind == "unauthorized"

    def test_deactivated_user_cannot_refresh(self, lifecycle, store, user):
        token = lifecycle.issue(user.id)
        store.set_user_active(user.id, False)
        assert lifecycle.refresh(token).kind == "unauthorized"
        # The token was not consumed by the failed attempt
        assert store.refresh_tokens[token].revoked_at is None

    def test_concurrent_refresh_has_exactly_one_winner(self, lifecycle, user):
        token = lifecycle.issue(user.id)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = lifecycle.refresh(token)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.ok) == 1
        assert all(r.kind == "unauthorized" for r in results if not r.ok)


class TestRevoke:
    def test_revoke_blocks_refresh(self, lifecycle, user):
        token = lifecycle.issue(user.id)
        assert lifecycle.revoke(token).ok
        assert lifecycle.refresh(token).kind == "unauthorized"

    def test_revoke_unknown_token_is_not_found(self, lifecycle):
        assert lifecycle.revoke("e" * 64).kind == "not_found"
        assert lifecycle.revoke("").kind == "not_found"

    def test_revoke_all_only_touches_that_subject(self, lifecycle, store, user):
        other = store.create_user("other@example.com")
        mine = [lifecycle.issue(user.id) for _ in range(3)]
        theirs = lifecycle.issue(other.id)

        result = lifecycle.revoke_all(user.id)

        assert result.ok
        assert result.value == 3
        assert all(lifecycle.refresh(token).kind == "unauthorized" for token in mine)
        assert lifecycle.refresh(theirs).ok

    def test_revoke_all_without_tokens_still_succeeds(self, lifecycle, user):
        result = lifecycle.revoke_all(user.id)
        assert result.ok
        assert result.value == 0


class TestCleanup:
    def test_only_expired_records_are_deleted(self, store, codec, clock, user):
        config = TokenConfig(secret="y" * 32, refresh_ttl_seconds=60)
        lifecycle = RefreshTokenLifecycle(store, codec, config, clock=clock.now)
        old = lifecycle.issue(user.id)
        clock.advance(seconds=30)
        fresh = lifecycle.issue(user.id)
        clock.advance(seconds=31)

        assert lifecycle.cleanup_expired() == 1
        assert old not in store.refresh_tokens
        assert fresh in store.refresh_tokens
