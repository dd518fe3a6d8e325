"""Tests for time-boxed single-use tokens."""

import pytest

from tokenkeep.service.security import looks_like_opaque_token
from tokenkeep.service.single_use import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    SingleUseSecureToken,
)


@pytest.fixture
def reset_tokens(store, clock):
    return SingleUseSecureToken(
        store, purpose=PASSWORD_RESET, window_minutes=60, clock=clock.now
    )


@pytest.fixture
def verify_tokens(store, clock):
    return SingleUseSecureToken(
        store, purpose=EMAIL_VERIFICATION, window_minutes=24 * 60, clock=clock.now
    )


class TestWindow:
    """Validity is bounded by the creation time plus the window."""

    def test_valid_inside_window(self, reset_tokens, clock):
        token = reset_tokens.issue("a@example.com")
        assert looks_like_opaque_token(token)
        clock.advance(minutes=59)
        assert reset_tokens.is_valid("a@example.com", token)

    def test_invalid_after_window(self, reset_tokens, clock):
        token = reset_tokens.issue("a@example.com")
        clock.advance(minutes=61)
        assert not reset_tokens.is_valid("a@example.com", token)
        assert reset_tokens.consume("a@example.com", token).kind == "not_found"

    def test_window_override(self, reset_tokens, clock):
        token = reset_tokens.issue("a@example.com")
        clock.advance(minutes=30)
        assert not reset_tokens.is_valid("a@example.com", token, window_minutes=15)

    def test_non_positive_window_is_rejected(self, store):
        with pytest.raises(ValueError):
            SingleUseSecureToken(store, purpose=PASSWORD_RESET, window_minutes=0)


class TestMatching:
    def test_wrong_token_or_key_is_invalid(self, reset_tokens):
        token = reset_tokens.issue("a@example.com")
        assert not reset_tokens.is_valid("a@example.com", "0" * 64)
        assert not reset_tokens.is_valid("b@example.com", token)
        assert not reset_tokens.is_valid("a@example.com", "")
        assert not reset_tokens.is_valid("", token)

    def test_reissue_replaces_previous_token(self, reset_tokens):
        first = reset_tokens.issue("a@example.com")
        second = reset_tokens.issue("a@example.com")
        assert first != second
        assert not reset_tokens.is_valid("a@example.com", first)
        assert reset_tokens.is_valid("a@example.com", second)

    def test_purposes_do_not_share_tokens(self, reset_tokens, verify_tokens):
        token = reset_tokens.issue("a@example.com")
        assert not verify_tokens.is_valid("a@example.com", token)
        verify_tokens.issue("a@example.com")
        assert reset_tokens.is_valid("a@example.com", token)


class TestConsume:
    """A token can be consumed once."""

    def test_consume_then_invalid(self, reset_tokens):
        token = reset_tokens.issue("a@example.com")
        assert reset_tokens.consume("a@example.com", token).ok
        assert not reset_tokens.is_valid("a@example.com", token)
        assert reset_tokens.consume("a@example.com", token).kind == "not_found"

    def test_lost_delete_race_fails(self, reset_tokens, store):
        token = reset_tokens.issue("a@example.com")

        original_delete = store.delete_single_use_token

        def delete_after_competitor(purpose, subject_key, value):
            # Another consumer removes the row between validation and delete
            original_delete(purpose, subject_key, value)
            return original_delete(purpose, subject_key, value)

        store.delete_single_use_token = delete_after_competitor
        assert reset_tokens.consume("a@example.com", token).kind == "not_found"

    def test_consume_on_success_disabled_keeps_token(self, store, clock):
        tokens = SingleUseSecureToken(
            store,
            purpose=PASSWORD_RESET,
            window_minutes=60,
            consume_on_success=False,
            clock=clock.now,
        )
        token = tokens.issue("a@example.com")
        assert tokens.consume("a@example.com", token).ok
        assert tokens.is_valid("a@example.com", token)

    def test_discard_drops_pending_tokens(self, reset_tokens):
        token = reset_tokens.issue("a@example.com")
        assert reset_tokens.discard("a@example.com") == 1
        assert not reset_tokens.is_valid("a@example.com", token)


class TestCleanup:
    def test_only_stale_records_of_this_purpose_are_removed(
        self, reset_tokens, verify_tokens, store, clock
    ):
        reset_tokens.issue("old@example.com")
        verify_tokens.issue("old@example.com")
        clock.advance(minutes=90)
        fresh = reset_tokens.issue("new@example.com")

        assert reset_tokens.cleanup_expired() == 1
        assert reset_tokens.is_valid("new@example.com", fresh)
        assert store.list_single_use_tokens(EMAIL_VERIFICATION, "old@example.com")
