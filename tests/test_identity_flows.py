"""Password reset, e-mail verification and login credential checks."""

from urllib.parse import parse_qs, urlparse

import pytest
from argon2 import PasswordHasher, Type

from tokenkeep.service.notifier import LoggingNotifier
from tokenkeep.service.password_reset import PasswordResetFlow
from tokenkeep.service.passwords import PasswordManager
from tokenkeep.service.refresh import RefreshTokenLifecycle
from tokenkeep.service.single_use import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    SingleUseSecureToken,
)
from tokenkeep.service.verification import EmailVerificationFlow

STRONG_PASSWORD = "NewPassw0rd!"


def _sent_token(notifier, index: int = -1) -> str:
    _, _, link = notifier.sent[index]
    return parse_qs(urlparse(link).query)["token"][0]


@pytest.fixture
def passwords(store):
    # Cheap parameters keep the suite fast; production uses library defaults
    hasher = PasswordHasher(time_cost=1, memory_cost=64, parallelism=1, type=Type.ID)
    return PasswordManager(store, hasher=hasher)


@pytest.fixture
def refresh(store, codec, token_config, clock):
    return RefreshTokenLifecycle(store, codec, token_config, clock=clock.now)


@pytest.fixture
def reset_flow(store, refresh, notifier, passwords, token_config, clock):
    tokens = SingleUseSecureToken(
        store, purpose=PASSWORD_RESET, window_minutes=60, clock=clock.now
    )
    return PasswordResetFlow(
        store, tokens, refresh, notifier, token_config.password_policy(), passwords
    )


@pytest.fixture
def verify_flow(store, notifier, clock):
    tokens = SingleUseSecureToken(
        store, purpose=EMAIL_VERIFICATION, window_minutes=24 * 60, clock=clock.now
    )
    return EmailVerificationFlow(store, tokens, notifier, clock=clock.now)


@pytest.fixture
def user(store, passwords):
    user = store.create_user("reset@example.com")
    passwords.save_password(user.id, "OldPassw0rd!")
    return user


class TestPasswordManager:
    def test_hash_is_argon2id(self, passwords):
        digest, algo = passwords.hash_password("Secret123!")
        assert algo == "argon2id"
        assert digest.startswith("$argon2id$")

    def test_authenticate_with_correct_password(self, passwords, user):
        result = passwords.authenticate("Reset@Example.com", "OldPassw0rd!")
        assert result.ok
        assert result.value.id == user.id

    @pytest.mark.parametrize(
        "email, password",
        [
            ("reset@example.com", "wrong"),
            ("reset@example.com", ""),
            ("nobody@example.com", "OldPassw0rd!"),
            ("", "OldPassw0rd!"),
        ],
    )
    def test_authenticate_failures_look_alike(self, passwords, user, email, password):
        result = passwords.authenticate(email, password)
        assert result.kind == "unauthorized"
        assert result.error.message == "invalid credentials"

    def test_inactive_user_cannot_authenticate(self, passwords, store, user):
        store.set_user_active(user.id, False)
        assert passwords.authenticate(user.email, "OldPassw0rd!").kind == "unauthorized"

    def test_user_without_password_cannot_authenticate(self, passwords, store):
        store.create_user("nopass@example.com")
        assert passwords.authenticate("nopass@example.com", "anything").kind == "unauthorized"


class TestPasswordReset:
    """Forgot-password flow."""

    def test_request_for_unknown_email_succeeds_silently(self, reset_flow, notifier):
        assert reset_flow.request_reset("ghost@example.com").ok
        assert notifier.sent == []

    def test_request_sends_link_with_token(self, reset_flow, notifier, user):
        assert reset_flow.request_reset("reset@example.com").ok
        kind, to_email, link = notifier.sent[0]
        assert kind == "password_reset"
        assert to_email == user.email
        assert link.startswith("https://app.example.com/reset-password?")

    def test_validate_does_not_consume(self, reset_flow, notifier, user):
        reset_flow.request_reset(user.email)
        token = _sent_token(notifier)
        assert reset_flow.validate_token(user.email, token).ok
        assert reset_flow.validate_token(user.email, token).ok
        assert reset_flow.validate_token(user.email, "0" * 64).kind == "not_found"

    def test_reset_changes_password_and_revokes_sessions(
        self, reset_flow, notifier, passwords, refresh, user
    ):
        refresh_token = refresh.issue(user.id)
        reset_flow.request_reset(user.email)
        token = _sent_token(notifier)

        assert reset_flow.reset_password(user.email, token, STRONG_PASSWORD).ok
        assert passwords.authenticate(user.email, STRONG_PASSWORD).ok
        assert not passwords.authenticate(user.email, "OldPassw0rd!").ok
        assert refresh.refresh(refresh_token).kind == "unauthorized"

    def test_token_cannot_be_used_twice(self, reset_flow, notifier, user):
        reset_flow.request_reset(user.email)
        token = _sent_token(notifier)
        assert reset_flow.reset_password(user.email, token, STRONG_PASSWORD).ok
        again = reset_flow.reset_password(user.email, token, "An0ther-Passw0rd")
        assert again.kind == "not_found"

    def test_weak_password_rejected_before_token_is_spent(
        self, reset_flow, notifier, user
    ):
        reset_flow.request_reset(user.email)
        token = _sent_token(notifier)

        weak = reset_flow.reset_password(user.email, token, "short")
        assert weak.kind == "validation_error"
        assert set(weak.error.detail["password"]) >= {"min_length", "uppercase", "digit", "special"}
        assert reset_flow.validate_token(user.email, token).ok

    def test_expired_token(self, reset_flow, notifier, user, clock):
        reset_flow.request_reset(user.email)
        token = _sent_token(notifier)
        clock.advance(minutes=61)
        assert reset_flow.reset_password(user.email, token, STRONG_PASSWORD).kind == "not_found"


class TestEmailVerification:
    """Verification flow, including repeat requests."""

    def test_verify_marks_user(self, verify_flow, notifier, store, user, clock):
        assert verify_flow.request_verification(user.email).ok
        token = _sent_token(notifier)

        assert verify_flow.verify(user.email, token).ok
        assert store.get_user(user.id).email_verified_at == clock.now()

    def test_verify_is_idempotent_for_verified_user(self, verify_flow, notifier, user):
        verify_flow.request_verification(user.email)
        token = _sent_token(notifier)
        assert verify_flow.verify(user.email, token).ok
        assert verify_flow.verify(user.email, token).ok
        assert verify_flow.verify(user.email, "garbage").ok

    def test_no_token_sent_to_verified_or_unknown_users(self, verify_flow, notifier, store, clock):
        store.create_user("done@example.com", email_verified_at=clock.now())
        assert verify_flow.request_verification("done@example.com").ok
        assert verify_flow.request_verification("ghost@example.com").ok
        assert notifier.sent == []

    def test_bad_token_for_unverified_user(self, verify_flow, user):
        assert verify_flow.verify(user.email, "0" * 64).kind == "not_found"

    def test_verification_link_expires_after_a_day(self, verify_flow, notifier, user, clock):
        verify_flow.request_verification(user.email)
        token = _sent_token(notifier)
        clock.advance(hours=24, minutes=1)
        assert verify_flow.verify(user.email, token).kind == "not_found"

    def test_reset_token_does_not_verify_email(
        self, verify_flow, reset_flow, notifier, user
    ):
        reset_flow.request_reset(user.email)
        reset_token = _sent_token(notifier)
        assert verify_flow.verify(user.email, reset_token).kind == "not_found"


class TestLoggingNotifier:
    def test_links_carry_email_and_token(self):
        notifier = LoggingNotifier("https://app.example.com/")
        link = notifier.link_for("email_verification", "a@example.com", "f" * 64)
        assert link.startswith("https://app.example.com/verify-email?")
        assert parse_qs(urlparse(link).query) == {"email": ["a@example.com"], "token": ["f" * 64]}

    def test_nothing_is_retained_after_delivery(self):
        notifier = LoggingNotifier("https://app.example.com")
        for _ in range(3):
            notifier.send_password_reset("a@example.com", "f" * 64)
            notifier.send_email_verification("a@example.com", "e" * 64)
        assert vars(notifier) == {"base_url": "https://app.example.com"}
