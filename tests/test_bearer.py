"""Tests for Authorization header parsing and per-request authentication."""

from datetime import timedelta

import pytest

from tokenkeep.service.bearer import AccessTokenAuthenticator, BearerTokenExtractor
from tokenkeep.service.revocation import RevocationRegistry


class TestBearerTokenExtractor:
    @pytest.mark.parametrize(
        "header, expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer abc", "abc"),
            ("BEARER abc", "abc"),
            ("Bearer    abc", "abc"),
            ("  Bearer abc  ", "abc"),
            ("Bearer\tabc", "abc"),
        ],
    )
    def test_extracts_token(self, header, expected):
        assert BearerTokenExtractor().extract(header) == expected

    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer ", "Basic dXNlcjpwYXNz", "abc", "Bearer a b", "Bearerabc"],
    )
    def test_rejects_other_shapes(self, header):
        assert BearerTokenExtractor().extract(header) is None


@pytest.fixture
def authenticator(store, token_config, cache, codec, clock):
    registry = RevocationRegistry(store, token_config, cache=cache, codec=codec, clock=clock.now)
    return AccessTokenAuthenticator(codec, registry)


class TestAccessTokenAuthenticator:
    """Header -> token -> claims -> revocation check."""

    async def test_valid_token_yields_claims(self, authenticator, codec):
        result = await authenticator.authenticate(f"Bearer {codec.encode(7, 'admin')}")
        assert result.ok
        assert result.value.subject_id == 7
        assert result.value.role == "admin"

    async def test_missing_header(self, authenticator):
        assert (await authenticator.authenticate(None)).kind == "bad_request"

    async def test_wrong_scheme(self, authenticator, codec):
        result = await authenticator.authenticate(f"Token {codec.encode(7, 'admin')}")
        assert result.kind == "bad_request"

    async def test_expired_token(self, authenticator, codec, clock):
        header = f"Bearer {codec.encode(7, 'admin')}"
        clock.advance(hours=1)
        assert (await authenticator.authenticate(header)).kind == "unauthorized"

    async def test_revoked_token(self, authenticator, codec, clock):
        token = codec.encode(7, "admin")
        claims = codec.decode(token)
        await authenticator.registry.revoke(claims.jti, claims.expires_at)

        result = await authenticator.authenticate(f"Bearer {token}")
        assert result.kind == "unauthorized"
        assert result.error.message == "access token has been revoked"

    async def test_logout_then_reuse_fails(self, authenticator, codec):
        header = f"Bearer {codec.encode(7, 'admin')}"
        assert (await authenticator.authenticate(header)).ok
        assert (await authenticator.registry.revoke_access_token(header)).ok
        # The first check cached "not revoked"; drop it instead of waiting out the TTL
        await authenticator.registry.invalidate(codec.decode(header.split()[1]).jti)
        assert (await authenticator.authenticate(header)).kind == "unauthorized"

    async def test_other_tokens_unaffected_by_revocation(self, authenticator, codec, clock):
        revoked = codec.encode(7, "admin")
        kept = codec.encode(7, "admin")
        claims = codec.decode(revoked)
        await authenticator.registry.revoke(
            claims.jti, int((clock.now() + timedelta(hours=1)).timestamp())
        )
        assert (await authenticator.authenticate(f"Bearer {kept}")).ok
