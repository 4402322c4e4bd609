"""
Tests for AuthorizationStateService.

Begin, validate and clear authorization attempts against the in-memory store.
"""

import pytest

from connect_core.errors import UnknownPlatformError
from connect_core.platforms import Platform
from connect_core.services.authorization_state import (
    AuthorizationStateService,
    RejectionReason,
)
from connect_core.services.pkce import PKCEGenerator
from connect_core.services.state_store import InMemoryStateStore
from connect_core.utils.crypto import CryptoService, generate_fernet_key


@pytest.fixture
def store(fake_clock):
    return InMemoryStateStore(default_ttl_seconds=600, clock=fake_clock)


@pytest.fixture
def service(store):
    return AuthorizationStateService(store, ttl_seconds=600)


class TestBeginAuthorization:
    @pytest.mark.asyncio
    async def test_begin_without_pkce(self, service, store):
        grant = await service.begin_authorization(Platform.QUICKBOOKS)

        assert len(grant.state) == 43
        assert grant.code_challenge is None
        assert grant.code_challenge_method is None
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_begin_with_pkce_returns_challenge(self, service):
        grant = await service.begin_authorization(Platform.HUBSPOT, use_pkce=True)

        assert grant.code_challenge_method == "S256"
        assert len(grant.code_challenge) == 43

    @pytest.mark.asyncio
    async def test_accepts_platform_strings(self, service):
        """Platform identifiers are matched case-insensitively."""
        grant = await service.begin_authorization("quickbooks")
        result = await service.validate_authorization(grant.state, "QUICKBOOKS")
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_unknown_platform_raises(self, service, store):
        with pytest.raises(UnknownPlatformError):
            await service.begin_authorization("XERO")
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_each_attempt_gets_a_fresh_state(self, service):
        first = await service.begin_authorization(Platform.QUICKBOOKS)
        second = await service.begin_authorization(Platform.QUICKBOOKS)
        assert first.state != second.state


class TestValidateAuthorization:
    @pytest.mark.asyncio
    async def test_valid_state_returns_matching_verifier(self, service):
        """The returned verifier hashes to the challenge handed out earlier."""
        grant = await service.begin_authorization(
            Platform.QUICKBOOKS,
            use_pkce=True,
            redirect_uri="http://localhost:13001/api/config/quickbooks/callback",
        )

        result = await service.validate_authorization(grant.state, Platform.QUICKBOOKS)

        assert result.valid is True
        assert PKCEGenerator.challenge_for(result.code_verifier) == grant.code_challenge
        assert (
            result.redirect_uri
            == "http://localhost:13001/api/config/quickbooks/callback"
        )

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, service):
        grant = await service.begin_authorization(Platform.QUICKBOOKS)

        first = await service.validate_authorization(grant.state, Platform.QUICKBOOKS)
        second = await service.validate_authorization(grant.state, Platform.QUICKBOOKS)

        assert first.valid is True
        assert second.valid is False
        assert second.reason == RejectionReason.NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, service):
        result = await service.validate_authorization("never-issued", Platform.STRIPE)
        assert result.valid is False
        assert result.reason == RejectionReason.NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, service, fake_clock):
        grant = await service.begin_authorization(Platform.QUICKBOOKS)
        fake_clock.advance(601)

        result = await service.validate_authorization(grant.state, Platform.QUICKBOOKS)

        assert result.valid is False
        assert result.reason == RejectionReason.NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_state_valid_at_ttl_boundary(self, service, fake_clock):
        grant = await service.begin_authorization(Platform.QUICKBOOKS)
        fake_clock.advance(600)

        result = await service.validate_authorization(grant.state, Platform.QUICKBOOKS)
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_platform_mismatch_consumes_attempt(self, service):
        """A cross-platform replay burns the state for its real platform too."""
        grant = await service.begin_authorization(Platform.QUICKBOOKS)

        mismatch = await service.validate_authorization(grant.state, Platform.HUBSPOT)
        retry = await service.validate_authorization(grant.state, Platform.QUICKBOOKS)

        assert mismatch.valid is False
        assert mismatch.reason == RejectionReason.PLATFORM_MISMATCH
        assert retry.reason == RejectionReason.NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_platform_raises(self, service):
        grant = await service.begin_authorization(Platform.QUICKBOOKS)
        with pytest.raises(UnknownPlatformError):
            await service.validate_authorization(grant.state, "")


class TestEncryptedVerifier:
    @pytest.mark.asyncio
    async def test_verifier_encrypted_at_rest(self, store):
        crypto = CryptoService(generate_fernet_key())
        service = AuthorizationStateService(store, crypto=crypto)

        grant = await service.begin_authorization(Platform.HUBSPOT, use_pkce=True)
        stored = store._entries[grant.state].value

        assert stored.verifier_encrypted is True
        assert PKCEGenerator.challenge_for(stored.code_verifier) != grant.code_challenge

        result = await service.validate_authorization(grant.state, Platform.HUBSPOT)
        assert PKCEGenerator.challenge_for(result.code_verifier) == grant.code_challenge

    @pytest.mark.asyncio
    async def test_undecryptable_verifier_rejected(self, store):
        """A verifier written under a retired key is treated as expired."""
        writer = AuthorizationStateService(
            store, crypto=CryptoService(generate_fernet_key())
        )
        reader = AuthorizationStateService(
            store, crypto=CryptoService(generate_fernet_key())
        )

        grant = await writer.begin_authorization(Platform.HUBSPOT, use_pkce=True)
        result = await reader.validate_authorization(grant.state, Platform.HUBSPOT)

        assert result.valid is False
        assert result.reason == RejectionReason.NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_rotated_key_still_decrypts(self, store):
        old_key = generate_fernet_key()
        writer = AuthorizationStateService(store, crypto=CryptoService(old_key))
        reader = AuthorizationStateService(
            store, crypto=CryptoService(generate_fernet_key(), [old_key])
        )

        grant = await writer.begin_authorization(Platform.QUICKBOOKS, use_pkce=True)
        result = await reader.validate_authorization(grant.state, Platform.QUICKBOOKS)

        assert result.valid is True


class TestClearAuthorization:
    @pytest.mark.asyncio
    async def test_clears_only_that_platform(self, service):
        qb_one = await service.begin_authorization(Platform.QUICKBOOKS)
        await service.begin_authorization(Platform.QUICKBOOKS)
        hubspot = await service.begin_authorization(Platform.HUBSPOT)

        removed = await service.clear_authorization(Platform.QUICKBOOKS)

        assert removed == 2
        cleared = await service.validate_authorization(
            qb_one.state, Platform.QUICKBOOKS
        )
        assert cleared.valid is False
        kept = await service.validate_authorization(hubspot.state, Platform.HUBSPOT)
        assert kept.valid is True

    @pytest.mark.asyncio
    async def test_clear_with_nothing_pending(self, service):
        assert await service.clear_authorization(Platform.STRIPE) == 0
