"""
Tests for AgentCard generation, fetching and verification.
"""

import httpx
import pytest

from a2a_runtime.a2a.agent_card import (
    WELL_KNOWN_AGENT_CARD_PATH,
    AcceptUnverifiedCards,
    AgentCardGenerator,
    AgentCardResolver,
    RequireSignedCards,
    canonical_card_bytes,
)
from a2a_runtime.a2a.models import (
    AgentCard,
    AgentCardSignature,
    APIKeySecurityScheme,
    HTTPAuthSecurityScheme,
    MutualTLSSecurityScheme,
)
from a2a_runtime.exceptions import UntrustedAgentCard, UpstreamUnavailable
from a2a_runtime.sample_executors import CurrencyExecutor, HelloWorldExecutor

from helpers import SendOnlyExecutor, make_settings


def remote_card(**overrides) -> AgentCard:
    card = AgentCardGenerator(make_settings(), HelloWorldExecutor()).generate_agent_card()
    return card.model_copy(update=overrides)


def resolver_for(card_or_status, verifier=None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == WELL_KNOWN_AGENT_CARD_PATH
        if isinstance(card_or_status, int):
            return httpx.Response(card_or_status)
        if isinstance(card_or_status, dict):
            return httpx.Response(200, json=card_or_status)
        return httpx.Response(
            200, json=card_or_status.model_dump(mode="json", exclude_none=True)
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AgentCardResolver("https://agent.example/", verifier=verifier, http_client=client)


class TestAgentCardGenerator:
    def test_card_from_settings_and_executor(self):
        card = AgentCardGenerator(make_settings(), CurrencyExecutor()).generate_agent_card()

        assert card.name == "test-agent"
        assert card.description == "Agent under test"
        assert card.url == "http://testserver/a2a/rpc"
        assert card.protocolVersion == "0.3.0"
        assert card.capabilities.streaming is True
        assert card.capabilities.pushNotifications is False
        assert [skill.id for skill in card.skills] == ["convert_currency"]
        assert card.securitySchemes is None
        assert card.security is None

    def test_streaming_capability_follows_executor_and_settings(self):
        no_stream = AgentCardGenerator(make_settings(), SendOnlyExecutor()).generate_agent_card()
        disabled = AgentCardGenerator(
            make_settings(streaming_enabled=False), HelloWorldExecutor()
        ).generate_agent_card()

        assert no_stream.capabilities.streaming is False
        assert disabled.capabilities.streaming is False

    def test_executor_without_skills_gets_default_skill(self):
        card = AgentCardGenerator(make_settings(), SendOnlyExecutor()).generate_agent_card()
        assert [skill.id for skill in card.skills] == ["send-only"]

    def test_bearer_scheme_when_token_configured(self):
        card = AgentCardGenerator(
            make_settings(auth_token="secret"), HelloWorldExecutor()
        ).generate_agent_card()

        assert card.securitySchemes["bearer"].scheme == "bearer"
        assert card.security == [{"bearer": []}]

    def test_canonical_bytes_ignore_signatures(self):
        card = remote_card()
        signed = card.model_copy(
            update={"signatures": [AgentCardSignature(protected="p", signature="s")]}
        )
        assert canonical_card_bytes(card) == canonical_card_bytes(signed)


class TestAgentCardResolver:
    @pytest.mark.asyncio
    async def test_fetch_unverified_card(self):
        resolver = resolver_for(remote_card())

        card = await resolver.get_agent_card()

        assert card.name == "test-agent"
        assert resolver.card_url == "https://agent.example/.well-known/agent-card.json"
        assert isinstance(resolver.verifier, AcceptUnverifiedCards)

    @pytest.mark.asyncio
    async def test_remote_security_schemes_are_typed(self):
        payload = remote_card().model_dump(mode="json", exclude_none=True)
        payload["securitySchemes"] = {
            "key": {"type": "apiKey", "in": "header", "name": "X-API-Key"},
            "bearer": {"type": "http", "scheme": "bearer"},
            "mtls": {"type": "mutualTLS", "description": "client certificate"},
        }

        card = await resolver_for(payload).get_agent_card()

        schemes = card.securitySchemes
        assert isinstance(schemes["key"], APIKeySecurityScheme)
        assert schemes["key"].in_ == "header"
        assert isinstance(schemes["bearer"], HTTPAuthSecurityScheme)
        assert isinstance(schemes["mtls"], MutualTLSSecurityScheme)
        assert schemes["mtls"].description == "client certificate"

    @pytest.mark.asyncio
    async def test_http_failure_is_upstream_unavailable(self):
        with pytest.raises(UpstreamUnavailable):
            await resolver_for(500).get_agent_card()

    @pytest.mark.asyncio
    async def test_malformed_card_is_untrusted(self):
        with pytest.raises(UntrustedAgentCard):
            await resolver_for({"name": "impostor"}).get_agent_card()

    @pytest.mark.asyncio
    async def test_unsigned_card_rejected_when_signatures_required(self):
        verifier = RequireSignedCards(lambda card, signature: True)

        with pytest.raises(UntrustedAgentCard):
            await resolver_for(remote_card(), verifier).get_agent_card()

    @pytest.mark.asyncio
    async def test_signed_card_accepted_by_check(self):
        card = remote_card()
        expected = canonical_card_bytes(card).hex()
        signed = card.model_copy(
            update={"signatures": [AgentCardSignature(protected="hex", signature=expected)]}
        )

        async def check(candidate, signature):
            return signature.signature == canonical_card_bytes(candidate).hex()

        fetched = await resolver_for(signed, RequireSignedCards(check)).get_agent_card()
        assert fetched.signatures[0].signature == expected

    @pytest.mark.asyncio
    async def test_tampered_card_rejected(self):
        card = remote_card()
        signature = AgentCardSignature(protected="hex", signature=canonical_card_bytes(card).hex())
        tampered = card.model_copy(
            update={"url": "https://evil.example", "signatures": [signature]}
        )
        verifier = RequireSignedCards(
            lambda candidate, sig: sig.signature == canonical_card_bytes(candidate).hex()
        )

        with pytest.raises(UntrustedAgentCard):
            await resolver_for(tampered, verifier).get_agent_card()

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with AgentCardResolver("https://agent.example") as resolver:
            assert resolver.card_path == WELL_KNOWN_AGENT_CARD_PATH
        assert resolver.http_client.is_closed
