"""
A2A Agent Card generation and verification

Generates this server's own AgentCard and resolves remote ones. Nothing in
an AgentCard is authenticated by the protocol, so every fetched card goes
through an ``AgentCardVerifier`` before the caller gets to act on it.
"""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from ..exceptions import UntrustedAgentCard, UpstreamUnavailable
from . import __protocol_version__, __version__
from .models import (
    AgentCapabilities,
    AgentCard,
    AgentCardSignature,
    AgentProvider,
    AgentSkill,
    HTTPAuthSecurityScheme,
    SecurityScheme,
    TransportProtocol,
)

if TYPE_CHECKING:
    from ..executor import AgentExecutor
    from ..settings import Settings

logger = logging.getLogger(__name__)

WELL_KNOWN_AGENT_CARD_PATH = "/.well-known/agent-card.json"

SignatureCheck = Callable[
    [AgentCard, AgentCardSignature], Union[bool, Awaitable[bool]]
]


class AgentCardGenerator:
    """
    Generates the AgentCard advertised by this server.

    Capabilities come from settings, skills from the configured executor.
    """

    def __init__(self, settings: "Settings", executor: "AgentExecutor"):
        self.settings = settings
        self.executor = executor

    def generate_agent_card(self) -> AgentCard:
        """
        Generate the AgentCard for the configured agent.

        Returns:
            Complete AgentCard with capabilities, security schemes and skills
        """
        card = AgentCard(
            protocolVersion=__protocol_version__,
            name=self.settings.agent_name,
            description=self.settings.agent_description or self.executor.description,
            url=self.settings.public_url,
            preferredTransport=TransportProtocol.JSONRPC,
            provider=AgentProvider(organization="a2a-runtime", url=self.settings.public_url),
            version=__version__,
            capabilities=self._generate_capabilities(),
            securitySchemes=self._generate_security_schemes(),
            security=[{"bearer": []}] if self.settings.auth_token else None,
            defaultInputModes=["text/plain"],
            defaultOutputModes=["text/plain"],
            skills=self._generate_agent_skills(),
            supportsAuthenticatedExtendedCard=True,
        )

        logger.info(
            "Generated AgentCard",
            extra={"agent_name": card.name, "skills_count": len(card.skills)},
        )
        return card

    def _generate_capabilities(self) -> AgentCapabilities:
        return AgentCapabilities(
            streaming=self.settings.streaming_enabled and self.executor.supports_streaming,
            pushNotifications=self.settings.push_notifications.enabled,
            stateTransitionHistory=True,
        )

    def _generate_security_schemes(self) -> Optional[Dict[str, SecurityScheme]]:
        if not self.settings.auth_token:
            return None
        return {
            "bearer": HTTPAuthSecurityScheme(
                scheme="bearer",
                description="Bearer token authentication",
            )
        }

    def _generate_agent_skills(self) -> List[AgentSkill]:
        skills = [skill.model_copy(deep=True) for skill in self.executor.skills]
        if skills:
            return skills
        return [
            AgentSkill(
                id=self.executor.name,
                name=self.executor.name,
                description=self.executor.description,
                tags=["general"],
                inputModes=["text/plain"],
                outputModes=["text/plain"],
            )
        ]


def canonical_card_bytes(card: AgentCard) -> bytes:
    """Serialize a card without its signatures, for signing or verification."""
    payload = card.model_dump(mode="json", exclude_none=True, by_alias=True, exclude={"signatures"})
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class AgentCardVerifier(ABC):
    """Decides whether a fetched AgentCard may be trusted."""

    @abstractmethod
    async def verify(self, card: AgentCard) -> None:
        """Raise ``UntrustedAgentCard`` when ``card`` must not be used."""


class AcceptUnverifiedCards(AgentCardVerifier):
    """Accept any card, logging that its contents are unauthenticated."""

    async def verify(self, card: AgentCard) -> None:
        logger.warning(
            "Accepting unverified agent card; name, url and capabilities are unauthenticated",
            extra={"agent_name": card.name, "url": card.url},
        )


class RequireSignedCards(AgentCardVerifier):
    """Only accept cards with at least one signature passing ``check``.

    ``check`` receives the card and one of its signatures and returns (or
    resolves to) ``True`` when the signature is valid. No signing scheme is
    imposed; :func:`canonical_card_bytes` gives the bytes most schemes sign.
    """

    def __init__(self, check: SignatureCheck):
        self.check = check

    async def verify(self, card: AgentCard) -> None:
        if not card.signatures:
            raise UntrustedAgentCard(
                f"Agent card for {card.name} is not signed",
                detail={"agentName": card.name, "url": card.url},
            )

        for signature in card.signatures:
            result = self.check(card, signature)
            if inspect.isawaitable(result):
                result = await result
            if result:
                logger.info("Agent card signature verified", extra={"agent_name": card.name})
                return

        raise UntrustedAgentCard(
            f"No signature on the agent card for {card.name} could be verified",
            detail={"agentName": card.name, "url": card.url, "signatures": len(card.signatures)},
        )


class AgentCardResolver:
    """Fetch a remote agent's card and run it through a verifier."""

    def __init__(
        self,
        base_url: str,
        verifier: Optional[AgentCardVerifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        card_path: str = WELL_KNOWN_AGENT_CARD_PATH,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.card_path = card_path
        self.verifier = verifier or AcceptUnverifiedCards()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), follow_redirects=True
        )

    @property
    def card_url(self) -> str:
        return f"{self.base_url}/{self.card_path.lstrip('/')}"

    async def get_agent_card(self) -> AgentCard:
        """Fetch, validate and verify the remote AgentCard."""
        url = self.card_url
        try:
            response = await self.http_client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to fetch agent card", extra={"url": url, "error": str(exc)})
            raise UpstreamUnavailable(f"Could not fetch agent card from {url}: {exc}") from exc

        try:
            card = AgentCard.model_validate(response.json())
        except ValueError as exc:
            raise UntrustedAgentCard(
                f"Agent card at {url} is malformed", detail={"url": url}
            ) from exc

        await self.verifier.verify(card)
        return card

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "AgentCardResolver":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
