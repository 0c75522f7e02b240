"""
Responder — Client for the external service that writes reply text.

The responder is given tenant, contact and inbound message and returns
the reply text plus conversation identifiers. Generating that text is not
this service's job; this module only calls it.
"""
from __future__ import annotations

import abc
import structlog
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ResponderConfig
from models.schemas import InboundMessage, ResponderReply

logger = structlog.get_logger()


class ResponderError(Exception):
    """Raised when the responder could not produce a reply."""


class Responder(abc.ABC):

    @abc.abstractmethod
    async def respond(self, message: InboundMessage) -> ResponderReply:
        ...

    async def close(self):
        pass


class RESTResponder(Responder):
    """
    Calls POST {base_url}{path} with the inbound message and expects
    {"text": ..., "conversation_id": ..., "message_id": ...} back.
    """

    def __init__(self, config: ResponderConfig):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, payload: dict) -> dict:
        client = await self._get_client()
        response = await client.post(self.config.path, json=payload)
        response.raise_for_status()
        return response.json()

    async def respond(self, message: InboundMessage) -> ResponderReply:
        payload = {
            "tenantId": message.tenant_id,
            "contact_pk": message.contact_pk,
            "email_lc": message.email_lc,
            "phone_e164": message.phone_e164,
            "text": message.text,
            "source": message.source.value,
            "conversation_id": message.conversation_id,
        }
        try:
            raw = await self._request(payload)
            return ResponderReply(
                text=raw["text"],
                conversation_id=raw.get("conversation_id") or message.conversation_id,
                message_id=raw.get("message_id"),
                metadata=raw.get("metadata", {}),
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("responder_call_failed",
                         tenant_id=message.tenant_id,
                         error=str(e))
            raise ResponderError(f"Responder failed: {e}") from e

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_responder(config: ResponderConfig = None) -> Optional[Responder]:
    """Factory: a REST responder when a base_url is configured, else None."""
    config = config or ResponderConfig()
    if config.base_url:
        return RESTResponder(config)
    logger.warning("no_responder_configured", reason="responder.base_url is empty")
    return None
