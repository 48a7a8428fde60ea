"""
bulkseo/services/collaborators.py

HTTP clients for the external collaborators.

Handles:
- Generation (POST {entityId, languages, model} -> {results: [...]})
- Persistence (POST {entityId, results, options} -> {ok, appliedLanguages})
- Entitlement source (GET -> {planKey, languageLimit, productLimit, trial})
- Token balance source (GET -> {balance, totalPurchased, totalUsed})

Non-2xx responses raise CollaboratorError carrying the status and the
decoded body so the classifier can read its flags.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Sequence
import logging

import httpx

from bulkseo.core.config import settings
from bulkseo.core.errors import CollaboratorError, ValidationError
from bulkseo.models.ledger import LedgerSnapshot
from bulkseo.models.subscription import Entitlement


logger = logging.getLogger(__name__)


def _decode(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text[:500]} if response.text else {}
    return body if isinstance(body, dict) else {"data": body}


class CollaboratorClient:
    """Shared request plumbing; pass `client` to reuse a transport (tests use MockTransport)."""

    name = "collaborator"

    def __init__(
        self,
        url: Optional[str],
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise ValidationError(f"{self.name} URL is not configured")
        self.url = url
        self.api_key = api_key if api_key is not None else settings.COLLABORATOR_API_KEY
        self.timeout = timeout or settings.COLLABORATOR_TIMEOUT_SECONDS
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def _request(self, method: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with self._session() as client:
            response = await client.request(method, self.url, json=json, headers=self._headers())

        body = _decode(response)
        if response.is_success:
            return body

        message = str(body.get("error") or body.get("message") or f"{self.name} returned {response.status_code}")
        logger.warning(
            "[collaborators] request failed",
            extra={"collaborator": self.name, "status": response.status_code, "error": message},
        )
        raise CollaboratorError(message, status=response.status_code, payload=body)


class GenerationClient(CollaboratorClient):
    name = "generation"

    def __init__(self, url: Optional[str] = None, **kwargs):
        super().__init__(url or settings.GENERATION_API_URL, **kwargs)

    async def generate(self, entity_id: str, languages: Sequence[str], model: Optional[str]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            {"entityId": entity_id, "languages": list(languages), "model": model},
        )


class PersistenceClient(CollaboratorClient):
    name = "persistence"

    def __init__(self, url: Optional[str] = None, **kwargs):
        super().__init__(url or settings.PERSISTENCE_API_URL, **kwargs)

    async def apply(self, entity_id: str, results: Sequence[Dict[str, Any]], options: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            {"entityId": entity_id, "results": list(results), "options": options},
        )


class EntitlementClient(CollaboratorClient):
    name = "entitlement"

    def __init__(self, url: Optional[str] = None, **kwargs):
        super().__init__(url or settings.ENTITLEMENT_API_URL, **kwargs)

    async def fetch(self) -> Entitlement:
        return Entitlement.from_payload(await self._request("GET"))


class TokenBalanceClient(CollaboratorClient):
    name = "token-balance"

    def __init__(self, url: Optional[str] = None, **kwargs):
        super().__init__(url or settings.TOKEN_BALANCE_API_URL, **kwargs)

    async def fetch(self) -> LedgerSnapshot:
        return LedgerSnapshot.model_validate(await self._request("GET"))
