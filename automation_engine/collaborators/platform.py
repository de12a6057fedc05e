"""Client for the platform's internal REST API (subscribers, tags, publications)."""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from automation_engine.collaborators.base import (
    ExternalServiceError,
    SubscriberProvider,
    TagStore,
    raise_for_response,
    wrap_transport_error,
)
from automation_engine.core.models import SubscriberSnapshot

logger = logging.getLogger(__name__)


class PlatformClient(SubscriberProvider, TagStore):
    """
    HTTP client for subscriber lookups and tag mutations.

    Endpoints (relative to ``base_url``):
    - GET    /publications/{publication_id}
    - GET    /publications/{publication_id}/subscribers/{subscriber_id}
    - POST   /subscribers/{subscriber_id}/tags        {"tag": name}
    - DELETE /subscribers/{subscriber_id}/tags/{tag}
    """

    SERVICE = "platform"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, self.SERVICE) from e
        raise_for_response(response, self.SERVICE)
        return response

    async def get_subscriber(self, publication_id: str, subscriber_id: str) -> SubscriberSnapshot:
        response = await self._request(
            "GET",
            f"/publications/{quote(publication_id, safe='')}/subscribers/{quote(subscriber_id, safe='')}",
        )
        try:
            return SubscriberSnapshot.model_validate(response.json())
        except ValueError as e:
            raise self._malformed("subscriber", subscriber_id, e) from e

    async def get_publication(self, publication_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/publications/{quote(publication_id, safe='')}")
        try:
            data = response.json()
        except ValueError as e:
            raise self._malformed("publication", publication_id, e) from e
        if not isinstance(data, dict):
            raise self._malformed("publication", publication_id, f"expected an object, got {type(data).__name__}")

        return {
            "id": publication_id,
            "name": data.get("name"),
            "url": data.get("url"),
            "ownerEmail": data.get("ownerEmail"),
        }

    def _malformed(self, what: str, key: str, detail: object) -> ExternalServiceError:
        return ExternalServiceError(
            f"Malformed {what} payload for {key}: {detail}",
            service=self.SERVICE,
            retryable=False,
        )

    async def add_tag(self, subscriber_id: str, tag: str) -> None:
        try:
            await self._request(
                "POST",
                f"/subscribers/{quote(subscriber_id, safe='')}/tags",
                json={"tag": tag},
            )
        except ExternalServiceError as e:
            # Already tagged
            if e.status_code != 409:
                raise
        logger.debug(f"Added tag '{tag}' to subscriber {subscriber_id}")

    async def remove_tag(self, subscriber_id: str, tag: str) -> None:
        try:
            await self._request(
                "DELETE",
                f"/subscribers/{quote(subscriber_id, safe='')}/tags/{quote(tag, safe='')}",
            )
        except ExternalServiceError as e:
            # Tag was not present
            if e.status_code != 404:
                raise
        logger.debug(f"Removed tag '{tag}' from subscriber {subscriber_id}")

    async def close(self) -> None:
        await self._client.aclose()
