"""
Async HTTP client for the chat API.

Reads (`list_conversations`, `messages_between`) are idempotent and are
retried with exponential backoff on transient failures. Sends are never
retried: a retried send after a lost response could persist the message
twice, so the failure goes back to the caller instead.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from relay.core.exceptions import AuthError, ChatError, NotFoundError, TransientError, ValidationError

logger = logging.getLogger(__name__)


class ChatAPIClient:
    """Thin client over the `/chat` endpoints using a bearer identity token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport
        )

    async def __aenter__(self) -> "ChatAPIClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def list_conversations(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Return `{conversations, total, total_unread}`."""
        params = {"limit": limit} if limit else None
        return await self._request("GET", "/chat/conversations", retry=True, params=params)

    async def messages_between(
        self,
        peer_id: int,
        before: Optional[str] = None,
        after: Optional[str] = None,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """Return one page `{messages, has_more, oldest_cursor, newest_cursor}`."""
        params = {key: value for key, value in (("before", before), ("after", after), ("limit", limit)) if value}
        return await self._request("GET", f"/chat/messages/{peer_id}", retry=True, params=params or None)

    async def send_message(self, peer_id: int, text: Optional[str] = None, image: Optional[str] = None) -> Dict[str, Any]:
        """Persist a message and return it as stored by the server."""
        return await self._request(
            "POST", f"/chat/messages/{peer_id}", retry=False, json={"text": text, "image": image}
        )

    async def mark_read(self, sender_id: int) -> Dict[str, Any]:
        """Mark every message received from sender_id as read."""
        return await self._request("POST", "/chat/mark-read", retry=False, json={"sender_id": sender_id})

    async def _request(self, method: str, url: str, retry: bool, **kwargs) -> Dict[str, Any]:
        attempts = self.max_retries + 1 if retry else 1

        for attempt in range(attempts):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                error = TransientError(f"Request to {url} failed: {e.__class__.__name__}")
            else:
                if response.status_code < 500:
                    return self._unwrap(response)
                error = TransientError(f"Server returned {response.status_code} for {url}")

            if attempt < attempts - 1:
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(f"{error.message}; retrying in {delay:.2f}s ({attempt + 1}/{attempts - 1})")
                await asyncio.sleep(delay)
                continue

            raise error

    @staticmethod
    def _unwrap(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_success:
            return body.get("data", {})

        error = body.get("error", {}) if isinstance(body, dict) else {}
        message = error.get("message") or f"Request failed with status {response.status_code}"

        if response.status_code in (400, 422):
            raise ValidationError(message, field=error.get("field"))
        if response.status_code == 401:
            raise AuthError(message)
        if response.status_code == 404:
            raise NotFoundError(message)
        raise ChatError(message, status_code=response.status_code)
