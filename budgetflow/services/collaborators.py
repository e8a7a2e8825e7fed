"""HTTP client for the email and chat collaborator services."""

import logging
from typing import Any

import httpx

from budgetflow.config import settings

logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    """Raised when a collaborator call fails."""


class CollaboratorClient:
    """Async client for the email and chat services.

    Both collaborators accept JSON over HTTP. The email service queues
    stage-waiting notifications; the chat service broadcasts to a thread's
    subscribers.
    """

    def __init__(
        self,
        email_base_url: str | None = None,
        chat_base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the collaborator client.

        Args:
            email_base_url: Email service base URL. Defaults to settings.
            chat_base_url: Chat service base URL. Defaults to settings.
            timeout: Request timeout in seconds. Defaults to settings.
        """
        self.email_base_url = (email_base_url or settings.email_service_url).rstrip("/")
        self.chat_base_url = (chat_base_url or settings.chat_service_url).rstrip("/")
        self.timeout = timeout or settings.collaborator_timeout
        self._http_client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "CollaboratorClient":
        """Enter async context manager."""
        self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def _client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context manager."""
        if self._http_client is None:
            raise RuntimeError("CollaboratorClient must be used as an async context manager")
        return self._http_client

    async def _post(self, url: str, payload: Any) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Collaborator error: POST %s - %s", url, e.response.text)
            raise CollaboratorError(
                f"POST {url} failed: {e.response.status_code} - {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            logger.error("Collaborator request error: POST %s - %s", url, e)
            raise CollaboratorError(f"Request failed: {e}") from e
        if not response.content:
            return {}
        return response.json()  # type: ignore[no-any-return]

    async def enqueue_stage_waiting(
        self, payload: dict[str, Any] | list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Ask the email service to notify departments whose stage is now waiting.

        Args:
            payload: Either ``{"budgetIds": [...]}`` or a list of
                ``{"item_id": ..., "source_stage": ...}`` hints

        Returns:
            The email service's response body
        """
        return await self._post(f"{self.email_base_url}/stage-waiting", payload)

    async def broadcast_thread(self, thread_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Broadcast a payload to every subscriber of a chat thread."""
        return await self._post(f"{self.chat_base_url}/threads/{thread_id}/broadcast", payload)
