"""HTTP client for the chat API, used as the send queue's remote sender."""

import logging
from typing import Any

import requests

from models.chat import ChatMessage, SendQueueEntry
from services.errors import SendFailedError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


class ChatApiClient:
    """Thin requests wrapper around the chat REST endpoints."""

    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        if access_token:
            self.session.headers["Authorization"] = f"Bearer {access_token}"

    def send_message(self, entry: SendQueueEntry) -> ChatMessage:
        """Send one queued entry.

        Retries are the send queue's job, so this makes a single attempt.

        Returns:
            The authoritative message as persisted by the server

        Raises:
            SendFailedError: On a transport error, a non-2xx status, or an
                unsuccessful response body
        """
        payload = {
            "room_id": entry.room_id,
            "user_id": entry.user_id,
            "username": entry.user_name or entry.user_id,
            "content": entry.content,
            "is_private": entry.is_private,
            "client_msg_id": entry.client_msg_id,
        }
        data = self._post("/api/v1/messages/send", payload)
        message = data.get("message")
        if not data.get("success") or not message:
            raise SendFailedError(data.get("error") or None)
        return ChatMessage.model_validate(message)

    def unsend_message(self, room_id: str, user_id: str, message_id: str) -> bool:
        data = self._post(
            "/api/v1/messages/unsend",
            {"room_id": room_id, "user_id": user_id, "message_id": message_id},
        )
        return bool(data.get("success"))

    def mark_received(self, room_id: str, user_id: str, message_id: str) -> bool:
        data = self._post(
            "/api/v1/messages/mark-received",
            {"room_id": room_id, "user_id": user_id, "message_id": message_id},
        )
        return bool(data.get("success"))

    def rejoin(self, room_id: str, user_id: str) -> dict[str, Any]:
        """Ask for missed messages. Returns the raw catch-up response."""
        return self._post(f"/api/v1/rooms/{room_id}/rejoin", {"user_id": user_id})

    # ---- Private methods ----

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            detail = None
            if e.response is not None:
                try:
                    body = e.response.json()
                    detail = body.get("error") or body.get("detail")
                except (ValueError, AttributeError):
                    detail = None
            logger.warning("POST %s failed: %s", path, e)
            raise SendFailedError(detail if isinstance(detail, str) else None) from e
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning("POST %s failed: %s", path, e)
            raise SendFailedError() from e
