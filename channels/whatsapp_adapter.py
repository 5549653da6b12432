"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Webhook payload signatures (X-Hub-Signature-256, HMAC-SHA256 of the raw body)
- Outbound: text, reply buttons, list, document, mark-as-read
- Inbound: text, interactive (button_reply, list_reply), template quick-reply
  buttons; status callbacks (sent, delivered, read) are ignored
- Mock mode when no access token is configured: nothing leaves the process
"""
from __future__ import annotations

import hashlib
import hmac
import re
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import ChannelAdapter, ChannelError
from config.settings import WhatsAppConfig
from models.schemas import ButtonOption, EventKind, InboundEvent, ListSection

logger = structlog.get_logger()

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20


def _is_retryable(exc: BaseException) -> bool:
    """Transport errors, 429 and 5xx are worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


class WhatsAppAdapter(ChannelAdapter):
    """
    WhatsApp Business Cloud API adapter.

    Every send is a POST to /{api_version}/{phone_number_id}/messages.
    Retryable failures are retried with exponential backoff; anything still
    failing surfaces as a ChannelError, which the base class turns into a
    `failed` result.
    """

    channel_name = "whatsapp"

    def __init__(self, config: WhatsAppConfig = None,
                 client: Optional[httpx.AsyncClient] = None,
                 max_attempts: int = 3, retry_wait=None):
        self.config = config or WhatsAppConfig()
        super().__init__(rate_per_second=self.config.rate_per_second, burst=self.config.burst)
        self._client = client
        self._owns_client = client is None
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, max=10)

    @property
    def mock_mode(self) -> bool:
        return not (self.config.access_token and self.config.phone_number_id)

    @property
    def messages_url(self) -> str:
        base = self.config.base_url.rstrip("/")
        return f"{base}/{self.config.api_version}/{self.config.phone_number_id}/messages"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._client

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            return challenge
        return None

    def verify_webhook_signature(self, body: bytes, signature_header: Optional[str]) -> bool:
        """Check X-Hub-Signature-256. Always passes when no app secret is configured."""
        if not self.config.app_secret:
            return True
        if not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(
            self.config.app_secret.encode(), body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(f"sha256={expected}", signature_header)

    # ── Transport ─────────────────────────────────────────────

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.mock_mode:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_mock_send", to=payload.get("to"),
                        type=payload.get("type", payload.get("status")), msg_id=msg_id)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        client = self._get_client()
        headers = {
            "Authorization": f"Bearer {self.config.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(self.messages_url, json=payload, headers=headers)
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise ChannelError(
                f"Graph API returned {code}: {e.response.text[:300]}",
                self.channel_name, retryable=_is_retryable(e), status_code=code,
            ) from e
        except httpx.HTTPError as e:
            raise ChannelError(f"Graph API request failed: {e}", self.channel_name,
                               retryable=True) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        messages = data.get("messages") or [{}]
        return {"status": "sent", "channel_message_id": messages[0].get("id", "")}

    # ── Send ──────────────────────────────────────────────────

    def _envelope(self, to: str, kind: str, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self._normalize_phone(to),
            "type": kind,
            kind: body,
        }

    async def _do_send_text(self, to: str, body: str) -> dict[str, Any]:
        return await self._post(self._envelope(to, "text", {"body": body, "preview_url": True}))

    async def _do_send_buttons(self, to: str, body: str,
                               options: list[ButtonOption]) -> dict[str, Any]:
        if len(options) > MAX_BUTTONS:
            logger.warning("whatsapp_buttons_truncated", to=to, requested=len(options))
        buttons = [
            {"type": "reply", "reply": {"id": o.id, "title": o.title[:MAX_BUTTON_TITLE]}}
            for o in options[:MAX_BUTTONS]
        ]
        return await self._post(self._envelope(to, "interactive", {
            "type": "button",
            "body": {"text": body},
            "action": {"buttons": buttons},
        }))

    async def _do_send_list(self, to: str, body: str, button_text: str,
                            sections: list[ListSection]) -> dict[str, Any]:
        return await self._post(self._envelope(to, "interactive", {
            "type": "list",
            "body": {"text": body},
            "action": {
                "button": button_text,
                "sections": [s.model_dump() for s in sections],
            },
        }))

    async def _do_send_document(self, to: str, url: str, caption: str,
                                filename: str) -> dict[str, Any]:
        return await self._post(self._envelope(to, "document", {
            "link": url,
            "caption": caption,
            "filename": filename or "document.pdf",
        }))

    async def _do_mark_read(self, message_id: str) -> dict[str, Any]:
        return await self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        })

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Extract every supported inbound message from a Cloud API webhook payload."""
        events: list[InboundEvent] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts") or []
                }
                # Status updates (delivered/read) carry no messages
                for msg in value.get("messages") or []:
                    event = self._parse_message(msg, names)
                    if event:
                        events.append(event)
        return events

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundEvent]:
        sender = msg.get("from", "")
        msg_type = msg.get("type", "")
        fields: dict[str, Any] = {}

        if msg_type == "text":
            fields = {"kind": EventKind.TEXT,
                      "text": self._sanitizer.sanitize((msg.get("text") or {}).get("body", ""))}

        elif msg_type == "interactive":
            interactive = msg.get("interactive") or {}
            itype = interactive.get("type", "")
            if itype == "button_reply":
                fields = {"kind": EventKind.BUTTON,
                          "button_id": (interactive.get("button_reply") or {}).get("id", "")}
            elif itype == "list_reply":
                fields = {"kind": EventKind.LIST,
                          "list_id": (interactive.get("list_reply") or {}).get("id", "")}

        elif msg_type == "button":
            # Quick-reply button on a template message
            button = msg.get("button") or {}
            fields = {"kind": EventKind.BUTTON,
                      "button_id": button.get("payload") or button.get("text", "")}

        if not fields:
            logger.info("inbound_type_unsupported", sender=sender, type=msg_type,
                        message_id=msg.get("id", ""))
            return None

        try:
            return InboundEvent(
                address=sender,
                message_id=msg.get("id", ""),
                timestamp=self._parse_timestamp(msg.get("timestamp")),
                sender_name=names.get(sender, ""),
                **fields,
            )
        except ValidationError as e:
            logger.warning("inbound_event_malformed", sender=sender, type=msg_type,
                           message_id=msg.get("id", ""), error=str(e))
            return None

    @staticmethod
    def _parse_timestamp(raw: Any) -> datetime:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return datetime.now(timezone.utc)

    # ── Health / lifecycle ────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {
            **base,
            "mock_mode": self.mock_mode,
            "api_version": self.config.api_version,
        }

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
