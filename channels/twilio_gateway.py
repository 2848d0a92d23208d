"""
Twilio WhatsApp gateway.

Messages go out as form-encoded POSTs to the Messages resource:
    POST /2010-04-01/Accounts/{AccountSid}/Messages.json
    From=whatsapp:+1…  To=whatsapp:+91…  Body=…  [MediaUrl=…]

Outcome classification:
    2xx                          → ok (provider sid kept)
    429, 5xx, timeout, network   → transient
    other 4xx                    → permanent (bad number, blocked, …)

A failed connection attempt (nothing reached Twilio) is retried once
before it is reported as transient.

API Docs: https://www.twilio.com/docs/whatsapp/api
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import CircuitBreaker, MessageGateway
from models.schemas import GatewayResult

logger = structlog.get_logger()


def whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


class TwilioWhatsAppGateway(MessageGateway):
    """Twilio REST client for WhatsApp text and media messages."""

    name = "twilio_whatsapp"
    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(breaker)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout_seconds = timeout_seconds
        self.messages_url = f"{self.BASE_URL}/{account_sid}/Messages.json"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(10.0, self.timeout_seconds)),
                transport=self._transport,
            )
        return self._client

    # ── Send ────────────────────────────────────────────────

    async def _do_send_text(self, recipient: str, text: str) -> GatewayResult:
        return await self._send(recipient, {"Body": text})

    async def _do_send_media(self, recipient: str, media_url: str, caption: str) -> GatewayResult:
        return await self._send(recipient, {"Body": caption, "MediaUrl": media_url})

    async def _send(self, recipient: str, fields: dict[str, str]) -> GatewayResult:
        payload = {
            "From": whatsapp_address(self.from_number),
            "To": whatsapp_address(recipient),
            **fields,
        }
        try:
            resp = await self._post(payload)
        except httpx.TimeoutException as e:
            logger.warning("twilio_timeout", to=recipient, error=str(e))
            return GatewayResult.transient(f"timeout: {e}")
        except httpx.TransportError as e:
            logger.warning("twilio_network_error", to=recipient, error=str(e))
            return GatewayResult.transient(f"network: {e}")

        return self._classify(resp, recipient)

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, max=2),
        reraise=True,
    )
    async def _post(self, payload: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(self.messages_url, data=payload)

    @staticmethod
    def _classify(resp: httpx.Response, recipient: str) -> GatewayResult:
        body = _json_or_empty(resp)
        if resp.status_code < 400:
            sid = body.get("sid", "")
            logger.info("twilio_message_accepted", to=recipient, sid=sid, status=body.get("status"))
            return GatewayResult.ok(sid)

        error = f"http_{resp.status_code}"
        if body.get("code") or body.get("message"):
            error = f"{error}: {body.get('code', '')} {body.get('message', '')}".rstrip()
        logger.error("twilio_api_error", status=resp.status_code, to=recipient, body=resp.text[:500])

        if resp.status_code == 429 or resp.status_code >= 500:
            return GatewayResult.transient(error)
        return GatewayResult.permanent(error)

    # ── Helpers ─────────────────────────────────────────────

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
