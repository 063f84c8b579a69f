# app/transport/host_api.py
"""
Client for the hosting platform's REST API.

One authenticated client covers the three calls the engine needs:
- ``send()``               POST /api/<channel>/send        (ChannelSender)
- ``check_new_messages()`` POST /api/instagram/check-messages (InboxSource)
- ``check_execute()``      POST /api/flow/execute-check    (EntitlementGate)

Error classification (HostApiError.retryable):
- Missing/invalid session (401)  → NOT retryable
- Forbidden (403)                → NOT retryable
- Rate limiting (429)            → retryable
- Server error (5xx)             → retryable
- Network / timeout              → retryable

Entitlement checks fail open: anything other than an explicit 403 answer
allows the run.

HTTP session lifecycle:
- Uses the shared session from app.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio
from datetime import datetime

import aiohttp

from app.core.engine.domain import GateDecision, InboxMessage, Platform, now_ms
from app.infra.http_client import get_host_api_session
from app.infra.logging_config import get_logger, mask_id
from app.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

DEFAULT_SEND_PATHS = {
    Platform.INSTAGRAM.value: "instagram",
    Platform.WHATSAPP.value: "whatsapp",
    Platform.FACEBOOK.value: "messenger",
}


class HostApiError(Exception):
    """Error calling the hosting platform API.

    Attributes:
        status:    HTTP status code (0 for connection-level errors).
        code:      Error code from the response body (e.g. "LIMIT_REACHED").
        retryable: Whether a later attempt could succeed.
        upgrade:   The platform suggests a plan upgrade (entitlement denials).
    """

    def __init__(
        self,
        status: int,
        code: str | None,
        message: str,
        *,
        retryable: bool = False,
        upgrade: bool = False,
    ):
        self.status = status
        self.code = code
        self.retryable = retryable
        self.upgrade = upgrade
        super().__init__(f"Host API error {status} (code={code}): {message}")


def _parse_timestamp(value) -> int:
    """Inbox timestamps arrive as epoch millis or ISO-8601 strings."""
    if value is None:
        return now_ms()
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return now_ms()


def parse_inbox_message(raw: dict) -> InboxMessage:
    sender = raw.get("sender") or {}
    return InboxMessage(
        id=str(raw["id"]),
        text=raw.get("text") or "",
        sender_id=str(sender["id"]),
        sender_username=sender.get("username") or "",
        sender_picture=sender.get("picture"),
        account_id=str(raw.get("accountId") or ""),
        timestamp=_parse_timestamp(raw.get("timestamp")),
    )


class HostApiClient:
    """
    Authenticated client bound to one hosting-platform session.

    Without a token no request is made: sends are skipped, the inbox is
    empty and executions are denied (there is no account to bill).
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        send_paths: dict[str, str] | None = None,
        timeout_seconds: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.send_paths = send_paths or dict(DEFAULT_SEND_PATHS)
        self.timeout_seconds = timeout_seconds

    def set_token(self, token: str | None) -> None:
        self.token = token

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # ChannelSender
    # ------------------------------------------------------------------

    async def send(self, channel: Platform, recipient: str, text: str, account_id: str) -> None:
        """
        Raises:
            HostApiError: on API/transport errors
        """
        if not self.token:
            logger.debug("No host API session, outbound send skipped")
            return

        segment = self.send_paths.get(channel.value, channel.value)
        payload = {"to": recipient, "text": text, "accountId": account_id}
        await self._post_json(f"/api/{segment}/send", payload)
        logger.info(f"{channel.value} message sent: to={mask_id(recipient)}")

    # ------------------------------------------------------------------
    # InboxSource
    # ------------------------------------------------------------------

    async def check_new_messages(self) -> list[InboxMessage]:
        """
        Raises:
            HostApiError: on API/transport errors
        """
        if not self.token:
            return []

        body = await self._post_json("/api/instagram/check-messages", {})
        messages = []
        for raw in body.get("messages") or []:
            try:
                messages.append(parse_inbox_message(raw))
            except (KeyError, TypeError) as exc:
                logger.warning(f"Skipping malformed inbox message: {exc!r}")
        return messages

    # ------------------------------------------------------------------
    # EntitlementGate
    # ------------------------------------------------------------------

    async def check_execute(self, uses_ai: bool) -> GateDecision:
        if not self.token:
            return GateDecision(allowed=False, reason="NO_SESSION")

        try:
            await self._post_json("/api/flow/execute-check", {"usesAI": uses_ai})
            return GateDecision.allow()
        except HostApiError as exc:
            if exc.status == 403:
                return GateDecision(
                    allowed=False,
                    reason=exc.code,
                    upgrade=exc.upgrade,
                )
            logger.warning(f"Entitlement check failed, allowing execution: {exc}")
            AppMetrics.gate_fail_open()
            return GateDecision.allow()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _post_json(self, path: str, payload: dict) -> dict:
        """POST and return the JSON body, classifying every failure."""
        try:
            session = get_host_api_session(self.timeout_seconds)
            async with session.post(self._url(path), json=payload, headers=self._headers()) as resp:
                try:
                    body = await resp.json(content_type=None)
                except Exception:
                    body = None

                if 200 <= resp.status < 300:
                    return body if isinstance(body, dict) else {}

                error = body if isinstance(body, dict) else {}
                code = error.get("error")
                retryable = resp.status == 429 or resp.status >= 500
                inc_counter("host_api_errors_total", path=path, status=resp.status)
                raise HostApiError(
                    resp.status, code, f"POST {path} failed",
                    retryable=retryable,
                    upgrade=bool(error.get("upgrade")),
                )

        except HostApiError:
            raise
        except aiohttp.ClientError as exc:
            inc_counter("host_api_errors_total", path=path, status=0)
            raise HostApiError(0, None, type(exc).__name__, retryable=True) from exc
        except asyncio.TimeoutError as exc:
            inc_counter("host_api_errors_total", path=path, status=0)
            raise HostApiError(0, None, "timeout", retryable=True) from exc
