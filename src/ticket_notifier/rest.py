"""Request/response calls to the chat platform REST API.

All calls use ``requests`` on a worker thread and resolve to an
:class:`HttpResult`; transport failures never raise past this module.
"""

import asyncio
import logging

import requests

from ticket_notifier.models import HttpResult

logger = logging.getLogger(__name__)

API_BASE = "https://discord.com/api/v9"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"


def _request(method: str, url: str, *, headers: dict | None = None, json=None, timeout: float = 15) -> HttpResult:
    try:
        resp = requests.request(method, url, headers=headers or {}, json=json, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("%s %s failed: %s", method, url, exc)
        return HttpResult(ok=False, status=0, body=str(exc))
    return HttpResult(ok=resp.ok, status=resp.status_code, body=resp.text)


async def http_get(url: str, headers: dict | None = None, timeout: float = 15) -> HttpResult:
    return await asyncio.to_thread(_request, "GET", url, headers=headers, timeout=timeout)


async def http_post(url: str, body: dict, headers: dict | None = None, timeout: float = 15) -> HttpResult:
    return await asyncio.to_thread(_request, "POST", url, headers=headers, json=body, timeout=timeout)


class RestClient:
    """Authenticated REST calls for one account."""

    def __init__(self, token: str, *, bot: bool = False, base_url: str = API_BASE) -> None:
        self._token = token
        self.bot = bot
        self._base_url = base_url

    @property
    def auth_header(self) -> str:
        return f"Bot {self._token}" if self.bot else self._token

    def _headers(self) -> dict:
        return {"Authorization": self.auth_header, "User-Agent": USER_AGENT}

    async def get(self, path: str) -> HttpResult:
        return await http_get(f"{self._base_url}{path}", self._headers())

    async def get_json(self, path: str):
        """GET and decode JSON; returns None on any failure."""
        res = await self.get(path)
        if not res.ok:
            logger.debug("GET %s returned %s", path, res.status)
            return None
        try:
            return res.json()
        except ValueError:
            logger.warning("GET %s returned malformed JSON", path)
            return None

    async def send_message(self, channel_id: str, content: str, reply_to: str | None = None) -> HttpResult:
        payload: dict = {"content": content}
        if reply_to:
            payload["message_reference"] = {"message_id": reply_to}
        return await http_post(f"{self._base_url}/channels/{channel_id}/messages", payload, self._headers())

    async def fetch_messages(self, channel_id: str, limit: int = 100) -> list[dict]:
        data = await self.get_json(f"/channels/{channel_id}/messages?limit={limit}")
        return data if isinstance(data, list) else []
