"""Lark (Feishu) platform client using the Open API over httpx.

Features:
- tenant_access_token auto-refresh (refreshed 5 minutes before expiry)
- Rich-text post delivery to chats, or through an incoming webhook
- Contact and chat directories for mention and channel resolution
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any, Optional

import httpx

from chatrelay.relay.exceptions import TransientAPIError, TransportError
from chatrelay.relay.identity import fingerprint
from chatrelay.relay.models import LARK_WEBHOOK_CHANNEL, Platform, RenderedPayload, SendResult
from chatrelay.relay.protocol import DirectoryKind, EnvelopeHandler, PlatformClient
from chatrelay.relay.transformer import lark_create_time_to_ts

logger = logging.getLogger(__name__)

LARK_DOMAIN = "https://open.larksuite.com"
FEISHU_DOMAIN = "https://open.feishu.cn"

POST_LOCALE = "ja_jp"
TOKEN_REFRESH_MARGIN_SECONDS = 300
REQUEST_TIMEOUT_SECONDS = 15.0
PAGE_SIZE = 50


def normalize_domain(domain: Optional[str]) -> str:
    """Normalize a configured domain to ``https://host`` without ``/open-apis``."""
    d = (domain or "").strip().rstrip("/")
    if not d:
        return LARK_DOMAIN
    if d.endswith("/open-apis"):
        d = d[: -len("/open-apis")].rstrip("/")
    if not d.startswith(("http://", "https://")):
        d = "https://" + d
    return d


class LarkClient(PlatformClient):
    """Lark client for one tenant.

    Lark pushes events to the relay's webhook endpoint, so ``connect`` only
    checks the app credentials and arms ``deliver``.

    Configuration:
        - app_id / app_secret: custom app credentials (needed to post to chats
          and resolve directories)
        - webhook_url: incoming webhook of a group bot (post-only fallback)
        - domain: open.larksuite.com (default) or open.feishu.cn
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        webhook_url: Optional[str] = None,
        domain: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize Lark client.

        Args:
            app_id: App ID (cli_...)
            app_secret: App secret
            webhook_url: Incoming webhook URL
            domain: Open API domain
            http_client: Pre-built HTTP client
            clock: Returns the current time in seconds
        """
        super().__init__()

        self._app_id = app_id
        self._app_secret = app_secret
        self._webhook_url = webhook_url
        self._api_base = f"{normalize_domain(domain)}/open-apis"
        self._http = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
        self._clock = clock

        self._token: Optional[str] = None
        self._token_expires = 0.0
        self._token_lock = asyncio.Lock()
        self._chat_names: dict[str, str] = {}
        self._user_names: dict[str, str] = {}

    @property
    def platform(self) -> Platform:
        """The platform this client talks to."""
        return Platform.LARK

    @property
    def credential_fingerprint(self) -> str:
        """Fingerprint of the app credentials (or the webhook URL)."""
        if self.has_app:
            return fingerprint(f"{self._app_id}:{self._app_secret}")
        return fingerprint(self._webhook_url or "")

    @property
    def workspace_id(self) -> Optional[str]:
        """Ledger namespace for Lark chats."""
        return "lark"

    @property
    def has_app(self) -> bool:
        """Check if app credentials are configured."""
        return bool(self._app_id and self._app_secret)

    @property
    def has_webhook(self) -> bool:
        """Check if an incoming webhook is configured."""
        return bool(self._webhook_url)

    async def connect(self, handler: EnvelopeHandler) -> None:
        """Verify app credentials and start accepting delivered events."""
        if self._connected:
            logger.warning("Lark client already connected")
            return

        if self.has_app:
            try:
                await self._get_token()
            except TransientAPIError as e:
                raise TransportError(f"Failed to authenticate Lark app: {e}", "lark") from e
            logger.info(f"Lark app {self._app_id} authenticated")

        self._handler = handler
        self._connected = True

    async def disconnect(self) -> None:
        """Stop accepting events."""
        self._connected = False
        self._handler = None

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._http.aclose()

    # =========================================================================
    # Token and API plumbing
    # =========================================================================

    async def _get_token(self) -> str:
        """Get a valid tenant_access_token, refreshing if needed."""
        async with self._token_lock:
            now = self._clock()
            if self._token and now < self._token_expires - TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token

            result = await self._post_json(
                f"{self._api_base}/auth/v3/tenant_access_token/internal",
                {"app_id": self._app_id, "app_secret": self._app_secret},
                action="tenant_access_token",
            )
            self._token = result.get("tenant_access_token", "")
            expire = int(result.get("expire", 7200))
            self._token_expires = now + expire
            logger.debug(f"Lark token refreshed, expires in {expire}s")
            return self._token

    async def _post_json(
        self,
        url: str,
        body: dict[str, Any],
        action: str,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http.post(url, json=body, headers=headers, params=params)
        except httpx.HTTPError as e:
            raise TransientAPIError(f"Lark {action} failed: {e}", platform="lark") from e
        return self._check(response, action)

    async def _api(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Call the Open API with the tenant token.

        Returns:
            The ``data`` object of the response

        Raises:
            TransientAPIError: On network errors or a non-zero ``code``
        """
        if not self.has_app:
            raise TransientAPIError("Lark app credentials are not configured", platform="lark")

        token = await self._get_token()
        headers = {"Authorization": f"Bearer {token}"}
        url = f"{self._api_base}{endpoint}"
        if method == "POST":
            result = await self._post_json(url, body or {}, endpoint, headers=headers, params=params)
        else:
            try:
                response = await self._http.request(method, url, params=params, headers=headers)
            except httpx.HTTPError as e:
                raise TransientAPIError(f"Lark {endpoint} failed: {e}", platform="lark") from e
            result = self._check(response, endpoint)
        return result.get("data") or {}

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict[str, Any]:
        retry_after = response.headers.get("Retry-After")
        try:
            result = response.json()
        except ValueError:
            result = {}

        code = result.get("code", result.get("StatusCode", -1 if response.is_error else 0))
        if response.is_error or code != 0:
            message = result.get("msg") or result.get("StatusMessage") or response.text[:300]
            raise TransientAPIError(
                f"Lark {action} failed: HTTP {response.status_code} code {code}: {message}",
                platform="lark",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        return result

    # =========================================================================
    # PlatformClient operations
    # =========================================================================

    async def send_message(self, channel_id: str, payload: RenderedPayload) -> SendResult:
        """Post to a chat through the app API, or through the incoming webhook.

        The ``webhook`` channel id (or a missing app) selects the webhook.
        """
        post = {"title": payload.title or "", "content": payload.post or []}

        if channel_id == LARK_WEBHOOK_CHANNEL or not self.has_app:
            if not self._webhook_url:
                raise TransientAPIError("No Lark webhook URL configured", platform="lark")
            body: dict[str, Any] = (
                {"msg_type": "post", "content": {"post": {POST_LOCALE: post}}}
                if payload.post
                else {"msg_type": "text", "content": {"text": payload.text}}
            )
            await self._post_json(self._webhook_url, body, action="webhook")
            return SendResult(channel_id=LARK_WEBHOOK_CHANNEL)

        if payload.post:
            msg_type, content = "post", {POST_LOCALE: post}
        else:
            msg_type, content = "text", {"text": payload.text}

        body = {
            "receive_id": channel_id,
            "msg_type": msg_type,
            "content": json.dumps(content, ensure_ascii=False),
        }
        data = await self._api(
            "POST", "/im/v1/messages", params={"receive_id_type": "chat_id"}, body=body
        )

        return SendResult(
            channel_id=data.get("chat_id") or channel_id,
            message_id=data.get("message_id"),
            timestamp=lark_create_time_to_ts(data["create_time"]) if data.get("create_time") else None,
        )

    async def fetch_directory(self, kind: DirectoryKind) -> dict[str, str]:
        """Lowercase name to id map of tenant users (open_id) or chats (chat_id)."""
        if kind == "users":
            endpoint = "/contact/v3/users/find_by_department"
            params: dict[str, Any] = {"department_id": "0", "page_size": PAGE_SIZE}
            id_field = "open_id"
        else:
            endpoint = "/im/v1/chats"
            params = {"page_size": PAGE_SIZE}
            id_field = "chat_id"

        directory: dict[str, str] = {}
        while True:
            data = await self._api("GET", endpoint, params=params)
            for item in data.get("items") or []:
                entry_id = item.get(id_field)
                if not entry_id:
                    continue
                for name in (item.get("name"), item.get("en_name"), item.get("nickname")):
                    if name:
                        directory.setdefault(name.lower(), entry_id)

            if not data.get("has_more") or not data.get("page_token"):
                break
            params = {**params, "page_token": data["page_token"]}

        return directory

    def format_mention(self, user_id: str, name: str) -> str:
        """Lark mention markup, rendered as an ``at`` element in posts."""
        return f'<at user_id="{user_id}">{name}</at>'

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        if channel_id in self._chat_names:
            return self._chat_names[channel_id]
        if not self.has_app:
            return None

        try:
            data = await self._api("GET", f"/im/v1/chats/{channel_id}")
        except TransientAPIError as e:
            logger.warning(f"Failed to get Lark chat info for {channel_id}: {e}")
            return None

        name = data.get("name")
        if name:
            self._chat_names[channel_id] = name
        return name

    async def get_user_name(self, user_id: str) -> Optional[str]:
        if user_id in self._user_names:
            return self._user_names[user_id]
        if not self.has_app:
            return None

        try:
            data = await self._api(
                "GET", f"/contact/v3/users/{user_id}", params={"user_id_type": "open_id"}
            )
        except TransientAPIError as e:
            logger.warning(f"Failed to get Lark user info for {user_id}: {e}")
            return None

        name = (data.get("user") or {}).get("name")
        if name:
            self._user_names[user_id] = name
        return name

    def forget_channel(self, channel_id: str) -> None:
        """Drop a cached chat name (after a rename)."""
        self._chat_names.pop(channel_id, None)
