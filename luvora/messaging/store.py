"""
Channel config store: where per-user channel configuration lives.

The core only reads: "find config by user + platform" and "list every
enabled channel" at boot. Writes (linking results, disconnects) belong to the
callers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from luvora.config import Settings
from luvora.messaging.crypto import token_decryptor
from luvora.messaging.types import ChannelConfig, ChannelIdentity, Platform

logger = logging.getLogger(__name__)

TOKEN_FIELDS = ("botToken", "bot_token")


class ChannelConfigStore(ABC):
    @abstractmethod
    async def find_config(self, user_id: str, platform: Platform) -> Optional[ChannelConfig]:
        """Equality lookup; at most one result expected."""

    @abstractmethod
    async def list_enabled(self) -> List[Tuple[ChannelIdentity, ChannelConfig]]:
        """Every enabled channel, for startup."""


class InMemoryConfigStore(ChannelConfigStore):
    def __init__(self):
        self._configs: Dict[ChannelIdentity, ChannelConfig] = {}

    def put(self, identity: ChannelIdentity, config: ChannelConfig) -> None:
        self._configs[identity] = config

    def remove(self, identity: ChannelIdentity) -> None:
        self._configs.pop(identity, None)

    async def find_config(self, user_id: str, platform: Platform) -> Optional[ChannelConfig]:
        return self._configs.get(ChannelIdentity(user_id, platform))

    async def list_enabled(self) -> List[Tuple[ChannelIdentity, ChannelConfig]]:
        return [(ident, cfg) for ident, cfg in self._configs.items() if cfg.enabled]


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class PocketBaseConfigStore(ChannelConfigStore):
    """
    Reads the ``messaging_channels`` collection of a PocketBase server as a
    superuser. ``decrypt`` turns stored (encrypted) bot tokens back into
    plaintext; ``from_settings`` builds it from ENCRYPTION_KEY.
    """

    PAGE_SIZE = 200

    def __init__(
        self,
        base_url: str,
        admin_email: str,
        admin_password: str,
        collection: str = "messaging_channels",
        auth_path: str = "/api/collections/_superusers/auth-with-password",
        decrypt: Optional[Callable[[str], str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.admin_email = admin_email
        self.admin_password = admin_password
        self.collection = collection
        self.auth_path = auth_path
        self._decrypt = decrypt
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings, decrypt: Optional[Callable[[str], str]] = None) -> "PocketBaseConfigStore":
        if decrypt is None and settings.encryption_key:
            decrypt = token_decryptor(settings.encryption_key)
        elif decrypt is None:
            logger.warning("[STORE] ENCRYPTION_KEY not set, stored bot tokens are read as plaintext")
        return cls(
            base_url=settings.pocketbase_url,
            admin_email=settings.pocketbase_admin_email,
            admin_password=settings.pocketbase_admin_password,
            collection=settings.messaging_collection,
            auth_path=settings.pocketbase_auth_path,
            decrypt=decrypt,
            timeout=settings.http_timeout_seconds,
        )

    async def _auth_headers(self) -> Dict[str, str]:
        if self._token is None:
            resp = await self._http.post(
                self.auth_path,
                json={"identity": self.admin_email, "password": self.admin_password},
            )
            resp.raise_for_status()
            self._token = resp.json()["token"]
            logger.info("[STORE] Authenticated against PocketBase")
        return {"Authorization": self._token}

    async def _list(self, filter_expr: str, page: int = 1, per_page: int = PAGE_SIZE) -> Dict[str, Any]:
        path = f"/api/collections/{self.collection}/records"
        params = {"filter": filter_expr, "page": page, "perPage": per_page}
        resp = await self._http.get(path, params=params, headers=await self._auth_headers())
        if resp.status_code == 401:
            # Superuser tokens expire; log in again once
            logger.info("[STORE] PocketBase token rejected, re-authenticating")
            self._token = None
            resp = await self._http.get(path, params=params, headers=await self._auth_headers())
        resp.raise_for_status()
        return resp.json()

    def _to_config(self, record: Dict[str, Any]) -> ChannelConfig:
        raw = dict(record.get("config") or {})
        raw.setdefault("enabled", record.get("enabled", True))
        if self._decrypt:
            for key in TOKEN_FIELDS:
                if raw.get(key):
                    raw[key] = self._decrypt(raw[key])
        return ChannelConfig.from_record(raw)

    async def find_config(self, user_id: str, platform: Platform) -> Optional[ChannelConfig]:
        data = await self._list(f"user={_quote(user_id)} && platform={_quote(platform.value)}", per_page=1)
        items = data.get("items") or []
        if not items:
            return None
        return self._to_config(items[0])

    async def list_enabled(self) -> List[Tuple[ChannelIdentity, ChannelConfig]]:
        results = []
        page = 1
        while True:
            data = await self._list("enabled = true", page=page)
            for record in data.get("items") or []:
                try:
                    identity = ChannelIdentity(record["user"], Platform(record["platform"]))
                    results.append((identity, self._to_config(record)))
                except (KeyError, ValueError):
                    logger.warning("[STORE] Skipping malformed channel record %s", record.get("id"))
            if page >= int(data.get("totalPages") or 1):
                break
            page += 1
        return results

    async def aclose(self) -> None:
        await self._http.aclose()
