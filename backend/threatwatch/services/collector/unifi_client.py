# backend/threatwatch/services/collector/unifi_client.py
"""
Thin async client for the parts of the UniFi Network API the collector needs.

Transient transport failures are retried with backoff. Every call raises
UpstreamError on transport failures that persist, non-2xx answers
(after one re-login on 401) and non-JSON bodies.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from threatwatch.core.config import settings
from threatwatch.core.errors import UpstreamError
from threatwatch.services.collector.retry import async_retry

logger = logging.getLogger(__name__)


def _epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


@dataclass(frozen=True)
class UniFiCredentials:
    base_url: Optional[str]
    username: Optional[str]
    password: Optional[str]
    site: str = "default"


class UniFiClient:
    LOGIN_PATH = "/api/auth/login"

    def __init__(
        self,
        base_url: Optional[str],
        username: Optional[str],
        password: Optional[str],
        site: str = "default",
        verify_ssl: bool = False,
        page_size: int = 500,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.site = site
        self.page_size = page_size
        self._username = username
        self._password = password
        self._verify_ssl = verify_ssl
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._csrf_token: Optional[str] = None

    @classmethod
    def from_credentials(cls, credentials: UniFiCredentials, **kwargs: Any) -> "UniFiClient":
        return cls(
            base_url=credentials.base_url,
            username=credentials.username,
            password=credentials.password,
            site=credentials.site,
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self._username and self._password)

    @property
    def credentials(self) -> UniFiCredentials:
        return UniFiCredentials(
            base_url=self.base_url or None,
            username=self._username,
            password=self._password,
            site=self.site,
        )

    async def apply_credentials(self, credentials: UniFiCredentials) -> bool:
        """
        Switch to new connection settings. The HTTP session is dropped when
        anything changed, so the next call logs in fresh. Returns True on change.
        """
        normalized = UniFiCredentials(
            base_url=(credentials.base_url or "").rstrip("/") or None,
            username=credentials.username,
            password=credentials.password,
            site=credentials.site,
        )
        if normalized == self.credentials:
            return False

        await self.close()
        self.base_url = normalized.base_url or ""
        self._username = normalized.username
        self._password = normalized.password
        self.site = normalized.site
        return True

    # --------------------------------------------------------
    # Session handling
    # --------------------------------------------------------
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                verify=self._verify_ssl,
                timeout=self._timeout,
            )
        return self._client

    async def login(self) -> None:
        try:
            resp = await self._http().post(
                self.LOGIN_PATH,
                json={"username": self._username, "password": self._password},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"UniFi login failed: {exc}") from exc

        self._csrf_token = resp.headers.get("x-csrf-token") or self._csrf_token
        logger.debug("Authenticated against UniFi controller %s", self.base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._csrf_token = None

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        if not self.is_configured:
            raise UpstreamError("UniFi controller is not configured")

        if self._csrf_token is None:
            await self.login()

        for attempt in range(2):
            headers = {"X-CSRF-Token": self._csrf_token} if self._csrf_token else {}
            try:
                resp = await async_retry(
                    lambda: self._http().post(path, json=body, headers=headers)
                )
            except httpx.HTTPError as exc:
                raise UpstreamError(f"POST {path} failed: {exc}") from exc

            if resp.status_code == 401 and attempt == 0:
                # session expired; log in again and retry once
                await self.login()
                continue

            try:
                resp.raise_for_status()
                return resp.json()
            except httpx.HTTPStatusError as exc:
                raise UpstreamError(f"POST {path} returned {resp.status_code}") from exc
            except ValueError as exc:
                raise UpstreamError(f"POST {path} returned a non-JSON body") from exc

        raise UpstreamError(f"POST {path} unauthorized after re-login")

    # --------------------------------------------------------
    # Endpoints
    # --------------------------------------------------------
    async def get_traffic_flows(
        self,
        start: datetime,
        end: datetime,
        page: int,
        blocked_only: bool = False,
    ) -> Dict[str, Any]:
        """One page of traffic flows: {"data": [...], "has_next": bool}."""
        body: Dict[str, Any] = {
            "timestampFrom": _epoch_ms(start),
            "timestampTo": _epoch_ms(end),
            "pageNumber": page,
            "pageSize": self.page_size,
        }
        if blocked_only:
            body["action"] = ["blocked"]

        data = await self._post(f"/proxy/network/v2/api/site/{self.site}/traffic-flows", body)
        if not isinstance(data, dict):
            raise UpstreamError("traffic-flows returned an unexpected payload")
        return data

    async def get_threat_log_events(
        self, start: datetime, end: datetime, page: int
    ) -> Dict[str, Any]:
        """One page of v2 system-log threat entries: {"data", "totalCount", "isLastPage"}."""
        body = {
            "timestampFrom": _epoch_ms(start),
            "timestampTo": _epoch_ms(end),
            "pageNumber": page,
            "pageSize": self.page_size,
            "categories": ["THREAT_MANAGEMENT"],
        }
        data = await self._post(f"/proxy/network/v2/api/site/{self.site}/system-log/all", body)
        if not isinstance(data, dict):
            raise UpstreamError("system-log returned an unexpected payload")
        return data

    async def get_ips_events(
        self, start: datetime, end: datetime, limit: int = 10000
    ) -> List[Dict[str, Any]]:
        """Legacy stat/ips/event: unpaginated, newest first."""
        body = {
            "start": _epoch_ms(start),
            "end": _epoch_ms(end),
            "_limit": limit,
        }
        data = await self._post(f"/proxy/network/api/s/{self.site}/stat/ips/event", body)
        if isinstance(data, dict):
            data = data.get("data")
        if not isinstance(data, list):
            raise UpstreamError("stat/ips/event returned an unexpected payload")
        return data


def load_unifi_credentials(settings_store=None) -> UniFiCredentials:
    """
    Resolve controller credentials from the settings store, falling back to
    env config. The password is stored encrypted under "unifi.password".
    """
    base_url = settings.UNIFI_BASE_URL
    username = settings.UNIFI_USERNAME
    password = settings.UNIFI_PASSWORD
    site = settings.UNIFI_SITE

    if settings_store is not None:
        try:
            base_url = settings_store.get("unifi.base_url") or base_url
            username = settings_store.get("unifi.username") or username
            password = settings_store.get_decrypted("unifi.password") or password
            site = settings_store.get("unifi.site") or site
        except Exception:
            logger.warning("Could not read UniFi credentials from settings store; using env", exc_info=True)

    return UniFiCredentials(base_url=base_url, username=username, password=password, site=site)


def build_unifi_client(settings_store=None) -> UniFiClient:
    return UniFiClient.from_credentials(
        load_unifi_credentials(settings_store),
        verify_ssl=settings.UNIFI_VERIFY_SSL,
        page_size=settings.UNIFI_PAGE_SIZE,
    )
