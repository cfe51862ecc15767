"""
Speed-check server and client-identity API.

Handles capability discovery and client-info lookup.  All HTTP work goes
through a single ``aiohttp.ClientSession`` managed via async-context-manager
protocol (``async with SpeedCheckAPI(url) as api: ...``).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from common.protocol import TRANSFER_PATH, Capabilities

from .constants import COMMON_HEADERS, DEFAULT_PING_TIMEOUT_MS

LOGGER = logging.getLogger(__name__)

UNKNOWN = "Unknown"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class ClientInfo:
    """Who ran the test, as reported by an IP-geolocation provider."""

    ip: str = UNKNOWN
    city: str = UNKNOWN
    country: str = UNKNOWN
    isp: str = UNKNOWN
    server: str = "Auto Select"
    provider: str = ""

    @property
    def known(self) -> bool:
        return self.ip != UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "city": self.city,
            "country": self.country,
            "isp": self.isp,
            "server": self.server,
            "provider": self.provider,
        }


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------

def _label(city: Optional[str], code: Optional[str]) -> str:
    return f"{city or 'Auto'} ({code or 'XX'})"


def _adapt_ipapi(data: dict) -> ClientInfo:
    return ClientInfo(
        ip=data.get("ip") or UNKNOWN,
        city=data.get("city") or UNKNOWN,
        country=data.get("country_name") or UNKNOWN,
        isp=data.get("org") or UNKNOWN,
        server=_label(data.get("city"), data.get("country_code")),
    )


def _adapt_ipify(data: dict) -> ClientInfo:
    return ClientInfo(ip=data.get("ip") or UNKNOWN)


def _adapt_myip(data: dict) -> ClientInfo:
    return ClientInfo(
        ip=data.get("ip") or UNKNOWN,
        city=data.get("city") or UNKNOWN,
        country=data.get("country") or UNKNOWN,
        isp=data.get("isp") or UNKNOWN,
        server=_label(data.get("city"), data.get("country_code")),
    )


def _adapt_ipinfo(data: dict) -> ClientInfo:
    return ClientInfo(
        ip=data.get("ip") or UNKNOWN,
        city=data.get("city") or UNKNOWN,
        country=data.get("country") or UNKNOWN,
        isp=data.get("org") or UNKNOWN,
        server=_label(data.get("city"), data.get("country")),
    )


def _adapt_ipgeolocation(data: dict) -> ClientInfo:
    return ClientInfo(
        ip=data.get("ip") or UNKNOWN,
        city=data.get("city") or UNKNOWN,
        country=data.get("country_name") or UNKNOWN,
        isp=data.get("isp") or UNKNOWN,
        server=_label(data.get("city"), data.get("country_code2")),
    )


def _adapt_ipsb(data: dict) -> ClientInfo:
    return ClientInfo(
        ip=data.get("ip") or UNKNOWN,
        city=data.get("city") or UNKNOWN,
        country=data.get("country") or UNKNOWN,
        isp=data.get("isp") or UNKNOWN,
        server=_label(data.get("city"), data.get("country_code")),
    )


Adapter = Callable[[dict], ClientInfo]

# tag -> (url, adapter), tried in this order
PROVIDERS: Dict[str, Tuple[str, Adapter]] = {
    "ipapi": ("https://ipapi.co/json/", _adapt_ipapi),
    "ipify": ("https://api.ipify.org?format=json", _adapt_ipify),
    "myip": ("https://api.myip.com", _adapt_myip),
    "ipinfo": ("https://ipinfo.io/json", _adapt_ipinfo),
    "ipgeolocation": ("https://api.ipgeolocation.io/getip", _adapt_ipgeolocation),
    "ipsb": ("https://api.ip.sb/geoip", _adapt_ipsb),
}


def adapt(provider: str, data: Any) -> ClientInfo:
    """Map one provider's response onto :class:`ClientInfo`."""
    try:
        _, adapter = PROVIDERS[provider]
    except KeyError:
        raise ValueError(f"Unknown geolocation provider: {provider}") from None
    if not isinstance(data, dict):
        return ClientInfo(provider=provider)
    info = adapter(data)
    info.provider = provider
    return info


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

class SpeedCheckAPI:
    """Async context-manager wrapping the speed-check server's metadata calls."""

    def __init__(
        self,
        base_url: str,
        providers: Optional[Sequence[str]] = None,
        provider_urls: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_PING_TIMEOUT_MS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.providers: List[str] = list(providers if providers is not None else PROVIDERS)
        self._provider_urls = {tag: url for tag, (url, _) in PROVIDERS.items()}
        self._provider_urls.update(provider_urls or {})
        self._timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        self._session: Optional[aiohttp.ClientSession] = None
        self.capabilities: Optional[Capabilities] = None
        self.client_info: Optional[ClientInfo] = None

    # -- Context manager ----------------------------------------------------

    async def __aenter__(self) -> SpeedCheckAPI:
        self._session = aiohttp.ClientSession(headers=COMMON_HEADERS)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._session:
            await self._session.close()
            self._session = None

    # -- Internal helpers ---------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "SpeedCheckAPI must be used as an async context manager "
                "(async with SpeedCheckAPI(url) as api: ...)"
            )
        return self._session

    # -- Public methods -----------------------------------------------------

    async def get_capabilities(self) -> Capabilities:
        """Fetch ``GET /transfer`` from the configured server."""
        session = self._ensure_session()

        async with session.get(self.base_url + TRANSFER_PATH, timeout=self._timeout) as resp:
            resp.raise_for_status()
            data = await resp.json()

        self.capabilities = Capabilities.from_dict(data)
        return self.capabilities

    async def get_client_info(self) -> ClientInfo:
        """
        Ask each provider in turn; the first one that reports an IP wins.

        When none does, the result is an explicit ``Unknown`` identity.
        """
        session = self._ensure_session()

        for provider in self.providers:
            url = self._provider_urls[provider]
            try:
                async with session.get(
                    url, headers={"Accept": "application/json"}, timeout=self._timeout,
                ) as resp:
                    if resp.status != 200:
                        LOGGER.debug("Provider %s answered HTTP %d", provider, resp.status)
                        continue
                    data = await resp.json(content_type=None)
            except (aiohttp.ClientError, ValueError, OSError) as exc:
                LOGGER.debug("Provider %s failed: %s", provider, exc)
                continue
            except asyncio.TimeoutError:
                LOGGER.debug("Provider %s timed out", provider)
                continue

            info = adapt(provider, data)
            if info.known:
                self.client_info = info
                return info

        LOGGER.info("Client identity unavailable; no geolocation provider answered")
        self.client_info = ClientInfo()
        return self.client_info
