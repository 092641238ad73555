"""
Proxy rotation policy.

Parses ``ip:port:user:pass`` entries, activates a uniformly random one, and
keeps the active route and its credentials in a ``ProxyState`` owned by the
application. Only one route is active process-wide: the scheduler works on
one task, hence one outbound context, at a time.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from harvester.utils.config import ProxyConfig, get_settings
from harvester.utils.errors import ProxyConfigError
from harvester.utils.logging import get_logger

if TYPE_CHECKING:
    from harvester.utils.activity import ActivityLog

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProxyRoute:
    """Routing rule sending all outbound traffic through host:port."""

    host: str
    port: int
    scheme: str = "http"
    bypass: tuple[str, ...] = ("localhost", "127.0.0.1")

    @property
    def server(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyCredentials:
    username: str
    password: str = field(repr=False)


class ProxyRouter(Protocol):
    """Network layer that can install or clear a routing rule."""

    async def apply_proxy(self, route: ProxyRoute | None) -> None: ...


class ProxyState:
    """Active route and credentials, shared by the policy and the network layer."""

    def __init__(self) -> None:
        self.route: ProxyRoute | None = None
        self._credentials: ProxyCredentials | None = None

    @property
    def active(self) -> bool:
        return self.route is not None

    def install(self, route: ProxyRoute, credentials: ProxyCredentials | None) -> None:
        self.route = route
        self._credentials = credentials

    def clear(self) -> None:
        self.route = None
        self._credentials = None

    def respond_to_auth_challenge(self) -> tuple[str, str] | None:
        """Credentials for a proxy authentication challenge, if any are stored."""
        if self._credentials is None:
            return None
        return self._credentials.username, self._credentials.password


def parse_proxy_entry(
    line: str,
    scheme: str = "http",
    bypass: tuple[str, ...] = ("localhost", "127.0.0.1"),
) -> tuple[ProxyRoute, ProxyCredentials]:
    """Parse one ``ip:port:user:pass`` entry.

    Raises:
        ProxyConfigError: Wrong field count or non-numeric port.
    """
    parts = line.strip().split(":")
    if len(parts) != 4:
        raise ProxyConfigError(
            "Invalid proxy format (expected IP:Port:User:Pass)",
            details={"fields": len(parts)},
        )
    host, port_text, user, password = parts
    try:
        port = int(port_text)
    except ValueError as e:
        raise ProxyConfigError("Invalid proxy port", details={"port": port_text}) from e
    if not host or not 0 < port < 65536:
        raise ProxyConfigError("Invalid proxy host or port", details={"host": host, "port": port})

    return (
        ProxyRoute(host=host, port=port, scheme=scheme, bypass=bypass),
        ProxyCredentials(username=user, password=password),
    )


def parse_proxy_list(text: str | None, min_length: int | None = None) -> list[str]:
    """Split pasted proxy text into entries.

    Lines are trimmed; lines no longer than ``min_length`` characters are
    dropped as noise.
    """
    if not text:
        return []
    if min_length is None:
        min_length = get_settings().proxy.min_line_length
    lines = (line.strip() for line in text.splitlines())
    return [line for line in lines if len(line) > min_length]


class ProxyPolicy:
    """Selects and activates outbound proxy routes."""

    def __init__(
        self,
        state: ProxyState,
        router: ProxyRouter,
        activity: ActivityLog | None = None,
        config: ProxyConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._state = state
        self._router = router
        self._activity = activity
        self._config = config or get_settings().proxy
        self._rng = rng or random.Random()

    @property
    def state(self) -> ProxyState:
        return self._state

    async def activate(self, proxy_list: list[str], session_id: str | None = None) -> bool:
        """Activate a uniformly random entry of proxy_list.

        Malformed entries are logged and leave the current route unchanged.

        Returns:
            True if a route was installed.
        """
        if not proxy_list:
            return False

        line = self._rng.choice(proxy_list)
        try:
            route, credentials = parse_proxy_entry(
                line,
                scheme=self._config.scheme,
                bypass=tuple(self._config.bypass),
            )
        except ProxyConfigError as e:
            logger.warning("Proxy entry rejected", error=e.message, **e.details)
            if self._activity is not None and session_id is not None:
                await self._activity.warn(session_id, f"Invalid proxy format: {e.message}")
            return False

        self._state.install(route, credentials)
        await self._router.apply_proxy(route)

        if self._activity is not None and session_id is not None:
            await self._activity.info(session_id, f"Proxy switched to {route.host} (auth injected)")
        return True

    async def deactivate(self, session_id: str | None = None) -> None:
        """Revert to a direct connection."""
        had_route = self._state.active
        self._state.clear()
        await self._router.apply_proxy(None)
        if had_route and self._activity is not None and session_id is not None:
            await self._activity.info(session_id, "Connection reset to direct connection")
