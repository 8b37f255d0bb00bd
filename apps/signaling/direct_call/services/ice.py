"""Relay credential providers.

Registration hands every client an ICE server list with TURN credentials. The
configuration is either computed locally from settings or fetched from an
external TURN authentication service.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Callable, Protocol

import httpx
from pydantic import ValidationError

from ..core.config import Settings
from ..schemas.ice import IceConfiguration, IceServer
from .errors import IceConfigurationError

logger = logging.getLogger(__name__)

_AUTH_TYPE_ALIASES = {
    "plaintext": "plaintext",
    "static": "plaintext",
    "longterm": "longterm",
    "ephemeral": "longterm",
    "timewindowed": "longterm",
}


class IceConfigProvider(Protocol):
    async def get_ice_configuration(self, identity: str) -> IceConfiguration:
        """Return the ICE servers a client registered as ``identity`` should use."""


def longterm_credential(username: str, secret: str) -> str:
    """TURN long-term credential: base64 HMAC-SHA1 of the username."""

    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def time_windowed_username(identity: str, ttl: int, now: float) -> str:
    expiry = int(now) + ttl
    return f"{expiry}:{identity}" if identity else str(expiry)


class StaticIceConfigProvider:
    """Build ICE configuration from local TURN settings."""

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    async def get_ice_configuration(self, identity: str) -> IceConfiguration:
        s = self._settings
        if not s.turn_public_addr:
            raise IceConfigurationError("TURN public address is not configured")

        username, credential = self._credentials(identity)
        transports = [name for name, enabled in (("udp", s.turn_udp_enabled), ("tcp", s.turn_tcp_enabled)) if enabled]
        if not transports:
            raise IceConfigurationError("No TURN transport is enabled")

        servers = [
            IceServer(
                urls=[f"turn:{s.turn_public_addr}:{s.turn_public_port}?transport={transport}"],
                username=username,
                credential=credential,
            )
            for transport in transports
        ]
        return IceConfiguration(ice_servers=servers, ice_transport_policy=s.ice_transport_policy)

    def _credentials(self, identity: str) -> tuple[str, str]:
        s = self._settings
        auth_type = _AUTH_TYPE_ALIASES.get(s.turn_auth_type.strip().lower())
        if auth_type == "plaintext":
            return s.turn_username, s.turn_password
        if auth_type == "longterm":
            username = time_windowed_username(identity, s.turn_credential_ttl, self._clock())
            return username, longterm_credential(username, s.turn_shared_secret)
        raise IceConfigurationError(f"Invalid authentication type: {s.turn_auth_type}")


class AuthServiceIceConfigProvider:
    """Fetch ICE configuration from a TURN authentication REST service."""

    def __init__(
        self,
        base_url: str,
        *,
        ice_transport_policy: str = "relay",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._policy = ice_transport_policy
        self._timeout = timeout
        self._transport = transport

    async def get_ice_configuration(self, identity: str) -> IceConfiguration:
        params = {"service": "turn", "username": identity, "iceTransportPolicy": self._policy}
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get("/ice", params=params)
        except httpx.HTTPError as exc:
            raise IceConfigurationError(f"TURN auth service unreachable: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise IceConfigurationError(
                f"TURN auth service returned {response.status_code}: {response.text.strip()}"
            )

        try:
            config = IceConfiguration.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise IceConfigurationError("TURN auth service returned an invalid ICE configuration") from exc

        if not config.ice_servers:
            raise IceConfigurationError("TURN auth service returned no ICE servers")

        logger.debug("Fetched ICE configuration for %s with %d server(s)", identity, len(config.ice_servers))
        return config


def build_ice_provider(settings: Settings) -> IceConfigProvider:
    if settings.ice_provider == "auth_service":
        return AuthServiceIceConfigProvider(
            settings.auth_service_url,
            ice_transport_policy=settings.ice_transport_policy,
            timeout=settings.auth_service_timeout,
        )
    return StaticIceConfigProvider(settings)
