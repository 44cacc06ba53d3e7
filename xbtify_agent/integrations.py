"""
Outbound integrations: the XBTify backend (feature initialization) and
Neynar (Farcaster profile lookup by wallet address).
"""

from __future__ import annotations

import logging
from typing import Any

from eth_utils import to_checksum_address

from xbtify_agent.http import HttpClient
from xbtify_agent.models import User
from xbtify_agent.types import FarcasterUser

logger = logging.getLogger(__name__)

NEYNAR_API_URL = "https://api.neynar.com"


class FeatureInitializer:
    """Starts creation of a user's AI clone on the backend."""

    def __init__(self, backend_url: str | None, api_key: str | None = None) -> None:
        self._http = HttpClient(backend_url, api_key) if backend_url else None

    async def initialize(self, user: User, wallet_address: str) -> bool:
        """POST ``/api/agent/init`` for ``user``.

        Returns ``False`` when the step is skipped (no Farcaster fid or no
        backend configured). Request failures raise ``httpx.HTTPStatusError``.
        """
        if not user.farcaster_fid:
            logger.warning("User %s has no Farcaster FID, skipping agent initialization", user.id)
            return False
        if self._http is None:
            logger.warning("BACKEND_URL not configured, skipping agent initialization for %s", user.id)
            return False

        await self._http.request(
            "POST",
            "/api/agent/init",
            {
                "fid": user.farcaster_fid,
                "personality": "none",
                "tone": "none",
                "movieCharacter": "none",
                "walletAddress": to_checksum_address(wallet_address),
            },
        )
        logger.info("Initialized agent for fid %s", user.farcaster_fid)
        return True

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()


class NeynarClient:
    """Minimal Neynar v2 client."""

    def __init__(self, api_key: str, base_url: str = NEYNAR_API_URL) -> None:
        self._http = HttpClient(base_url, api_key)

    async def fetch_user_by_address(self, address: str) -> FarcasterUser | None:
        """First Farcaster user verified for ``address``, or ``None``."""
        data = await self._http.request(
            "GET",
            "/v2/farcaster/user/bulk-by-address",
            params={"addresses": address},
        )
        users = data.get(address.lower()) or []
        if not users:
            return None
        return _to_farcaster_user(users[0])

    async def close(self) -> None:
        await self._http.close()


def _to_farcaster_user(raw: dict[str, Any]) -> FarcasterUser:
    verified = raw.get("verified_addresses") or {}
    return FarcasterUser(
        fid=int(raw["fid"]),
        username=raw.get("username"),
        display_name=raw.get("display_name"),
        pfp_url=raw.get("pfp_url"),
        verified_addresses=list(verified.get("eth_addresses") or []),
    )
