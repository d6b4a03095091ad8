from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from convkeys.errors import InvalidKeyMaterial, PeerKeyUnavailable
from convkeys.services.crypto import check_key_32

logger = logging.getLogger(__name__)

PublicKeyFetcher = Callable[[str], Awaitable[bytes | None]]


class IdentityKeyProvider(Protocol):
    """Narrow view of the device identity: the local private key and peers' public keys."""

    def get_local_private_key(self) -> bytes: ...

    async def get_public_key(self, user_id: str) -> bytes: ...


class InMemoryDirectory:
    """Identity provider that caches remote public keys.

    ``fetcher`` is called on a cache miss (a network round-trip in a real
    client) and may return None when the user has no key on file.
    """

    def __init__(
        self,
        local_user_id: str,
        local_private_key: bytes,
        *,
        public_keys: dict[str, bytes] | None = None,
        fetcher: PublicKeyFetcher | None = None,
    ):
        self.local_user_id = local_user_id
        self._private_key = check_key_32(local_private_key, name="local private key")
        self._public_keys: dict[str, bytes] = {}
        self._fetcher = fetcher
        self._lock = asyncio.Lock()
        for user_id, key in (public_keys or {}).items():
            self.add_public_key(user_id, key)

    def get_local_private_key(self) -> bytes:
        return self._private_key

    def add_public_key(self, user_id: str, public_key: bytes) -> None:
        self._public_keys[user_id] = check_key_32(public_key, name=f"public key of {user_id}")

    def forget(self, user_id: str) -> None:
        self._public_keys.pop(user_id, None)

    async def get_public_key(self, user_id: str) -> bytes:
        cached = self._public_keys.get(user_id)
        if cached is not None:
            return cached
        if self._fetcher is None:
            raise PeerKeyUnavailable(user_id)
        async with self._lock:
            cached = self._public_keys.get(user_id)
            if cached is not None:
                return cached
            fetched = await self._fetcher(user_id)
            if fetched is None:
                raise PeerKeyUnavailable(user_id)
            try:
                self.add_public_key(user_id, fetched)
            except InvalidKeyMaterial:
                logger.warning("Directory returned an invalid public key for user=%s", user_id)
                raise
            logger.info("Cached public key for user=%s", user_id)
            return self._public_keys[user_id]

    async def refresh(self, user_id: str) -> bytes:
        """Drop the cached key and fetch it again (e.g. after the peer re-keyed)."""
        self.forget(user_id)
        return await self.get_public_key(user_id)


async def can_establish_secure_conversation(directory: IdentityKeyProvider, user_a: str, user_b: str) -> bool:
    for user_id in (user_a, user_b):
        try:
            await directory.get_public_key(user_id)
        except PeerKeyUnavailable:
            return False
    return True
