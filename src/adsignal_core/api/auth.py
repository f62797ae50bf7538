"""Store-scoped API key authentication.

Keys come from the environment:
- ADSIGNAL_API_KEY: operator key, valid for every store
- ADSIGNAL_STORE_KEYS: per-store keys as "shop-1=key1,shop-2=key2"; one key
  may be listed for several stores

Routes resolve the caller's ApiKeyScope once and check it against the
store_id of each request.
"""
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader


logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-ADSIGNAL-API-KEY", auto_error=False)


@dataclass(frozen=True)
class ApiKeyScope:
    """Stores a validated key may act on; None means every store."""

    store_ids: Optional[frozenset[str]] = None

    def allows(self, store_id: str) -> bool:
        return self.store_ids is None or store_id in self.store_ids

    def require_store(self, store_id: str) -> None:
        """Raise 403 unless the key covers store_id."""
        if not self.allows(store_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"API key is not valid for store {store_id}",
            )


def parse_store_keys(raw: Optional[str]) -> dict[str, frozenset[str]]:
    """Map each per-store key to the stores it unlocks.

    Args:
        raw: ADSIGNAL_STORE_KEYS value ("store=key" entries, comma separated)

    Returns:
        {key: stores}; malformed entries are skipped with a warning
    """
    keys: dict[str, frozenset[str]] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        store_id, sep, key = entry.partition("=")
        store_id, key = store_id.strip(), key.strip()
        if not sep or not store_id or not key:
            # Never log the key itself
            logger.warning("Ignoring malformed ADSIGNAL_STORE_KEYS entry for store %r", store_id)
            continue
        keys[key] = keys.get(key, frozenset()) | {store_id}
    return keys


def _same_key(supplied: str, expected: str) -> bool:
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(
    api_key: Annotated[str | None, Security(api_key_header)] = None
) -> ApiKeyScope:
    """Resolve the X-ADSIGNAL-API-KEY header to the stores it may access.

    Returns:
        ApiKeyScope of the matching key

    Raises:
        HTTPException: 401 if the key is missing or matches no configured key
        RuntimeError: if neither ADSIGNAL_API_KEY nor ADSIGNAL_STORE_KEYS is set
    """
    operator_key = os.getenv("ADSIGNAL_API_KEY")
    store_keys = parse_store_keys(os.getenv("ADSIGNAL_STORE_KEYS"))

    if not operator_key and not store_keys:
        raise RuntimeError(
            "No API keys configured: set ADSIGNAL_API_KEY or ADSIGNAL_STORE_KEYS"
        )

    if api_key:
        if operator_key and _same_key(api_key, operator_key):
            return ApiKeyScope()
        for key, store_ids in store_keys.items():
            if _same_key(api_key, key):
                return ApiKeyScope(store_ids)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid API key",
        headers={"WWW-Authenticate": "API-Key"},
    )
