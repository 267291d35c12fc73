"""
Read-through permission cache.

Sits in front of PermissionMatrixService.check_permission. Entries are
one-character flags ("1" granted, "0" denied) under

    perm:{workspace_id}:{user_id}:{resource_type}:{permission}

with a fixed TTL. The cache never decides an answer on its own: any backend
failure falls through to the matrix engine, and write/invalidation failures
are logged and dropped. Staleness is bounded by the TTL.
"""
import re
from typing import Optional, TYPE_CHECKING

from app.core import config
from app.core.background import fire_and_forget
from app.core.cache import CacheBackend
from app.utils import get_logger

if TYPE_CHECKING:
    from app.features.custom_roles.matrix_service import PermissionMatrixService


log = get_logger(__name__)

KEY_PREFIX = "perm"

# Glob metacharacters, the key delimiter and whitespace
_UNSAFE_KEY_CHARS = re.compile(r"[*?\[\]^\\:\s]")


def sanitize_key_component(value: str) -> str:
    """Strip characters that would let a component widen a SCAN pattern or forge another key."""
    return _UNSAFE_KEY_CHARS.sub("", str(value))


def build_cache_key(user_id: str, workspace_id: str, resource_type: str, permission: str) -> str:
    parts = [workspace_id, user_id, resource_type, permission]
    return ":".join([KEY_PREFIX, *(sanitize_key_component(p) for p in parts)])


class PermissionCacheService:
    """Cached point checks plus scoped invalidation."""

    def __init__(
        self,
        backend: Optional[CacheBackend],
        matrix_service: Optional["PermissionMatrixService"] = None,
        ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS,
        delete_batch_size: int = config.PERMISSION_CACHE_SCAN_BATCH_SIZE,
    ):
        self.backend = backend
        self.matrix_service = matrix_service
        self.ttl_seconds = ttl_seconds
        self.delete_batch_size = delete_batch_size

    async def check_permission(self, user_id: str, workspace_id: str, resource_type: str, permission: str) -> bool:
        """
        Check a permission, serving from cache when possible.

        A cache read failure is treated as a miss. On a miss the matrix
        engine answers and the result is written back in the background.
        """
        if self.matrix_service is None:
            raise RuntimeError("PermissionCacheService has no matrix service attached")

        if self.backend is None:
            return await self.matrix_service.check_permission(user_id, workspace_id, resource_type, permission)

        key = build_cache_key(user_id, workspace_id, resource_type, permission)

        try:
            cached = await self.backend.get(key)
        except Exception as e:
            log.warning(f"Permission cache read failed for {key}, falling back to database: {e}")
            cached = None

        if cached is not None:
            return cached == "1"

        granted = await self.matrix_service.check_permission(user_id, workspace_id, resource_type, permission)
        fire_and_forget(self._write(key, granted), f"cache write {key}")
        return granted

    async def invalidate_user_permissions(self, workspace_id: str, user_id: str) -> None:
        """Drop cached answers for one member (role or membership change)."""
        pattern = ":".join([KEY_PREFIX, sanitize_key_component(workspace_id), sanitize_key_component(user_id), "*"])
        await self._invalidate(pattern)

    async def invalidate_role_permissions(self, workspace_id: str) -> None:
        """
        Drop cached answers for every member of a workspace.

        Used on any role permission change. The cache does not track which
        users hold which role, so the whole workspace is cleared.
        """
        pattern = ":".join([KEY_PREFIX, sanitize_key_component(workspace_id), "*"])
        await self._invalidate(pattern)

    async def invalidate_all(self) -> None:
        await self._invalidate(f"{KEY_PREFIX}:*")

    async def _write(self, key: str, granted: bool) -> None:
        try:
            await self.backend.set(key, "1" if granted else "0", self.ttl_seconds)
        except Exception as e:
            log.warning(f"Permission cache write failed for {key}: {e}")

    async def _invalidate(self, pattern: str) -> None:
        """Scan for matching keys and delete them in bounded batches. Never raises."""
        if self.backend is None:
            return

        try:
            keys = await self.backend.scan_keys(pattern)
            for start in range(0, len(keys), self.delete_batch_size):
                await self.backend.delete(*keys[start:start + self.delete_batch_size])
        except Exception as e:
            log.warning(f"Permission cache invalidation failed for {pattern}: {e}")
            return

        if keys:
            log.debug(f"Invalidated {len(keys)} permission cache entries matching {pattern}")
