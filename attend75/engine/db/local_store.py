import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..models.ledger_models import UserSettings
from ..models.sync_models import LedgerSnapshot
from ..services.errors import LocalStoreError

logger = logging.getLogger(__name__)


class LocalStore:
    """
    Device-local persistence. Keeps the guest ledger as one JSON document and
    caches the signed-in user's settings.
    """

    def __init__(self, pool: redis.ConnectionPool, prefix: str = "attend75"):
        self._redis = redis.Redis(connection_pool=pool, decode_responses=True)
        self._prefix = prefix

    @property
    def guest_key(self) -> str:
        return f"{self._prefix}:guest_ledger"

    @property
    def settings_key(self) -> str:
        return f"{self._prefix}:settings"

    # ===== Guest ledger =====

    async def save_snapshot(self, snapshot: LedgerSnapshot):
        try:
            await self._redis.set(self.guest_key, snapshot.model_dump_json())
        except redis.RedisError as e:
            raise LocalStoreError(f"Could not save the guest ledger: {e}") from e

    async def get_snapshot(self) -> Optional[LedgerSnapshot]:
        try:
            snapshot_json = await self._redis.get(self.guest_key)
        except redis.RedisError as e:
            raise LocalStoreError(f"Could not read the guest ledger: {e}") from e
        if not snapshot_json:
            return None
        try:
            return LedgerSnapshot.model_validate_json(snapshot_json)
        except PydanticValidationError as e:
            raise LocalStoreError(f"Stored guest ledger is corrupt: {e}") from e

    async def clear_snapshot(self) -> int:
        try:
            return await self._redis.delete(self.guest_key)
        except redis.RedisError as e:
            raise LocalStoreError(f"Could not delete the guest ledger: {e}") from e

    # ===== Settings cache =====

    async def save_settings(self, settings: UserSettings):
        try:
            await self._redis.set(self.settings_key, settings.model_dump_json())
        except redis.RedisError as e:
            raise LocalStoreError(f"Could not cache settings: {e}") from e

    async def get_settings(self) -> Optional[UserSettings]:
        try:
            settings_json = await self._redis.get(self.settings_key)
        except redis.RedisError as e:
            raise LocalStoreError(f"Could not read cached settings: {e}") from e
        if not settings_json:
            return None
        try:
            return UserSettings.model_validate_json(settings_json)
        except PydanticValidationError:
            logger.warning("Cached settings are unreadable; ignoring them.")
            return None

    async def clear_settings(self) -> int:
        try:
            return await self._redis.delete(self.settings_key)
        except redis.RedisError as e:
            raise LocalStoreError(f"Could not delete cached settings: {e}") from e
