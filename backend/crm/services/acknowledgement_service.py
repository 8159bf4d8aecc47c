"""ATA CRM — Acknowledgement store: action keys a user has dismissed."""
import logging

import redis.asyncio as redis

from crm.core.redis import ack_set_key

logger = logging.getLogger(__name__)


class AcknowledgementStore:
    async def acknowledged(self, user_id: int) -> frozenset[str]:
        raise NotImplementedError

    async def acknowledge(self, user_id: int, key: str) -> None:
        raise NotImplementedError


class RedisAcknowledgementStore(AcknowledgementStore):
    """One Redis set per user; membership means the action is hidden."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    async def acknowledged(self, user_id: int) -> frozenset[str]:
        members = await self._redis.smembers(ack_set_key(user_id))
        return frozenset(members)

    async def acknowledge(self, user_id: int, key: str) -> None:
        await self._redis.sadd(ack_set_key(user_id), key)
        logger.debug("User %s acknowledged %s", user_id, key)


def order_id_from_key(key: str) -> int:
    """Action keys start with ``{order_id}_``."""
    head, _, rest = key.partition("_")
    if not head.isdigit() or not rest:
        raise ValueError(f"Malformed action key: {key!r}")
    return int(head)
