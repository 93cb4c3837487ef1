"""Cluster-wide named barrier backed by Redis.

Every participant, whether the driver or a job running on any node, reaches
the same barrier through the cluster's Redis keys:

    perfharness:<cluster>:barrier:<name>:parties   expected party count
    perfharness:<cluster>:barrier:<name>:count     arrivals so far (INCR)
    perfharness:<cluster>:barrier:<name>:state     "released" | "broken"
    perfharness:<cluster>:barrier:<name>:release   wake-up tokens for waiters

The arrival index handed back to each caller is the value of the atomic
INCR minus one, so it is unique in [0, parties) and follows arrival order.
The state key is only ever written with SET NX: whichever of "released"
(last arrival) or "broken" (first timeout) lands first wins, and every
blocked party is woken with the winning outcome. There is never a partial
release.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from common.errors import BarrierError, BarrierTimeoutError
from common.messaging.redis_client import RedisClient

logger = logging.getLogger(__name__)


class Barrier:
    """A named rendezvous point for a fixed number of parties."""
    
    RELEASED = "released"
    BROKEN = "broken"
    
    def __init__(
        self,
        redis_client: RedisClient,
        namespace: str,
        name: str,
        parties: int,
        ttl: int = 3600,
    ):
        if parties < 1:
            raise ValueError(f"Barrier '{name}' needs at least one party, got {parties}")
        self.redis_client = redis_client
        self.namespace = namespace
        self.name = name
        self.parties = parties
        self.ttl = ttl
        
        base = RedisClient.key(namespace, "barrier", name)
        self._parties_key = f"{base}:parties"
        self._count_key = f"{base}:count"
        self._state_key = f"{base}:state"
        self._release_key = f"{base}:release"
    
    def __repr__(self) -> str:
        return f"Barrier(name={self.name!r}, parties={self.parties})"
    
    async def wait(self, timeout: Optional[float] = None) -> int:
        """Arrive at the barrier and block until every party has arrived.
        
        Returns this caller's zero-based arrival index. Raises
        BarrierTimeoutError if the deadline passes, or if another party's
        deadline passed first; in both cases no party is released.
        """
        if timeout is not None and timeout <= 0:
            raise ValueError(f"Barrier timeout must be positive, got {timeout}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        
        await self._register_parties()
        
        if await self.redis_client.get(self._state_key) == self.BROKEN:
            raise BarrierTimeoutError(self.name, self.parties, detail="barrier already broken")
        
        arrived = await self.redis_client.incr(self._count_key)
        await self.redis_client.expire(self._count_key, self.ttl)
        if arrived > self.parties:
            raise BarrierError(
                f"Barrier '{self.name}' got arrival #{arrived} but expects only {self.parties} parties"
            )
        index = arrived - 1
        logger.debug(f"Arrived at barrier '{self.name}' as #{index} ({arrived}/{self.parties})")
        
        if arrived == self.parties:
            if await self._settle(self.RELEASED):
                logger.info(f"Barrier '{self.name}' released ({self.parties} parties)")
                return index
            raise BarrierTimeoutError(
                self.name, self.parties, arrived, "broken before the last party arrived"
            )
        
        if await self.redis_client.get(self._state_key) == self.BROKEN:
            raise BarrierTimeoutError(self.name, self.parties, arrived, "barrier already broken")
        
        if deadline is None:
            token = await self.redis_client.blpop(self._release_key, timeout=0)
        else:
            remaining = deadline - loop.time()
            token = None
            if remaining > 0:
                token = await self.redis_client.blpop(self._release_key, timeout=remaining)
        if token is None:
            if await self._settle(self.BROKEN):
                count = await self.redis_client.get(self._count_key)
                logger.error(
                    f"Barrier '{self.name}' timed out after {timeout}s with "
                    f"{count}/{self.parties} parties"
                )
                raise BarrierTimeoutError(
                    self.name, self.parties, int(count or 0), f"timed out after {timeout}s"
                )
            # Lost the race against the settling party; its tokens are queued.
            token = await self.redis_client.get(self._state_key)
            await self.redis_client.lpop(self._release_key)
        
        if token == self.RELEASED:
            return index
        raise BarrierTimeoutError(
            self.name, self.parties, detail="broken by another party's timeout"
        )
    
    async def _register_parties(self) -> None:
        await self.redis_client.set(self._parties_key, self.parties, ex=self.ttl, nx=True)
        registered = await self.redis_client.get(self._parties_key)
        if registered is not None and int(registered) != self.parties:
            raise BarrierError(
                f"Barrier '{self.name}' already exists with {registered} parties, "
                f"cannot reuse it with {self.parties}"
            )
    
    async def _settle(self, outcome: str) -> bool:
        """Try to settle the barrier; wakes every waiter when this call wins."""
        if not await self.redis_client.set(self._state_key, outcome, ex=self.ttl, nx=True):
            return False
        # One token per party is enough for every possible waiter.
        await self.redis_client.rpush(self._release_key, *([outcome] * self.parties))
        await self.redis_client.expire(self._release_key, self.ttl)
        return True
    
    async def state(self) -> Optional[str]:
        """Current state: None while open, else 'released' or 'broken'."""
        return await self.redis_client.get(self._state_key)
    
    async def arrived(self) -> int:
        """Number of arrivals registered so far."""
        return int(await self.redis_client.get(self._count_key) or 0)
