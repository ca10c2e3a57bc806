"""
Distributed Lock Service for scheduler leases
Guarantees a single active batch run across process instances with database-backed leases
"""

import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from sqlalchemy import select, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import DistributedLock
from database import get_session_factory
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

SCHEDULER_BATCH_LOCK = "scheduler_batch"


class LockResult:
    """Result object for lock acquisition attempts"""

    def __init__(self, acquired: bool, lock_name: str):
        self.acquired = acquired
        self.lock_name = lock_name
        self.error: Optional[str] = None


class DistributedLockService:
    """Lease rows keyed by lock name; the unique constraint arbitrates between instances"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        default_timeout: int = 900,
        clock: Clock = system_clock,
    ):
        self._session_factory = session_factory
        self.default_timeout = default_timeout
        self.clock = clock
        self.owner_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or get_session_factory()

    async def try_acquire(
        self,
        lock_name: str,
        timeout: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LockResult:
        """Insert the lease row; on collision take over only if the holder's lease expired"""
        lock_timeout = timeout or self.default_timeout
        result = LockResult(acquired=False, lock_name=lock_name)
        now = self.clock.now()

        def new_record() -> DistributedLock:
            return DistributedLock(
                lock_name=lock_name,
                locked_by=self.owner_id,
                locked_at=now,
                expires_at=now + timedelta(seconds=lock_timeout),
                lock_metadata=metadata,
            )

        async with self.session_factory() as session:
            try:
                session.add(new_record())
                await session.commit()
                result.acquired = True
                logger.info(f"🔒 LEASE_ACQUIRED: {lock_name} by {self.owner_id} for {lock_timeout}s")
                return result
            except IntegrityError:
                await session.rollback()

            existing = (
                await session.execute(select(DistributedLock).where(DistributedLock.lock_name == lock_name))
            ).scalar_one_or_none()

            if existing is None:
                # Holder released between our insert and read
                try:
                    session.add(new_record())
                    await session.commit()
                    result.acquired = True
                    return result
                except IntegrityError:
                    await session.rollback()
                    result.error = "Lease taken concurrently"
                    return result

            if existing.expires_at < now:
                logger.warning(
                    f"⚠️ EXPIRED_LEASE_TAKEOVER: {lock_name} held by {existing.locked_by}, "
                    f"expired {existing.expires_at.isoformat()}"
                )
                # Conditional delete so two contenders cannot both take over
                deleted = await session.execute(
                    delete(DistributedLock).where(
                        DistributedLock.lock_name == lock_name,
                        DistributedLock.locked_by == existing.locked_by,
                        DistributedLock.expires_at == existing.expires_at,
                    )
                )
                if deleted.rowcount != 1:
                    await session.rollback()
                    result.error = "Lease taken over concurrently"
                    return result
                try:
                    session.add(new_record())
                    await session.commit()
                    result.acquired = True
                    logger.info(f"🔒 LEASE_ACQUIRED_AFTER_CLEANUP: {lock_name} by {self.owner_id}")
                except IntegrityError:
                    await session.rollback()
                    result.error = "Lease taken over concurrently"
                return result

            result.error = f"Lease held by {existing.locked_by} until {existing.expires_at.isoformat()}"
            logger.warning(f"⏳ LEASE_COLLISION: {lock_name} - {result.error}")
            return result

    async def release(self, lock_name: str) -> bool:
        """Delete the lease row if this instance still owns it"""
        try:
            async with self.session_factory() as session:
                deleted = await session.execute(
                    delete(DistributedLock).where(
                        DistributedLock.lock_name == lock_name,
                        DistributedLock.locked_by == self.owner_id,
                    )
                )
                await session.commit()
            if deleted.rowcount:
                logger.info(f"🔓 LEASE_RELEASED: {lock_name} by {self.owner_id}")
                return True
            logger.warning(f"⚠️ LEASE_NOT_OWNED_ON_RELEASE: {lock_name} ({self.owner_id})")
            return False
        except Exception as e:
            logger.error(f"❌ Failed to release lease {lock_name}: {e}")
            return False

    async def renew(self, lock_name: str, timeout: Optional[int] = None) -> bool:
        """Push expires_at forward; False when this instance no longer holds the lease"""
        lock_timeout = timeout or self.default_timeout
        async with self.session_factory() as session:
            renewed = await session.execute(
                update(DistributedLock)
                .where(
                    DistributedLock.lock_name == lock_name,
                    DistributedLock.locked_by == self.owner_id,
                )
                .values(expires_at=self.clock.now() + timedelta(seconds=lock_timeout))
            )
            await session.commit()
        if renewed.rowcount != 1:
            logger.error(f"❌ LEASE_LOST: {lock_name} is no longer held by {self.owner_id}")
            return False
        logger.debug(f"🔁 LEASE_RENEWED: {lock_name} by {self.owner_id} for {lock_timeout}s")
        return True

    @asynccontextmanager
    async def lease(self, lock_name: str, timeout: Optional[int] = None, metadata: Optional[Dict[str, Any]] = None):
        """
        Usage:
            async with lock_service.lease(SCHEDULER_BATCH_LOCK) as lock:
                if lock.acquired:
                    ...
        """
        result = await self.try_acquire(lock_name, timeout=timeout, metadata=metadata)
        try:
            yield result
        finally:
            if result.acquired:
                await self.release(lock_name)

    async def cleanup_expired_locks(self) -> int:
        """Remove leases whose holders died without releasing"""
        async with self.session_factory() as session:
            deleted = await session.execute(
                delete(DistributedLock).where(DistributedLock.expires_at < self.clock.now())
            )
            await session.commit()
        count = deleted.rowcount or 0
        if count:
            logger.info(f"🧹 Cleaned up {count} expired leases")
        return count
