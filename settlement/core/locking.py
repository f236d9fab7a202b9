"""
Per-order mutual exclusion.

State-changing operations on an order hold an in-process lock keyed by the
order id and then lock the order row with SELECT ... FOR UPDATE. The first
serialises coroutines inside one worker; the second serialises workers that
share the database (PostgreSQL). SQLite ignores FOR UPDATE, so tests rely on
the in-process lock alone.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.core.exceptions import OrderNotFound
from settlement.database.models import Order

logger = structlog.get_logger(__name__)


class OrderLocks:
    """Registry of asyncio locks keyed by order id."""

    def __init__(self) -> None:
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._holders: Dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the lock for one order; waiters queue in FIFO order."""
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._holders[order_id] = self._holders.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[order_id] -= 1
            if self._holders[order_id] == 0:
                # Nobody waits on this key anymore
                del self._holders[order_id]
                del self._locks[order_id]

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every service instance in the process
order_locks = OrderLocks()


async def lock_order_row(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """
    Load an order with a row lock, refreshing any stale identity-map copy.

    Raises:
        OrderNotFound: If the order does not exist
    """
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order
