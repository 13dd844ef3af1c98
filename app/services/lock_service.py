import json
import logging
import os
import socket
from typing import Optional
from datetime import datetime, timedelta, timezone
from app.database import get_db_connection
from app.models.monitoring import ExecutionLock

logger = logging.getLogger(__name__)

LOCK_ID = "singleton"


async def acquire(holder_id: str, ttl: timedelta, now: Optional[datetime] = None) -> bool:
    """
    Take the reconciliation lease if it is free or expired.

    The conditional upsert is a single statement: the insert wins when no row
    exists, the update only fires when the stored lease has expired. Two
    concurrent callers therefore cannot both get a row back.
    """
    now = now or datetime.now(timezone.utc)
    expires_at = now + ttl
    process_info = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "started_at": now.isoformat()
    }

    async with get_db_connection() as conn:
        row = await conn.fetchrow("""
            INSERT INTO reconciliation_locks (id, holder_id, locked_at, expires_at, process_info)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE
            SET holder_id = EXCLUDED.holder_id,
                locked_at = EXCLUDED.locked_at,
                expires_at = EXCLUDED.expires_at,
                process_info = EXCLUDED.process_info
            WHERE reconciliation_locks.expires_at <= EXCLUDED.locked_at
            RETURNING holder_id
        """, LOCK_ID, holder_id, now, expires_at, json.dumps(process_info))

    if row is None:
        logger.warning(f"Lock held by another execution, {holder_id} not acquired")
        return False

    logger.info(f"Lock acquired by {holder_id} until {expires_at.isoformat()}")
    return True


async def release(holder_id: str) -> bool:
    """
    Drop the lease only if this holder still owns it. After an expiry-driven
    reclaim the row belongs to the newer holder and must be left alone.
    """
    async with get_db_connection() as conn:
        result = await conn.execute("""
            DELETE FROM reconciliation_locks
            WHERE id = $1 AND holder_id = $2
        """, LOCK_ID, holder_id)

    released = result == "DELETE 1"
    if released:
        logger.info(f"Lock released by {holder_id}")
    else:
        logger.warning(f"Lock not released: {holder_id} no longer holds it")
    return released


async def get_current_lock() -> Optional[ExecutionLock]:
    """Current lease, expired or not"""
    async with get_db_connection(use_transaction=False) as conn:
        row = await conn.fetchrow("""
            SELECT holder_id, locked_at, expires_at, process_info
            FROM reconciliation_locks WHERE id = $1
        """, LOCK_ID)

    if not row:
        return None

    data = dict(row)
    if isinstance(data.get("process_info"), str):
        data["process_info"] = json.loads(data["process_info"])
    elif data.get("process_info") is None:
        data["process_info"] = {}
    return ExecutionLock(**data)
