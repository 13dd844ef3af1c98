import json
import logging
from typing import List, Optional
from datetime import datetime, timedelta, timezone
from app.database import get_db_connection
from app.models.reconciliation import AuditRecord, AuditType

logger = logging.getLogger(__name__)

INSERT_AUDIT_SQL = """
    INSERT INTO reconciliation_audit
    (execution_id, entity_type, entity_id, order_id, correction_type,
     old_values, new_values, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""


def _audit_args(record: AuditRecord) -> tuple:
    return (
        record.execution_id,
        record.entity_type,
        record.entity_id,
        record.order_id,
        record.correction_type.value,
        json.dumps(record.old_values, default=str),
        json.dumps(record.new_values, default=str),
        json.dumps(record.metadata, default=str),
        record.created_at or datetime.now(timezone.utc),
    )


async def append_audit(conn, record: AuditRecord) -> None:
    """Append one immutable audit row on the caller's transaction"""
    await conn.execute(INSERT_AUDIT_SQL, *_audit_args(record))


async def append_audits(conn, records: List[AuditRecord]) -> None:
    """Append several audit rows on the caller's transaction"""
    if not records:
        return
    await conn.executemany(INSERT_AUDIT_SQL, [_audit_args(r) for r in records])


async def get_audit_trail(
    order_id: Optional[str] = None,
    correction_type: Optional[AuditType] = None,
    hours: int = 24,
    limit: int = 200
) -> List[AuditRecord]:
    """Read back audit rows, newest first"""
    since = datetime.now(timezone.utc) - timedelta(hours=hours)

    async with get_db_connection(use_transaction=False) as conn:
        query = """
            SELECT execution_id, entity_type, entity_id, order_id, correction_type,
                   old_values, new_values, metadata, created_at
            FROM reconciliation_audit
            WHERE created_at >= $1
        """
        params = [since]
        param_idx = 2

        if order_id:
            query += f" AND order_id = ${param_idx}"
            params.append(order_id)
            param_idx += 1

        if correction_type:
            query += f" AND correction_type = ${param_idx}"
            params.append(correction_type.value)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        rows = await conn.fetch(query, *params)

    records = []
    for row in rows:
        data = dict(row)
        for key in ("old_values", "new_values", "metadata"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])
            elif data.get(key) is None:
                data[key] = {}
        data["entity_id"] = str(data["entity_id"])
        if data.get("order_id") is not None:
            data["order_id"] = str(data["order_id"])
        records.append(AuditRecord(**data))
    return records
