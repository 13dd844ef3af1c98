from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from datetime import timedelta
from app.core.dependencies import require_internal_token
from app.models.monitoring import Alert, AlertSeverity, ExecutionLock, ExecutionStats
from app.models.reconciliation import AuditRecord, AuditType, ReconciliationResult, ScanResult
from app.models.ticket import SeatAvailability
from app.services import (
    audit_service, inconsistency_detector, lock_service,
    monitoring_service, reconciliation_service, seat_allocator
)

router = APIRouter(dependencies=[Depends(require_internal_token)])


@router.post("/run", response_model=ReconciliationResult)
async def run_reconciliation():
    """
    Run one reconciliation pass now.
    Returns skipped=true when another execution holds the lock.
    """
    return await reconciliation_service.run_reconciliation_pass()


@router.get("/scan", response_model=ScanResult)
async def scan(hours: int = Query(24, ge=1, le=24 * 7)):
    """Read-only preview of orphans and price drift; nothing is changed"""
    return await inconsistency_detector.scan_window(timedelta(hours=hours))


@router.get("/stats", response_model=ExecutionStats)
async def get_stats(hours: int = Query(24, ge=1, le=24 * 30)):
    return await reconciliation_service.get_execution_stats(hours)


@router.get("/alerts", response_model=List[Alert])
async def get_alerts(
    hours: int = Query(24, ge=1, le=24 * 30),
    severity: Optional[AlertSeverity] = None
):
    return await monitoring_service.get_recent_alerts(hours, severity)


@router.get("/audit", response_model=List[AuditRecord])
async def get_audit(
    order_id: Optional[str] = None,
    correction_type: Optional[AuditType] = None,
    hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(200, ge=1, le=1000)
):
    return await audit_service.get_audit_trail(order_id, correction_type, hours, limit)


@router.get("/lock", response_model=Optional[ExecutionLock])
async def get_lock():
    """Current holder of the execution lock, if any"""
    return await lock_service.get_current_lock()


@router.get("/seats", response_model=SeatAvailability)
async def get_seats():
    return await seat_allocator.get_seat_availability()
