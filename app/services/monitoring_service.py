import json
import logging
from typing import List, Optional
from datetime import datetime, timedelta, timezone
from app.database import get_db_connection, check_connection, STORE_ERRORS
from app.config import settings
from app.models.monitoring import (
    AlertRule, Alert, AlertSeverity, ComparisonOperator, ExecutionMetrics,
    ExecutionStats, HealthReport, HealthCheckItem, HealthStatus
)
from app.services.alert_notifier import alert_notifier

logger = logging.getLogger(__name__)

ALERT_RULES = [
    AlertRule(
        metric="duration_seconds",
        operator=ComparisonOperator.GT,
        threshold=settings.alert_max_duration_seconds,
        severity=AlertSeverity.MEDIUM,
        description=f"Execution took longer than {settings.alert_max_duration_seconds:g}s"
    ),
    AlertRule(
        metric="api_success_rate",
        operator=ComparisonOperator.LT,
        threshold=settings.alert_min_api_success_rate,
        severity=AlertSeverity.HIGH,
        description=f"API success rate below {settings.alert_min_api_success_rate:.0%}"
    ),
    AlertRule(
        metric="api_success_rate",
        operator=ComparisonOperator.LT,
        threshold=settings.alert_critical_api_success_rate,
        severity=AlertSeverity.CRITICAL,
        description=f"API success rate below {settings.alert_critical_api_success_rate:.0%}"
    ),
    AlertRule(
        metric="errors_count",
        operator=ComparisonOperator.GT,
        threshold=settings.alert_max_errors,
        severity=AlertSeverity.MEDIUM,
        description=f"More than {settings.alert_max_errors} errors in one execution"
    ),
    AlertRule(
        metric="lock_acquisition_seconds",
        operator=ComparisonOperator.GT,
        threshold=settings.alert_max_lock_acquisition_seconds,
        severity=AlertSeverity.LOW,
        description="Lock acquisition took too long"
    ),
]

NOTIFY_SEVERITIES = {AlertSeverity.HIGH, AlertSeverity.CRITICAL}


def evaluate_alerts(
    metrics: ExecutionMetrics,
    rules: Optional[List[AlertRule]] = None,
    now: Optional[datetime] = None
) -> List[Alert]:
    """One alert per breached rule"""
    now = now or datetime.now(timezone.utc)
    alerts = []

    for rule in rules if rules is not None else ALERT_RULES:
        value = getattr(metrics, rule.metric, None)
        if rule.is_triggered(value):
            alerts.append(Alert(
                execution_id=metrics.execution_id,
                metric=rule.metric,
                threshold_value=rule.threshold,
                actual_value=float(value),
                severity=rule.severity,
                description=rule.description,
                triggered_at=now
            ))

    return alerts


async def record(metrics: ExecutionMetrics) -> List[Alert]:
    """
    Persist one run's metrics and every alert it triggers.

    Metric and alert rows are written in the same transaction, so an alert
    never exists without its run and a run is never stored without its alerts.
    """
    alerts = evaluate_alerts(metrics)

    async with get_db_connection() as conn:
        await conn.execute("""
            INSERT INTO reconciliation_metrics (
                execution_id, recorded_at, duration_ms, orders_processed,
                orders_corrected, errors_count, api_calls_count, api_success_rate,
                lock_acquisition_time_ms, batch_corrections, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
        """,
            metrics.execution_id,
            metrics.recorded_at,
            metrics.duration_ms,
            metrics.orders_processed,
            metrics.orders_corrected,
            metrics.errors_count,
            metrics.api_calls_count,
            metrics.api_success_rate,
            metrics.lock_acquisition_time_ms,
            metrics.batch_corrections,
            json.dumps(metrics.metadata, default=str)
        )

        if alerts:
            await conn.executemany("""
                INSERT INTO reconciliation_alerts (
                    execution_id, metric, threshold_value, actual_value,
                    severity, description, triggered_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            """, [
                (a.execution_id, a.metric, a.threshold_value, a.actual_value,
                 a.severity.value, a.description, a.triggered_at)
                for a in alerts
            ])

    logger.info(
        f"Metrics recorded for {metrics.execution_id}: {metrics.duration_ms}ms, "
        f"processed={metrics.orders_processed}, corrected={metrics.orders_corrected}, "
        f"errors={metrics.errors_count}, api_success={metrics.api_success_rate:.1%}"
    )

    if alerts:
        logger.warning(
            f"Alerts triggered for {metrics.execution_id}: "
            + ", ".join(f"{a.severity.value}:{a.metric}={a.actual_value:g}" for a in alerts)
        )
        urgent = [a for a in alerts if a.severity in NOTIFY_SEVERITIES]
        if urgent and alert_notifier:
            await alert_notifier.send_alerts(metrics.execution_id, urgent)

    return alerts


async def get_execution_stats(hours: int = 24) -> ExecutionStats:
    """Aggregate the runs recorded in the last N hours"""
    since = datetime.now(timezone.utc) - timedelta(hours=hours)

    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch("""
            SELECT execution_id, recorded_at, duration_ms, orders_processed,
                   orders_corrected, errors_count, api_success_rate
            FROM reconciliation_metrics
            WHERE recorded_at >= $1
            ORDER BY recorded_at DESC
        """, since)

    if not rows:
        return ExecutionStats(hours=hours)

    total = len(rows)
    return ExecutionStats(
        hours=hours,
        total_executions=total,
        avg_duration_ms=round(sum(r['duration_ms'] for r in rows) / total),
        total_processed=sum(r['orders_processed'] for r in rows),
        total_corrected=sum(r['orders_corrected'] for r in rows),
        avg_success_rate=sum(float(r['api_success_rate']) for r in rows) / total,
        recent_errors=sum(1 for r in rows if r['errors_count'] > 0),
        last_execution=rows[0]['recorded_at']
    )


async def get_recent_alerts(
    hours: int = 24,
    severity: Optional[AlertSeverity] = None
) -> List[Alert]:
    """Alerts raised in the last N hours, newest first"""
    since = datetime.now(timezone.utc) - timedelta(hours=hours)

    async with get_db_connection(use_transaction=False) as conn:
        query = """
            SELECT execution_id, metric, threshold_value, actual_value,
                   severity, description, triggered_at
            FROM reconciliation_alerts
            WHERE triggered_at >= $1
        """
        params = [since]

        if severity:
            query += " AND severity = $2"
            params.append(severity.value)

        query += " ORDER BY triggered_at DESC"
        rows = await conn.fetch(query, *params)

    return [Alert(**dict(row)) for row in rows]


async def health_check() -> HealthReport:
    """
    Aggregate store connectivity, recency of the last run and recent critical
    alerts into healthy / warning / critical.
    """
    checks = []
    status = HealthStatus.HEALTHY

    try:
        await check_connection()
        checks.append(HealthCheckItem(name="Store Connection", status=True, message="OK"))
    except STORE_ERRORS as e:
        checks.append(HealthCheckItem(name="Store Connection", status=False, message=str(e)))
        return HealthReport(status=HealthStatus.CRITICAL, checks=checks, checked_at=datetime.now(timezone.utc))

    try:
        stats = await get_execution_stats(settings.health_recent_run_hours)
        has_recent = stats.total_executions > 0
        checks.append(HealthCheckItem(
            name="Recent Execution",
            status=has_recent,
            message="OK" if has_recent else f"No execution in the last {settings.health_recent_run_hours}h"
        ))
        if not has_recent:
            status = HealthStatus.WARNING

        critical = await get_recent_alerts(hours=1, severity=AlertSeverity.CRITICAL)
        checks.append(HealthCheckItem(
            name="Critical Alerts",
            status=not critical,
            message=f"{len(critical)} critical alert(s)" if critical else "OK"
        ))
        if critical:
            status = HealthStatus.CRITICAL

    except STORE_ERRORS as e:
        checks.append(HealthCheckItem(name="Health Check", status=False, message=f"Error: {e}"))
        status = HealthStatus.CRITICAL

    return HealthReport(status=status, checks=checks, checked_at=datetime.now(timezone.utc))
