"""
Discord notifications for reconciliation alerts and sold-out orders.
Operators get high/critical alerts in real time; everything is persisted anyway.
"""
import httpx
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging
from app.config import settings
from app.models.monitoring import Alert, AlertSeverity

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    AlertSeverity.LOW: 3447003,        # Blue
    AlertSeverity.MEDIUM: 16776960,    # Yellow
    AlertSeverity.HIGH: 15105570,      # Orange
    AlertSeverity.CRITICAL: 15158332,  # Red
}


class DiscordAlertNotifier:
    """Send alert notifications to a Discord webhook"""

    def __init__(self, webhook_url: str):
        self.webhook_url = webhook_url

    async def _post(self, payload: dict) -> bool:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.webhook_url, json=payload)
                return response.status_code in (200, 204)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification to Discord: {e}")
            return False

    async def send_alerts(self, execution_id: str, alerts: List[Alert]) -> bool:
        """One embed per alert, highest severity first"""
        if not alerts:
            return True

        order = list(AlertSeverity)
        ranked = sorted(alerts, key=lambda a: order.index(a.severity), reverse=True)

        embeds = [
            {
                "title": f"[{alert.severity.value.upper()}] {alert.description}",
                "color": SEVERITY_COLORS[alert.severity],
                "timestamp": alert.triggered_at.isoformat(),
                "fields": [
                    {"name": "Metric", "value": alert.metric, "inline": True},
                    {"name": "Value", "value": str(alert.actual_value), "inline": True},
                    {"name": "Threshold", "value": str(alert.threshold_value), "inline": True},
                    {"name": "Execution", "value": execution_id, "inline": False},
                ]
            }
            for alert in ranked[:10]
        ]

        sent = await self._post({"embeds": embeds, "username": "Reconciliation Monitor"})
        if sent:
            logger.info(f"Sent {len(embeds)} alert(s) for execution {execution_id}")
        return sent

    async def send_warning(
        self,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Send warning notification to Discord"""
        embed = {
            "title": f"Warning: {title}",
            "description": message[:2000],
            "color": SEVERITY_COLORS[AlertSeverity.HIGH],
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        if context:
            embed["fields"] = [
                {"name": k, "value": str(v)[:1024], "inline": True}
                for k, v in context.items()
            ]

        return await self._post({"embeds": [embed], "username": "Ticket Issuance"})


# Global notifier instance
alert_notifier = None
if settings.discord_alerts_webhook_url:
    alert_notifier = DiscordAlertNotifier(settings.discord_alerts_webhook_url)
