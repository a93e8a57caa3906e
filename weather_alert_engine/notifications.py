"""
Notification dispatcher for newly created high / critical alerts.

The in-app record is always attempted. Email goes out only when an email
channel is configured and the farmer has an address. Channels are
independent: one failing never undoes or blocks the other, and nothing is
retried here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .exceptions import NotificationError
from .models import Alert, Channel, Farmer, Severity
from .utils.channels import ChannelOutcome

logger = logging.getLogger(__name__)

NOTIFY_MIN_SEVERITY = Severity.HIGH
TOP_RECOMMENDATIONS = 2


def alert_title(alert: Alert) -> str:
    return f"Weather Alert: {alert.condition.label}"


@dataclass
class DispatchReport:
    alert_id: str
    outcomes: list[ChannelOutcome] = field(default_factory=list)

    def delivered(self, channel: Channel) -> bool:
        return any(o.channel == channel and o.delivered for o in self.outcomes)


class NotificationDispatcher:
    def __init__(self, in_app, email=None, min_severity: Severity = NOTIFY_MIN_SEVERITY):
        self.in_app = in_app
        self.email = email
        self.min_severity = min_severity

    def should_notify(self, alert: Alert) -> bool:
        return alert.severity.at_least(self.min_severity)

    def _send(self, channel, farmer: Farmer, alert: Alert, data: dict) -> ChannelOutcome:
        try:
            return channel.deliver(farmer, alert_title(alert), alert.message, alert.severity, data)
        except NotificationError as exc:
            logger.warning("%s notification failed for farmer %s: %s", channel.channel.value, farmer.farmer_id, exc)
            return ChannelOutcome(channel.channel, delivered=False, error=str(exc))

    def dispatch(self, farmer: Farmer, alert: Alert) -> DispatchReport:
        report = DispatchReport(alert_id=alert.alert_id)
        if not self.should_notify(alert):
            logger.debug("Alert %s is %s, not notifying", alert.alert_id, alert.severity.value)
            return report

        data = {
            "alert_id": alert.alert_id,
            "condition": alert.condition.value,
            "recommendations": alert.recommendations[:TOP_RECOMMENDATIONS],
        }
        report.outcomes.append(self._send(self.in_app, farmer, alert, data))

        if self.email is not None and farmer.email:
            report.outcomes.append(self._send(self.email, farmer, alert, dict(data, recommendations=alert.recommendations)))

        sent = [o.channel.value for o in report.outcomes if o.delivered]
        logger.info("Notified farmer %s of %s via %s", farmer.farmer_id, alert.condition.value, ", ".join(sent) or "no channel")
        return report
