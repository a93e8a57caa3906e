"""Retention job: delete alerts after 7 days and advisories after 30, by creation time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from .config import ADVISORY_RETENTION, ALERT_RETENTION
from .exceptions import StoreError
from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    alerts_deleted: int | None = None
    advisories_deleted: int | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class RetentionJob:
    def __init__(
        self,
        store,
        alert_retention: timedelta = ALERT_RETENTION,
        advisory_retention: timedelta = ADVISORY_RETENTION,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.alert_retention = alert_retention
        self.advisory_retention = advisory_retention
        self.clock = clock

    def run(self) -> CleanupReport:
        now = self.clock()
        report = CleanupReport()

        try:
            report.alerts_deleted = self.store.delete_alerts_before(now - self.alert_retention)
        except StoreError as exc:
            logger.warning("Alert cleanup failed: %s", exc)
            report.errors.append(str(exc))

        try:
            report.advisories_deleted = self.store.delete_advisories_before(now - self.advisory_retention)
        except StoreError as exc:
            logger.warning("Advisory cleanup failed: %s", exc)
            report.errors.append(str(exc))

        logger.info(
            "Cleanup: %s alerts, %s advisories deleted%s",
            report.alerts_deleted if report.alerts_deleted is not None else "no",
            report.advisories_deleted if report.advisories_deleted is not None else "no",
            f" ({len(report.errors)} errors)" if report.errors else "",
        )
        return report
