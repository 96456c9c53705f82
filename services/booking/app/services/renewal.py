import logging
from typing import Optional

from app.services.subscription_manager import RenewalReport, SubscriptionManager
from shared import PeriodicTask

logger = logging.getLogger(__name__)

RENEWAL_TASK_NAME = "graph-subscription-renewal"


class RenewalScheduler:
    """Hourly subscription renewal, owned by the application lifespan.

    The first pass runs shortly after start so state left behind by a restart
    is healed without waiting a full period.
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        *,
        interval: float = 3600.0,
        initial_delay: float = 30.0,
    ) -> None:
        self._manager = manager
        self._task = PeriodicTask(
            RENEWAL_TASK_NAME,
            self.run_once,
            interval=interval,
            initial_delay=initial_delay,
        )
        self.last_report: Optional[RenewalReport] = None

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        if not self._manager.configured:
            logger.info("Microsoft Graph not configured; subscription renewal disabled")
            return
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def run_once(self) -> RenewalReport:
        report = await self._manager.renew_expiring()
        self.last_report = report
        if report.renewed or report.recreated or report.failed:
            logger.info(
                "Subscription renewal pass: %d renewed, %d recreated, %d failed",
                report.renewed,
                report.recreated,
                report.failed,
            )
        return report
