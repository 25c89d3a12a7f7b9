import asyncio
import logging
from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from cryptopay.activities.activities import activity_monitor_sweep, activity_settle_expired

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logging.getLogger("temporalio").setLevel(logging.INFO)
logging.getLogger("temporalio.activity").setLevel(logging.ERROR)
logging.getLogger("temporalio.worker._workflow_instance").setLevel(logging.ERROR)
logger = logging.getLogger("monitor-workflow")

TASK_QUEUE = "crypto-monitor-tq"
ITERATIONS_PER_RUN = 100

SWEEP_RETRY_POLICY = RetryPolicy(
    maximum_attempts=3,
    initial_interval=timedelta(seconds=1),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(seconds=10),
)


class _PeriodicWorkflow:
    def __init__(self):
        self._stop = False
        self._runs = 0
        self._last_result = None

    @workflow.signal
    async def stop(self):
        self._stop = True

    @workflow.query
    def last_result(self):
        return self._last_result

    @workflow.query
    def runs(self) -> int:
        return self._runs

    async def _tick(self):
        raise NotImplementedError

    async def _loop(self, interval_seconds: int) -> Optional[str]:
        for _ in range(ITERATIONS_PER_RUN):
            try:
                self._last_result = await self._tick()
                self._runs += 1
            except ActivityError as e:
                logger.error(f"[{type(self).__name__}] tick failed: {e}")

            try:
                await workflow.wait_condition(lambda: self._stop, timeout=timedelta(seconds=interval_seconds))
            except asyncio.TimeoutError:
                pass
            if self._stop:
                logger.info(f"[{type(self).__name__}] stop signal received after {self._runs} runs")
                return f"Stopped after {self._runs} runs"
        workflow.continue_as_new(interval_seconds)


@workflow.defn
class MonitorWorkflow(_PeriodicWorkflow):
    """Runs the blockchain monitor sweep (which ends with settlement) on a fixed interval."""

    async def _tick(self):
        summary = await workflow.execute_activity(
            activity_monitor_sweep,
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=SWEEP_RETRY_POLICY,
        )
        logger.info(
            f"[MonitorWorkflow] sweep: {summary['addressesProcessed']} processed, "
            f"{summary['newTransactionsDetected']} new"
        )
        return summary

    @workflow.run
    async def run(self, interval_seconds: int = 30) -> Optional[str]:
        return await self._loop(interval_seconds)


@workflow.defn
class SettlementWorkflow(_PeriodicWorkflow):
    """Expires overdue orders independently of monitor sweeps."""

    async def _tick(self):
        expired = await workflow.execute_activity(
            activity_settle_expired,
            start_to_close_timeout=timedelta(minutes=1),
            retry_policy=SWEEP_RETRY_POLICY,
        )
        logger.info(f"[SettlementWorkflow] {expired} orders expired")
        return expired

    @workflow.run
    async def run(self, interval_seconds: int = 300) -> Optional[str]:
        return await self._loop(interval_seconds)
