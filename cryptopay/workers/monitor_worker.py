import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logging.getLogger("temporalio").setLevel(logging.INFO)
logging.getLogger("temporalio.activity").setLevel(logging.ERROR)
logging.getLogger("temporalio.worker._workflow_instance").setLevel(logging.ERROR)
logger = logging.getLogger("monitor-worker")

from dotenv import load_dotenv
load_dotenv()

import asyncio
from temporalio.client import Client
from temporalio.worker import Worker

from cryptopay.activities.activities import activity_monitor_sweep, activity_settle_expired
from cryptopay.config import CryptoSettings
from cryptopay.db.session import engine, init_db
from cryptopay.workflows.monitor_workflow import TASK_QUEUE, MonitorWorkflow, SettlementWorkflow


async def main():
    settings = CryptoSettings.from_env()
    init_db(engine)
    try:
        logger.info(f"Connecting to Temporal at {settings.temporal_address}...")
        client = await Client.connect(settings.temporal_address)
        worker = Worker(
            client,
            task_queue=TASK_QUEUE,
            workflows=[MonitorWorkflow, SettlementWorkflow],
            activities=[activity_monitor_sweep, activity_settle_expired],
            max_concurrent_activities=4,
        )
        logger.info(f"Monitor worker running on task queue: {TASK_QUEUE}")
        await worker.run()
    except Exception as e:
        logger.error(f"Monitor worker crashed: {str(e)}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
