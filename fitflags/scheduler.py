"""
Periodic jobs run from the application lifespan.

Each tick executes due rollout steps and refreshes statistics snapshots of
active experiments, each in its own session, off the event loop.
"""

import asyncio
import logging

from fitflags.database import SessionLocal
from fitflags.services.rollouts import RolloutScheduler
from fitflags.services.statistics import StatisticsEngine
from fitflags.store import SQLAlchemyStore

logger = logging.getLogger(__name__)


def run_periodic_jobs(session_factory=SessionLocal) -> dict:
    db = session_factory()
    try:
        store = SQLAlchemyStore(db)
        report = RolloutScheduler(store).execute_due_steps()
        refreshed = StatisticsEngine(store).refresh_active_experiments()
    finally:
        db.close()
    if report.executed_count or report.errors:
        logger.info(
            f"Executed {report.executed_count}/{report.total_pending} rollout steps; "
            f"{len(report.errors)} errors"
        )
    return {"rollout": report, "statistics_refreshed": refreshed}


async def periodic_jobs_loop(interval_seconds: int, session_factory=SessionLocal):
    logger.info(f"Periodic jobs every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(run_periodic_jobs, session_factory)
        except Exception:
            logger.error("Periodic jobs failed", exc_info=True)
