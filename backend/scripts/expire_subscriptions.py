import asyncio
import logging
import uuid

from backend.app.db import db
from backend.app.expiry import run_expire_subscriptions


logger = logging.getLogger("tribe-expire-subscriptions-script")


async def _run() -> int:
    job_run_id = str(uuid.uuid4())
    await db.create_pool()
    if db.pool is None:
        logger.error("EXPIRE_SUBSCRIPTIONS_JOB_ABORT job_run_id=%s reason=no_db_pool", job_run_id)
        return 1

    try:
        async with db.pool.acquire() as conn:
            stats = await run_expire_subscriptions(conn, job_run_id=job_run_id)
            logger.info(
                "EXPIRE_SUBSCRIPTIONS_JOB_SUMMARY job_run_id=%s scanned=%s expired=%s notified=%s",
                job_run_id,
                stats.scanned,
                stats.expired,
                stats.notified,
            )
            return 0
    finally:
        await db.close_pool()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    exit_code = asyncio.run(_run())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
