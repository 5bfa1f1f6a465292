"""External cron triggers for the calendar jobs.

Each trigger runs the same job function the in-process scheduler uses, so
both paths share the job lock and a concurrent call returns ``skipped``.
"""

import logging

from fastapi import APIRouter, Depends

from calsync.auth.session import require_cron_secret
from calsync.jobs.sync_job import (
    refresh_expiring_tokens,
    run_outbox,
    run_retry_queue,
    run_webhook_renewal,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/cron/calendar",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


def _job_response(result) -> dict:
    if result is None:
        return {"status": "skipped", "reason": "job already running"}
    if isinstance(result, dict):
        return {"status": "ok", **result}
    return {"status": "ok", **result.model_dump()}


@router.post("/retry-queue")
async def trigger_retry_queue():
    logger.info("Cron trigger: retry queue")
    return _job_response(await run_retry_queue())


@router.post("/webhook-renewal")
async def trigger_webhook_renewal():
    logger.info("Cron trigger: webhook renewal")
    return _job_response(await run_webhook_renewal())


@router.post("/outbox")
async def trigger_outbox():
    logger.info("Cron trigger: outbox")
    return _job_response(await run_outbox())


@router.post("/token-refresh")
async def trigger_token_refresh():
    logger.info("Cron trigger: token refresh")
    return _job_response(await refresh_expiring_tokens())
