"""
Tick trigger route.

Called by the external scheduler (cron) to run one processing tick.
"""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from taskqueue.api.auth import verify_cron_auth
from taskqueue.api.dependencies import Services
from taskqueue.constants import API_V1_PREFIX
from taskqueue.observability.metrics import get_metrics
from taskqueue.types.job import TickResult
from taskqueue.worker.tick import ProcessingTick

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/queue", tags=["Queue"])


@router.post(
    "/process",
    response_model=TickResult,
    summary="Run a processing tick",
    description="Claim and execute due jobs within a bounded time budget.",
    responses={503: {"model": TickResult, "description": "Tick aborted on a store error"}},
    dependencies=[Depends(verify_cron_auth)],
)
async def process_queue(services: Services):
    """
    Run one tick.

    Returns 503 with the partial result when the store failed mid-tick, so
    the scheduler's logs show the tick as failed.
    """
    result = await ProcessingTick(services).run()

    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE if result.aborted else status.HTTP_200_OK
    )
    get_metrics().record_api_request("process_queue", status_code)

    if result.aborted:
        return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))
    return result
