import time

from fastapi import APIRouter, Depends
from loguru import logger
from sqlalchemy.exc import DBAPIError

from gateway.core.config import GATEWAY_VERSION
from gateway.core.deps import get_pipeline
from gateway.core.errors import StoreUnavailable
from gateway.core.pipeline import AdmissionPipeline
from gateway.schemas.health import HealthOut

router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthOut, summary="Liveness probe")
async def health(pipeline: AdmissionPipeline = Depends(get_pipeline)) -> HealthOut:
    """Report liveness; fails with 500 when the store cannot answer ``SELECT 1``.

    Bypasses the access guard and the rate limiter.
    """

    try:
        await pipeline.store.ping()
    except (StoreUnavailable, DBAPIError) as exc:
        logger.bind(error=str(exc)).error("store_unavailable")
        raise StoreUnavailable() from exc
    return HealthOut(
        version=GATEWAY_VERSION,
        uptime_seconds=round(time.monotonic() - pipeline.started_at, 3),
    )
