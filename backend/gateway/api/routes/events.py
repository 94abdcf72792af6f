from fastapi import APIRouter, Depends, Query

from gateway.core.deps import authorize, get_pipeline
from gateway.core.pipeline import AdmissionPipeline
from gateway.schemas.events import EventOut, EventPollOut

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/poll", response_model=EventPollOut)
async def poll_events(
    since: int | None = Query(default=None, ge=0),
    limit: int | None = Query(default=None, ge=1),
    _identity: str = Depends(authorize),
    pipeline: AdmissionPipeline = Depends(get_pipeline),
) -> EventPollOut:
    max_limit = pipeline.config.events_poll_limit
    page = await pipeline.events.poll(since, min(limit or max_limit, max_limit), pipeline.clock())
    return EventPollOut(
        cursor=page.cursor,
        events=[EventOut.model_validate(event) for event in page.events],
    )
