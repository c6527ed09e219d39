"""Public busy-time endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from studiolink.api.deps import get_busy_time
from studiolink.api.models import BusyFailure, BusyItem, BusyResponse
from studiolink.busy_time import BusyTimeAggregator
from studiolink.errors import AllSourcesFailed

router = APIRouter(prefix="/api/artists", tags=["busy"])


@router.get("/{artist_id}/busy")
async def artist_busy(
    artist_id: str,
    busy_time: BusyTimeAggregator = Depends(get_busy_time),
) -> JSONResponse:
    """Return the artist's busy intervals for the lookahead window.

    Sources that failed are listed under ``failures`` and ``partial`` is set;
    the request itself only fails when every attempted source failed.
    """
    result = await busy_time.aggregate(artist_id)
    if result.all_failed:
        codes = ", ".join(sorted({failure.error_code for failure in result.failures}))
        raise AllSourcesFailed(f"All busy-time sources failed ({codes})")

    body = BusyResponse(
        artist_id=result.artist_id,
        window_start=result.window_start,
        window_end=result.window_end,
        partial=result.partial,
        items=[
            BusyItem(
                title=interval.label,
                start=interval.start,
                end=interval.end,
                source=interval.source,
                source_kind=str(interval.source_kind),
            )
            for interval in result.intervals
        ],
        failures=[
            BusyFailure(
                source=failure.source,
                source_kind=str(failure.source_kind),
                code=failure.error_code,
                message=failure.message,
            )
            for failure in result.failures
        ],
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))
