from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from services.metrics import PROMETHEUS_CONTENT_TYPE, render_prometheus

router = APIRouter(tags=["metrics"])


@router.get("/metrics", operation_id="metrics", response_class=PlainTextResponse)
def metrics() -> PlainTextResponse:
    # in-process counters only; each worker process reports its own
    return PlainTextResponse(render_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
