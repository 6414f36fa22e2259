import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health(request: Request):
    state = request.app.state
    report = {"status": "healthy", "database": "unknown", "redis": "unknown"}
    status_code = 200

    try:
        await state.gateway.store.ping()
        report["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check failed: database error: {e}")
        report.update(status="unhealthy", database="disconnected", error=str(e))
        status_code = 503

    try:
        await state.redis.ping()
        report["redis"] = "connected"
    except Exception as e:
        logger.error(f"Health check failed: redis error: {e}")
        report.update(status="unhealthy", redis="disconnected")
        report.setdefault("error", str(e))
        status_code = 503

    report["timestamp"] = datetime.now(timezone.utc).isoformat()
    return JSONResponse(status_code=status_code, content=report)
