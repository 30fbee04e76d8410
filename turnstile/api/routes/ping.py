import logging

from fastapi import APIRouter, HTTPException, Request

from turnstile.services.postgres import SchemaNotReadyError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready", summary="Database readiness probe")
async def ready(request: Request) -> dict[str, str]:
    tester = getattr(request.app.state, "postgres_tester", None)
    if tester is None:
        raise HTTPException(status_code=503, detail="Database probe is not configured")
    try:
        await tester.test_connection()
    except SchemaNotReadyError as exc:
        logger.warning("Readiness probe failed: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:
        logger.warning("Readiness probe failed: %s", exc)
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ready"}
