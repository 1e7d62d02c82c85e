"""Health and ready endpoints."""
import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from salon_notify.backend.deps import get_db, get_redis

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "salon-notify"}


@router.get("/ready")
def ready(db: Session = Depends(get_db), r: redis.Redis = Depends(get_redis)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse({"status": "error", "detail": str(e)}, status_code=503)

    try:
        r.ping()
    except Exception as e:
        return JSONResponse({"status": "error", "detail": f"redis: {e}"}, status_code=503)

    return {"status": "ok"}
