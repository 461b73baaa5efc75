"""Liveness and database readiness probes."""
from fastapi import APIRouter, HTTPException

from telebill.db.session import check_db_connection

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    return {"status": "ok"}


@router.get("/health/db")
def health_db() -> dict:
    """503 when the billing database cannot answer a trivial query."""
    if not check_db_connection():
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"status": "ok", "database": "reachable"}
