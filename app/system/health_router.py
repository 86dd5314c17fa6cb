from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.database import get_db

router = APIRouter(tags=["System"])


@router.get("/health")
async def health(db: AsyncIOMotorDatabase = Depends(get_db)):
    """
    Liveness plus database connectivity.
    If this handler is executing, the API itself is up.
    """
    record = {
        "timestamp": datetime.utcnow().isoformat(),
        "status": {"api": "UP"},
    }

    try:
        await db.command("ping")
        record["status"]["database"] = "UP"
    except Exception as e:
        record["status"]["database"] = "DOWN"
        record["error"] = str(e)
        return JSONResponse(status_code=503, content=record)

    return record
