from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_engine
from ..reconciliation import ReconciliationEngine
from ...workers.sync_drainer import run_sync_drainer

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/pending")
def list_pending(store_id: Optional[str] = None, engine: ReconciliationEngine = Depends(get_engine)):
    ops = engine.list_pending_operations(store_id)
    return {"operations": [op.model_dump(mode="json") for op in ops]}


@router.get("/summary")
def pending_summary(store_id: Optional[str] = None, engine: ReconciliationEngine = Depends(get_engine)):
    summary = engine.queue_summary(store_id)
    summary["online"] = engine.is_online()
    return summary


@router.post("/run")
def run_now(engine: ReconciliationEngine = Depends(get_engine)):
    if not engine.is_online():
        raise HTTPException(status_code=409, detail="offline")
    return run_sync_drainer(engine.cfg, engine.client)
