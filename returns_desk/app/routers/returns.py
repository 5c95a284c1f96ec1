from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..deps import SessionRegistry, get_engine, get_registry, get_session
from ..models import ReplacementLine
from ..reconciliation import ReconciliationEngine, ReturnSession
from ..validation import PaymentMethod, RefundType, RestockAction

router = APIRouter(tags=["returns"])


class LookupIn(BaseModel):
    reference: str
    store_id: Optional[str] = None
    # Re-use an existing session instead of starting a new one.
    session_id: Optional[str] = None


class DraftItemPatch(BaseModel):
    quantity: Optional[int] = None
    restock_action: Optional[RestockAction] = None
    refund_type: Optional[RefundType] = None
    refund_amount: Optional[str] = None


class SubmitIn(BaseModel):
    reason: Optional[str] = None
    acknowledge_offline_risk: bool = False


class SwapQuoteIn(BaseModel):
    session_id: str
    sale_item_id: str
    quantity: int = 1
    new_products: List[ReplacementLine] = Field(default_factory=list)


class SwapSubmitIn(SwapQuoteIn):
    restock_action: RestockAction = "RESTOCK"
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None
    acknowledge_offline_risk: bool = False


def _session_out(session: ReturnSession) -> dict:
    return {
        "session_id": session.id,
        "store_id": session.store_id,
        "reference": session.reference,
        "state": session.state,
        "submit_state": session.submit_state,
        "offline": session.offline,
        "sale": session.view.model_dump(mode="json") if session.view is not None else None,
        "draft": {k: v.model_dump(mode="json") for k, v in session.draft.entries.items()},
        "totals": session.totals().model_dump(mode="json"),
    }


def _acknowledged(flag: bool):
    return lambda _loss, _message: bool(flag)


def _session_by_id(registry: SessionRegistry, session_id: str) -> ReturnSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session


@router.post("/returns/lookup")
def lookup_sale(
    data: LookupIn,
    engine: ReconciliationEngine = Depends(get_engine),
    registry: SessionRegistry = Depends(get_registry),
):
    if data.session_id:
        session = _session_by_id(registry, data.session_id)
    else:
        session = registry.add(engine.new_session(data.store_id))
    store_id = (data.store_id or session.store_id or "").strip()
    if not store_id:
        raise HTTPException(status_code=400, detail="store_id is required")
    session.store_id = store_id
    result = engine.lookup_sale(data.reference, store_id, session=session)
    return {"result": result.model_dump(mode="json"), "session": _session_out(session)}


@router.get("/returns/sessions/{session_id}")
def get_return_session(session: ReturnSession = Depends(get_session)):
    return _session_out(session)


@router.patch("/returns/sessions/{session_id}/items/{sale_item_id}")
def update_draft_item(sale_item_id: str, data: DraftItemPatch, session: ReturnSession = Depends(get_session)):
    if session.draft.get(sale_item_id) is None:
        raise HTTPException(status_code=404, detail="item not in draft")
    if data.quantity is not None:
        session.draft.set_quantity(sale_item_id, data.quantity)
    if data.restock_action is not None:
        session.draft.set_restock_action(sale_item_id, data.restock_action)
    if data.refund_type is not None:
        session.draft.set_refund_type(sale_item_id, data.refund_type)
    if data.refund_amount is not None:
        session.draft.set_refund_amount(sale_item_id, data.refund_amount)
    return _session_out(session)


@router.post("/returns/sessions/{session_id}/reset")
def reset_return_session(session: ReturnSession = Depends(get_session)):
    session.reset()
    return _session_out(session)


@router.delete("/returns/sessions/{session_id}")
def close_return_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    if not registry.drop(session_id):
        raise HTTPException(status_code=404, detail="session not found")
    return {"ok": True}


@router.post("/returns/sessions/{session_id}/submit")
def submit_return(
    data: SubmitIn,
    session: ReturnSession = Depends(get_session),
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.submit_return(session, reason=data.reason, confirm=_acknowledged(data.acknowledge_offline_risk))
    return {"result": result.model_dump(mode="json"), "session": _session_out(session)}


@router.post("/swaps/quote")
def quote_swap(
    data: SwapQuoteIn,
    engine: ReconciliationEngine = Depends(get_engine),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _session_by_id(registry, data.session_id)
    totals = engine.quote_swap(session, data.sale_item_id, data.quantity, data.new_products)
    if totals is None:
        raise HTTPException(status_code=404, detail="item not in loaded sale")
    return totals.model_dump(mode="json")


@router.post("/swaps/submit")
def submit_swap(
    data: SwapSubmitIn,
    engine: ReconciliationEngine = Depends(get_engine),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _session_by_id(registry, data.session_id)
    result = engine.submit_swap(
        session,
        data.sale_item_id,
        data.quantity,
        data.new_products,
        restock_action=data.restock_action,
        payment_method=data.payment_method,
        notes=data.notes,
        confirm=_acknowledged(data.acknowledge_offline_risk),
    )
    return {"result": result.model_dump(mode="json"), "session": _session_out(session)}


@router.get("/products/search")
def search_products(
    query: str = "",
    limit: int = 20,
    store_id: Optional[str] = None,
    engine: ReconciliationEngine = Depends(get_engine),
):
    limit = max(1, min(int(limit or 20), 100))
    source, products = engine.search_products(query, store_id=store_id, limit=limit)
    return {"source": source, "products": [p.model_dump(mode="json") for p in products]}


@router.get("/products/barcode/{code}")
def product_by_barcode(code: str, store_id: Optional[str] = None, engine: ReconciliationEngine = Depends(get_engine)):
    source, product = engine.lookup_barcode(code, store_id=store_id)
    if product is None:
        raise HTTPException(status_code=404, detail="product not found")
    return {"source": source, "product": product.model_dump(mode="json")}
