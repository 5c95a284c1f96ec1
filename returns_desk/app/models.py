from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel

from .money import ZERO
from .validation import CurrencyCode, OperationType, PaymentMethod, RefundType, RestockAction, SaleStatus


class _Model(BaseModel):
    # The POS server speaks camelCase; Python code uses the field names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SaleHeader(_Model):
    id: str
    store_id: str
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO
    currency: CurrencyCode = "USD"
    occurred_at: Optional[datetime] = None
    status: SaleStatus = "COMPLETED"


class SaleItem(_Model):
    id: str
    product_id: str
    quantity: int = 0
    quantity_returned: int = 0
    unit_price: Decimal = ZERO
    line_discount: Decimal = ZERO
    line_total: Decimal = ZERO
    name: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_returned(cls, data):
        # Some server versions only report quantityRemaining.
        if not isinstance(data, dict):
            return data
        if "quantityReturned" in data or "quantity_returned" in data:
            return data
        remaining = data.get("quantityRemaining", data.get("quantity_remaining"))
        if remaining is None:
            return data
        return {**data, "quantity_returned": int(data.get("quantity") or 0) - int(remaining)}

    @model_validator(mode="after")
    def _clamp_returned(self):
        self.quantity_returned = max(0, min(self.quantity_returned, max(self.quantity, 0)))
        return self

    @computed_field
    @property
    def quantity_remaining(self) -> int:
        return max(self.quantity - self.quantity_returned, 0)


class _SaleViewBase(_Model):
    sale: SaleHeader
    items: List[SaleItem] = Field(default_factory=list)

    def item(self, sale_item_id: str) -> Optional[SaleItem]:
        for it in self.items:
            if it.id == sale_item_id:
                return it
        return None

    @property
    def fully_returned(self) -> bool:
        return bool(self.items) and all(it.quantity_returned >= it.quantity for it in self.items)


class OnlineSale(_SaleViewBase):
    source: Literal["online"] = "online"


class CachedSale(_SaleViewBase):
    source: Literal["cached"] = "cached"
    # Created on this device while offline; ids are local until synced.
    is_offline: bool = False
    server_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    synced_at: Optional[datetime] = None
    cached_at: Optional[datetime] = None


SaleView = Annotated[Union[OnlineSale, CachedSale], Field(discriminator="source")]


def to_cached(view: OnlineSale, cached_at: Optional[datetime] = None) -> CachedSale:
    """Synthetic cached copy of a sale that was only ever seen online."""
    return CachedSale(
        sale=view.sale.model_copy(update={"status": "CACHED"}),
        items=[it.model_copy() for it in view.items],
        is_offline=False,
        server_id=view.sale.id,
        cached_at=cached_at,
    )


class ReturnDraftEntry(_Model):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    quantity: int = 0
    restock_action: RestockAction = "RESTOCK"
    refund_type: RefundType = "NONE"
    # Free text while PARTIAL is being edited.
    refund_amount: str = "0.00"


class ReturnItemAction(_Model):
    sale_item_id: Optional[str] = None
    product_id: str
    quantity: int
    restock_action: RestockAction = "RESTOCK"
    refund_type: RefundType = "NONE"
    refund_amount: Decimal = ZERO
    tax_refund: Decimal = ZERO


class RefundTotals(_Model):
    tax_rate: Decimal = ZERO
    product_refund: Decimal = ZERO
    tax_refund: Decimal = ZERO
    total_refund: Decimal = ZERO


class ProductRecord(_Model):
    id: str
    name: str = ""
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: Decimal = ZERO
    quantity: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _price_aliases(cls, data):
        if isinstance(data, dict) and data.get("price") in (None, "") and data.get("salePrice") not in (None, ""):
            return {**data, "price": data["salePrice"]}
        return data


class ReplacementLine(_Model):
    product_id: str
    quantity: int = 1
    unit_price: Decimal = ZERO
    name: Optional[str] = None


class SwapTotals(_Model):
    tax_rate: Decimal = ZERO
    original_total: Decimal = ZERO
    new_total: Decimal = ZERO
    price_difference: Decimal = ZERO
    tax_difference: Decimal = ZERO
    total_difference: Decimal = ZERO

    @computed_field
    @property
    def settlement(self) -> str:
        if self.total_difference > 0:
            return "CHARGE"
        if self.total_difference < 0:
            return "REFUND"
        return "EVEN"


class SwapDetails(_Model):
    original_sale_item_id: str
    original_product_id: str
    original_quantity: int
    original_unit_price: Decimal
    new_products: List[ReplacementLine]
    restock_action: RestockAction = "RESTOCK"
    payment_method: Optional[PaymentMethod] = None
    totals: SwapTotals


class OfflineOperationRecord(_Model):
    id: str
    store_id: str
    sale_id: str
    type: OperationType
    items: List[ReturnItemAction] = Field(default_factory=list)
    reason: Optional[str] = None
    created_at: datetime
    # Refund value that could be paid twice if this operation is also processed online.
    potential_loss: Decimal = ZERO
    synced_at: Optional[datetime] = None
    swap: Optional[SwapDetails] = None
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None


LookupStatus = Literal["found_online", "found_cached", "not_found", "fully_returned"]
SubmitStatus = Literal["submitted_online", "queued_offline", "rejected", "failed"]


class LookupResult(_Model):
    status: LookupStatus
    sale: Optional[SaleView] = None
    message: str = ""


class SubmitResult(_Model):
    status: SubmitStatus
    reason: Optional[str] = None
    message: str = ""
    potential_loss: Decimal = ZERO
    server_payload: Optional[dict] = None
    operation: Optional[OfflineOperationRecord] = None
