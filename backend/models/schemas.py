from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ──────────────────────────────────────────────
class Category(str, Enum):
    """Grocery categories shared with budgeting."""
    MEAT_FISH = "meat_fish"
    VEGETABLES_FRUITS = "vegetables_fruits"
    DAIRY_EGGS = "dairy_eggs"
    BAKERY = "bakery"
    SNACKS_SWEETS = "snacks_sweets"
    BEVERAGES = "beverages"
    HOUSEHOLD_CLEANING = "household_cleaning"
    PERSONAL_CARE = "personal_care"
    FROZEN_FOODS = "frozen_foods"
    PANTRY_STAPLES = "pantry_staples"
    OTHER = "other"


class RateBand(str, Enum):
    ZERO = "zero"
    REDUCED = "reduced"
    STANDARD = "standard"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CORRECTED = "corrected"
    MANUAL_ADD = "manual_add"


ZERO = Decimal("0.00")
# Largest magnitude accepted for any amount or quantity (£1bn)
MAX_AMOUNT = Decimal("1000000000")


def _empty_breakdown() -> dict[RateBand, Decimal]:
    return {band: ZERO for band in RateBand}


def _empty_counts() -> dict[RateBand, int]:
    return {band: 0 for band in RateBand}


# ── Line Item ──────────────────────────────────────────
class LineItem(BaseModel):
    """One product line on a receipt draft.  Immutable; edits return a copy."""
    model_config = ConfigDict(frozen=True)

    name: str = ""
    canonical_name: str = ""
    brand: str = ""
    category: Category = Category.OTHER
    # quantity is 0 only between an emptied quantity field and its blur
    quantity: Decimal = Field(Decimal("1"), ge=0, le=MAX_AMOUNT)
    unit_price: Decimal = Field(ZERO, ge=0, le=MAX_AMOUNT)
    discount_applied: Decimal = Field(ZERO, ge=0, le=MAX_AMOUNT)
    total_price: Decimal = Field(ZERO, ge=0, le=MAX_AMOUNT)
    vat_rate: Decimal = Decimal("0")
    vat_amount: Decimal = Field(ZERO, ge=0)
    price_ex_vat: Decimal = Field(ZERO, ge=0)
    approval_state: ApprovalState = ApprovalState.PENDING
    offer_description: str = ""
    pack_size_value: Optional[Decimal] = None
    pack_size_unit: Optional[str] = None
    confidence_score: Decimal = Decimal("3")
    is_own_brand: bool = False


# ── Receipt Draft ──────────────────────────────────────
class ReceiptDraft(BaseModel):
    """In-memory receipt under review.  Derived fields are kept in sync by
    services.draft_service.refresh()."""
    model_config = ConfigDict(frozen=True)

    store_name: str = "Unknown Store"
    store_location: str = ""
    purchase_date: date = Field(default_factory=date.today)
    declared_total: Decimal = Field(ZERO, ge=0, le=MAX_AMOUNT)
    currency: str = "GBP"
    notes: str = ""
    items: tuple[LineItem, ...] = ()

    # derived
    computed_total_vat: Decimal = ZERO
    vat_breakdown: dict[RateBand, Decimal] = Field(default_factory=_empty_breakdown)
    vat_item_counts: dict[RateBand, int] = Field(default_factory=_empty_counts)
    total_discounts: Decimal = ZERO
    mismatch_acknowledged: bool = False


class VATSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_vat: Decimal
    breakdown: dict[RateBand, Decimal]
    counts: dict[RateBand, int]


class TotalReconciliation(BaseModel):
    model_config = ConfigDict(frozen=True)

    items_sum: Decimal
    declared_total: Decimal
    difference: Decimal
    mismatch: bool
    requires_decision: bool


class ApprovalStats(BaseModel):
    total: int = 0
    approved: int = 0
    corrected: int = 0
    manual_add: int = 0
    pending: int = 0


# ── Draft Commands ─────────────────────────────────────
# Each command is applied by services.draft_service.apply_command and
# produces a new ReceiptDraft.

class SetField(BaseModel):
    op: Literal["set_field"] = "set_field"
    index: int
    field: str
    value: Any = None

class SetVatRate(BaseModel):
    op: Literal["set_vat_rate"] = "set_vat_rate"
    index: int
    rate: Any

class QuantityBlur(BaseModel):
    op: Literal["quantity_blur"] = "quantity_blur"
    index: int

class SetApprovalState(BaseModel):
    op: Literal["set_approval_state"] = "set_approval_state"
    index: int
    state: ApprovalState

class ApproveAllPending(BaseModel):
    op: Literal["approve_all_pending"] = "approve_all_pending"

class AddItem(BaseModel):
    op: Literal["add_item"] = "add_item"
    item: dict = Field(default_factory=dict)   # raw fields, normalized on add

class RemoveItem(BaseModel):
    op: Literal["remove_item"] = "remove_item"
    index: int

class SetReceiptField(BaseModel):
    op: Literal["set_receipt_field"] = "set_receipt_field"
    field: Literal["store_name", "store_location", "notes", "purchase_date", "declared_total"]
    value: Any = None

class UseItemsTotal(BaseModel):
    op: Literal["use_items_total"] = "use_items_total"

class KeepDeclaredTotal(BaseModel):
    op: Literal["keep_declared_total"] = "keep_declared_total"


DraftCommand = Annotated[
    Union[
        SetField, SetVatRate, QuantityBlur, SetApprovalState, ApproveAllPending,
        AddItem, RemoveItem, SetReceiptField, UseItemsTotal, KeepDeclaredTotal,
    ],
    Field(discriminator="op"),
]


# ── Draft API bodies ───────────────────────────────────
class DraftResponse(BaseModel):
    """Returned after every draft operation so the review screen can re-render."""
    draft: ReceiptDraft
    reconciliation: TotalReconciliation
    approval_stats: ApprovalStats

class ApplyCommandsBody(BaseModel):
    draft: ReceiptDraft
    commands: list[DraftCommand] = []

class ReconcileBody(BaseModel):
    draft: ReceiptDraft


# ── Saved Receipts ─────────────────────────────────────
class SaveReceiptBody(BaseModel):
    """Sent by the frontend once the user has finished reviewing a draft."""
    draft: ReceiptDraft
    confirm_empty: bool = False   # user accepted saving with no named items

class SavedLineItem(LineItem):
    id: int
    receipt_id: int
    position: int

class Receipt(BaseModel):
    id: int
    store_name: str
    store_location: str = ""
    purchase_date: date
    declared_total: Decimal
    currency: str
    notes: str = ""
    computed_total_vat: Decimal
    vat_breakdown: dict[RateBand, Decimal]
    total_discounts: Decimal
    approval_stats: ApprovalStats
    status: str = "saved"
    created_at: str
    updated_at: str
    items: list[SavedLineItem] = []

    class Config:
        from_attributes = True

class ReceiptSummary(BaseModel):
    id: int
    store_name: str
    purchase_date: date
    declared_total: Decimal
    computed_total_vat: Decimal
    item_count: int
    status: str
    created_at: str
