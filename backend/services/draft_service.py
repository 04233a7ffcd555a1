"""
Draft Service — command-style editing of an immutable ReceiptDraft.

The review screen never mutates a draft in place.  It sends commands
(set_field, add_item, remove_item, set_vat_rate, …) and gets back a new
draft whose derived values have been recomputed by refresh():

  • every item's vat_amount / price_ex_vat
  • computed_total_vat and the per-band breakdown and counts
  • total_discounts

The acknowledgement of a total mismatch ("keep declared total") is
cleared whenever the items sum or the declared total moves afterwards.

normalize_draft() is the entry point: it turns a raw extraction result into
the first refreshed draft.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

from models.schemas import (
    MAX_AMOUNT,
    AddItem,
    ApprovalState,
    ApprovalStats,
    ApproveAllPending,
    DraftCommand,
    DraftResponse,
    KeepDeclaredTotal,
    LineItem,
    QuantityBlur,
    ReceiptDraft,
    RemoveItem,
    SetApprovalState,
    SetField,
    SetReceiptField,
    SetVatRate,
    UseItemsTotal,
)
from services.normalize_service import (
    DEFAULT_STORE_NAME,
    clean_text,
    normalize_item,
    parse_date_or_default,
    parse_decimal_or_default,
    round2,
)
from services.reconcile_service import (
    DraftCommandError,
    items_total,
    normalize_quantity_on_blur,
    reconcile_receipt_total,
    recompute_item,
)
from services.vat_service import aggregate, assign_rate, with_vat

logger = logging.getLogger("tally.drafts")

__all__ = [
    "DraftCommandError",
    "SaveBlockedError",
    "apply_command",
    "apply_commands",
    "approval_stats",
    "finalize_for_save",
    "keep_declared_total",
    "normalize_draft",
    "refresh",
    "review",
    "use_items_total",
    "validate_for_save",
]


class SaveBlockedError(Exception):
    """Raised when a save needs explicit user confirmation first."""
    pass


def _receipt_total(value: Decimal) -> Decimal:
    return round2(min(MAX_AMOUNT, max(Decimal("0"), value)))


# ── Derived values ────────────────────────────────────────────────────────────

def refresh(draft: ReceiptDraft) -> ReceiptDraft:
    """Recompute every derived value on the draft from its items."""
    items = tuple(with_vat(item) for item in draft.items)
    summary = aggregate(items)
    total_discounts = round2(sum((i.discount_applied for i in items), Decimal("0")))
    return draft.model_copy(update={
        "items": items,
        "computed_total_vat": summary.total_vat,
        "vat_breakdown": summary.breakdown,
        "vat_item_counts": summary.counts,
        "total_discounts": total_discounts,
    })


def normalize_draft(raw: Any, currency: str = "GBP") -> ReceiptDraft:
    """
    Build a ReceiptDraft from a raw extraction result.  Accepts either
    `declared_total` or the extractor's `total_amount`; when neither parses,
    the declared total starts out equal to the items sum.
    """
    if not isinstance(raw, Mapping):
        logger.warning("Extraction result is not a mapping (%s) — starting empty draft",
                       type(raw).__name__)
        raw = {}

    raw_items = raw.get("items")
    if not isinstance(raw_items, (list, tuple)):
        raw_items = []
    items = tuple(normalize_item(item, idx) for idx, item in enumerate(raw_items))

    declared_raw = raw.get("declared_total")
    if declared_raw is None:
        declared_raw = raw.get("total_amount")
    declared_total = _receipt_total(parse_decimal_or_default(declared_raw, items_total(items)))

    draft = ReceiptDraft(
        store_name=clean_text(raw.get("store_name") or raw.get("supermarket")) or DEFAULT_STORE_NAME,
        store_location=clean_text(raw.get("store_location")),
        purchase_date=parse_date_or_default(raw.get("purchase_date"), date.today()),
        declared_total=declared_total,
        currency=clean_text(raw.get("currency")) or currency,
        notes=clean_text(raw.get("notes")),
        items=items,
    )
    logger.info("Normalized draft for %s: %d items, declared total %s",
                draft.store_name, len(items), declared_total)
    return refresh(draft)


def approval_stats(items: Iterable[LineItem]) -> ApprovalStats:
    stats = ApprovalStats()
    for item in items:
        stats.total += 1
        setattr(stats, item.approval_state.value, getattr(stats, item.approval_state.value) + 1)
    return stats


def review(draft: ReceiptDraft) -> DraftResponse:
    """Everything the review screen needs after an operation."""
    return DraftResponse(
        draft=draft,
        reconciliation=reconcile_receipt_total(
            draft.items, draft.declared_total, acknowledged=draft.mismatch_acknowledged,
        ),
        approval_stats=approval_stats(draft.items),
    )


# ── Total tie-break ───────────────────────────────────────────────────────────

def use_items_total(draft: ReceiptDraft) -> ReceiptDraft:
    """Overwrite the declared total with the sum of the line totals."""
    new_total = _receipt_total(items_total(draft.items))
    logger.info("Declared total %s replaced by items total %s", draft.declared_total, new_total)
    return draft.model_copy(update={"declared_total": new_total, "mismatch_acknowledged": False})


def keep_declared_total(draft: ReceiptDraft) -> ReceiptDraft:
    """Accept the discrepancy between the items and the printed total."""
    return draft.model_copy(update={"mismatch_acknowledged": True})


# ── Commands ──────────────────────────────────────────────────────────────────

def _check_index(draft: ReceiptDraft, index: int) -> None:
    if index < 0 or index >= len(draft.items):
        raise DraftCommandError(
            f"Item index {index} out of range (draft has {len(draft.items)} items)"
        )


def _replace_item(draft: ReceiptDraft, index: int, item: LineItem) -> ReceiptDraft:
    items = list(draft.items)
    items[index] = item
    return draft.model_copy(update={"items": tuple(items)})


def _set_receipt_field(draft: ReceiptDraft, field: str, value) -> ReceiptDraft:
    if field == "declared_total":
        parsed = parse_decimal_or_default(value, Decimal("0"))
        return draft.model_copy(update={"declared_total": _receipt_total(parsed)})
    if field == "purchase_date":
        return draft.model_copy(update={
            "purchase_date": parse_date_or_default(value, draft.purchase_date),
        })
    text = str(value).strip() if value is not None else ""
    return draft.model_copy(update={field: text})


def _add_item(draft: ReceiptDraft, raw: dict) -> ReceiptDraft:
    fields = {"quantity": 1, "vat_rate": 0, **raw, "approval_state": ApprovalState.MANUAL_ADD.value}
    item = normalize_item(fields, len(draft.items))
    if not str(raw.get("name") or "").strip():
        # blank rows stay blank until the user types a name
        item = item.model_copy(update={"name": "", "canonical_name": ""})
    return draft.model_copy(update={"items": draft.items + (item,)})


def _dispatch(draft: ReceiptDraft, command: DraftCommand) -> ReceiptDraft:
    if isinstance(command, SetField):
        _check_index(draft, command.index)
        item = recompute_item(draft.items[command.index], command.field, command.value)
        return _replace_item(draft, command.index, item)

    if isinstance(command, SetVatRate):
        _check_index(draft, command.index)
        item = assign_rate(draft.items[command.index], command.rate)
        return _replace_item(draft, command.index, item)

    if isinstance(command, QuantityBlur):
        _check_index(draft, command.index)
        item = normalize_quantity_on_blur(draft.items[command.index])
        return _replace_item(draft, command.index, item)

    if isinstance(command, SetApprovalState):
        _check_index(draft, command.index)
        if command.state == ApprovalState.MANUAL_ADD:
            raise DraftCommandError("manual_add is only assigned when an item is added")
        item = draft.items[command.index]
        if item.approval_state == ApprovalState.MANUAL_ADD:
            return draft
        return _replace_item(draft, command.index,
                             item.model_copy(update={"approval_state": command.state}))

    if isinstance(command, ApproveAllPending):
        items = tuple(
            i.model_copy(update={"approval_state": ApprovalState.APPROVED})
            if i.approval_state == ApprovalState.PENDING else i
            for i in draft.items
        )
        return draft.model_copy(update={"items": items})

    if isinstance(command, AddItem):
        return _add_item(draft, command.item)

    if isinstance(command, RemoveItem):
        _check_index(draft, command.index)
        items = draft.items[:command.index] + draft.items[command.index + 1:]
        return draft.model_copy(update={"items": items})

    if isinstance(command, SetReceiptField):
        return _set_receipt_field(draft, command.field, command.value)

    if isinstance(command, UseItemsTotal):
        return use_items_total(draft)

    if isinstance(command, KeepDeclaredTotal):
        return keep_declared_total(draft)

    raise DraftCommandError(f"Unsupported command: {type(command).__name__}")


def apply_command(draft: ReceiptDraft, command: DraftCommand) -> ReceiptDraft:
    """Apply one command and return the refreshed draft.  `draft` is untouched."""
    before_sum = items_total(draft.items)
    updated = refresh(_dispatch(draft, command))
    if updated.mismatch_acknowledged and (
        items_total(updated.items) != before_sum
        or updated.declared_total != draft.declared_total
    ):
        updated = updated.model_copy(update={"mismatch_acknowledged": False})
    logger.debug("Applied %s → %d items, VAT %s", command.op, len(updated.items),
                 updated.computed_total_vat)
    return updated


def apply_commands(draft: ReceiptDraft, commands: Iterable[DraftCommand]) -> ReceiptDraft:
    for command in commands:
        draft = apply_command(draft, command)
    return draft


# ── Save ──────────────────────────────────────────────────────────────────────

def named_items(draft: ReceiptDraft) -> tuple[LineItem, ...]:
    return tuple(i for i in draft.items if i.name.strip())


def validate_for_save(draft: ReceiptDraft, confirm_empty: bool = False) -> None:
    """
    The only thing that blocks a save is a receipt with no named items,
    and only until the user confirms.
    """
    if not named_items(draft) and not confirm_empty:
        raise SaveBlockedError("No named items in this receipt. Save anyway?")


def finalize_for_save(draft: ReceiptDraft) -> ReceiptDraft:
    """
    Shape the draft for persistence: blank rows are dropped, items still
    `pending` become `approved`, everything else keeps its state.
    """
    items = tuple(
        i.model_copy(update={"approval_state": ApprovalState.APPROVED})
        if i.approval_state == ApprovalState.PENDING else i
        for i in named_items(draft)
    )
    dropped = len(draft.items) - len(items)
    if dropped:
        logger.info("Dropping %d unnamed item(s) on save", dropped)
    return refresh(draft.model_copy(update={
        "items": items,
        "store_name": draft.store_name.strip() or DEFAULT_STORE_NAME,
    }))
