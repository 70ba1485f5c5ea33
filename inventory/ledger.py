import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from common.permissions import can_access_department
from inventory.exceptions import (
    DepartmentScopeViolation,
    InsufficientStock,
    InvalidTransactionType,
    InventoryValidationError,
    PartNotFound,
)
from inventory.models import MAX_QUANTITY, InventoryHistory, Part, TransactionType, to_money

logger = logging.getLogger("inventory.ledger")

DELTA_SIGNS = {
    TransactionType.RECEIPT: 1,
    TransactionType.TRANSFER_IN: 1,
    TransactionType.ISSUE: -1,
    TransactionType.TRANSFER_OUT: -1,
    TransactionType.SCRAP: -1,
}


def compute_delta(transaction_type, quantity):
    """Signed stock delta for one line of a transaction.

    Adjustment quantities are already signed and pass through unchanged; every
    other type uses the magnitude of `quantity` and its own direction.
    """
    if transaction_type == TransactionType.ADJUSTMENT:
        return quantity
    sign = DELTA_SIGNS.get(transaction_type)
    if sign is None:
        raise InvalidTransactionType(transaction_type)
    return sign * abs(quantity)


def average_monthly_usage(total_consumed, created_at, now=None):
    now = now or timezone.now()
    months_active = max(1, (now - created_at).days // 30)
    return to_money(Decimal(total_consumed) / months_active)


def _locked_part(part_id):
    try:
        part = Part.objects.select_for_update(of=("self",)).filter(pk=part_id).first()
    except (DjangoValidationError, ValueError):
        part = None
    if part is None:
        raise PartNotFound()
    return part


def apply_quantity_change(
    part_id,
    quantity_change,
    actor,
    *,
    reason,
    change_type=InventoryHistory.ChangeType.ADJUSTMENT,
    transaction_type=None,
    stock_transaction=None,
    transaction_number="",
    transaction_item=None,
    location=None,
    notes="",
    cost=None,
    purchase_unit_cost=None,
):
    """Apply one signed quantity change to a part and append its ledger entry.

    The part row is locked for the duration of the change, so the quantity
    read, the part update and the ledger insert commit or roll back together.
    """
    reason = (reason or "").strip()
    if not reason:
        raise InventoryValidationError("Reason is required for inventory changes.")

    with transaction.atomic():
        part = _locked_part(part_id)
        if not can_access_department(actor, part.department_id):
            raise DepartmentScopeViolation()
        if stock_transaction is not None and stock_transaction.department_id != part.department_id:
            raise InventoryValidationError(
                f"Transaction {stock_transaction.transaction_number} and part {part.part_number} belong to different departments."
            )

        previous_quantity = part.quantity
        new_quantity = previous_quantity + quantity_change
        if new_quantity < 0:
            raise InsufficientStock(part, previous_quantity, quantity_change)
        if new_quantity > MAX_QUANTITY:
            raise InventoryValidationError(f"Quantity for {part.part_number} cannot exceed {MAX_QUANTITY}.")

        now = timezone.now()
        part.quantity = new_quantity
        update_fields = ["quantity", "updated_at"]
        if quantity_change < 0:
            part.total_consumed += abs(quantity_change)
            part.last_used_date = now
            part.average_monthly_usage = average_monthly_usage(part.total_consumed, part.created_at, now)
            update_fields += ["total_consumed", "last_used_date", "average_monthly_usage"]
        if quantity_change > 0 and purchase_unit_cost:
            part.unit_price = to_money(purchase_unit_cost)
            part.last_purchase_price = part.unit_price
            part.last_purchase_date = now
            update_fields += ["unit_price", "last_purchase_price", "last_purchase_date"]
        part.save(update_fields=update_fields)

        last_sequence = part.history.aggregate(last=Max("sequence"))["last"] or 0
        entry = InventoryHistory.objects.create(
            part=part,
            part_number=part.part_number,
            part_name=part.name,
            department_id=part.department_id,
            change_type=change_type,
            transaction_type=transaction_type,
            stock_transaction=stock_transaction,
            transaction_number=stock_transaction.transaction_number if stock_transaction else transaction_number,
            transaction_item=transaction_item,
            previous_quantity=previous_quantity,
            quantity_change=quantity_change,
            new_quantity=new_quantity,
            reason=reason,
            location=location or part.location,
            notes=(notes or "").strip(),
            cost=cost,
            performed_by=actor,
            performed_by_name=actor.display_name,
            performed_at=now,
            sequence=last_sequence + 1,
        )

    logger.info(
        "inventory_change_applied",
        extra={
            "part_id": str(part.id),
            "part_number": part.part_number,
            "transaction_number": entry.transaction_number or None,
            "quantity_change": quantity_change,
            "new_quantity": new_quantity,
            "user_id": str(actor.id),
        },
    )
    return part, entry


@dataclass
class LedgerReplay:
    part: Part
    replayed_quantity: int = 0
    entry_count: int = 0
    broken_entries: list = field(default_factory=list)

    @property
    def stored_quantity(self):
        return self.part.quantity

    @property
    def in_sync(self):
        return not self.broken_entries and self.replayed_quantity == self.stored_quantity

    def as_dict(self):
        return {
            "part_id": str(self.part.id),
            "part_number": self.part.part_number,
            "stored_quantity": self.stored_quantity,
            "replayed_quantity": self.replayed_quantity,
            "entry_count": self.entry_count,
            "in_sync": self.in_sync,
            "broken_entries": [
                {
                    "id": str(entry.id),
                    "sequence": entry.sequence,
                    "previous_quantity": entry.previous_quantity,
                    "expected_previous_quantity": expected,
                }
                for entry, expected in self.broken_entries
            ],
        }


def replay_part_quantity(part):
    """Fold a part's ledger from its first entry and compare with the stored quantity."""
    replay = LedgerReplay(part=part)
    for entry in part.history.order_by("sequence"):
        if entry.previous_quantity != replay.replayed_quantity:
            replay.broken_entries.append((entry, replay.replayed_quantity))
        replay.replayed_quantity += entry.quantity_change
        replay.entry_count += 1
    return replay


def find_ledger_drift(parts):
    drifted = []
    for part in parts:
        replay = replay_part_quantity(part)
        if not replay.in_sync:
            logger.warning(
                "inventory_ledger_drift",
                extra={
                    "part_id": str(part.id),
                    "part_number": part.part_number,
                    "quantity_change": replay.replayed_quantity - part.quantity,
                },
            )
            drifted.append(replay)
    return drifted
