import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import DatabaseError, transaction
from django.utils import timezone

from common.permissions import can_access_department
from inventory.exceptions import (
    InvalidTransactionState,
    InventoryError,
    InventoryValidationError,
    PersistenceError,
    StockUnavailable,
)
from inventory.ledger import apply_quantity_change, compute_delta
from inventory.models import (
    OUTBOUND_TRANSACTION_TYPES,
    InventoryHistory,
    Part,
    StockTransaction,
    StockTransactionItem,
    TransactionType,
    to_money,
)

logger = logging.getLogger("inventory.ledger")

Status = StockTransaction.Status

APPLICABLE_STATUSES = {Status.APPROVED, Status.COMPLETED}
EDITABLE_STATUSES = {Status.DRAFT, Status.PENDING}
DELETABLE_STATUSES = {Status.DRAFT, Status.PENDING}
# Fields a super admin may still correct once a transaction has left draft/pending.
LOCKED_CORRECTION_FIELDS = {"notes", "internal_notes", "reference_number"}

ALLOWED_TRANSITIONS = {
    Status.DRAFT: {Status.PENDING, Status.CANCELLED},
    Status.PENDING: {Status.DRAFT, Status.APPROVED, Status.CANCELLED},
    Status.APPROVED: {Status.COMPLETED},
    Status.COMPLETED: set(),
    Status.CANCELLED: set(),
}

FORWARD_CHANGE_TYPES = {InventoryHistory.ChangeType.TRANSACTION, InventoryHistory.ChangeType.INITIAL}


@dataclass
class ItemResult:
    item_id: str
    part_id: str
    part_number: str
    status: str
    quantity_change: int | None = None
    previous_quantity: int | None = None
    new_quantity: int | None = None
    message: str = ""
    error_code: str | None = None

    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"

    @classmethod
    def for_item(cls, item, status, **kwargs):
        return cls(item_id=str(item.id), part_id=str(item.part_id), part_number=item.part_number, status=status, **kwargs)

    def as_dict(self):
        return {
            "item_id": self.item_id,
            "part_id": self.part_id,
            "part_number": self.part_number,
            "status": self.status,
            "success": self.status != self.FAILED,
            "quantity_change": self.quantity_change,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "message": self.message,
            "error_code": self.error_code,
        }


@dataclass
class BatchResult:
    results: list = field(default_factory=list)
    message: str = ""

    @property
    def total_updated(self):
        return sum(1 for result in self.results if result.status == ItemResult.APPLIED)

    @property
    def total_failed(self):
        return sum(1 for result in self.results if result.status == ItemResult.FAILED)

    @property
    def total_skipped(self):
        return sum(1 for result in self.results if result.status == ItemResult.SKIPPED)

    @property
    def success(self):
        return self.total_failed == 0

    @property
    def failed(self):
        return [result for result in self.results if result.status == ItemResult.FAILED]

    def summarize(self, verb):
        if self.success:
            self.message = f"Successfully {verb} inventory for {self.total_updated} parts"
        else:
            self.message = f"{verb.capitalize()} {self.total_updated} parts, {self.total_failed} failed"
        if self.total_skipped:
            self.message += f" ({self.total_skipped} skipped)"
        return self

    def as_dict(self):
        return {
            "success": self.success,
            "total_updated": self.total_updated,
            "total_failed": self.total_failed,
            "total_skipped": self.total_skipped,
            "results": [result.as_dict() for result in self.results],
            "message": self.message,
        }


@dataclass
class AvailabilityResult:
    valid: bool = True
    issues: list = field(default_factory=list)

    def as_dict(self):
        return {"valid": self.valid, "issues": list(self.issues)}


def _apply_item(batch, item, actor, **change):
    try:
        part, entry = apply_quantity_change(item.part_id, actor=actor, transaction_item=item, **change)
    except InventoryError as exc:
        batch.results.append(
            ItemResult.for_item(
                item,
                ItemResult.FAILED,
                quantity_change=change.get("quantity_change"),
                message=str(exc.detail),
                error_code=exc.default_code,
            )
        )
    except DatabaseError:
        logger.exception(
            "inventory_change_failed",
            extra={"part_id": str(item.part_id), "part_number": item.part_number, "error_code": PersistenceError.default_code},
        )
        batch.results.append(
            ItemResult.for_item(
                item,
                ItemResult.FAILED,
                quantity_change=change.get("quantity_change"),
                message=str(PersistenceError.default_detail),
                error_code=PersistenceError.default_code,
            )
        )
    else:
        batch.results.append(
            ItemResult.for_item(
                item,
                ItemResult.APPLIED,
                quantity_change=entry.quantity_change,
                previous_quantity=entry.previous_quantity,
                new_quantity=entry.new_quantity,
                message=f"Inventory updated. New quantity: {part.quantity}",
            )
        )


def _transaction_location(stock_transaction):
    return stock_transaction.destination_location or stock_transaction.source_location


def _forward_change(stock_transaction, item):
    is_receipt = stock_transaction.transaction_type == TransactionType.RECEIPT
    return {
        "quantity_change": compute_delta(stock_transaction.transaction_type, item.quantity),
        "reason": f"{stock_transaction.transaction_type.upper()}: {stock_transaction.description}",
        "change_type": InventoryHistory.ChangeType.TRANSACTION,
        "transaction_type": stock_transaction.transaction_type,
        "stock_transaction": stock_transaction,
        "location": _transaction_location(stock_transaction),
        "notes": item.notes or stock_transaction.notes,
        "cost": item.total_cost,
        "purchase_unit_cost": item.unit_cost if is_receipt else None,
    }


def _already_applied(stock_transaction, item):
    if item.ledger_entries.filter(change_type__in=FORWARD_CHANGE_TYPES).exists():
        return True
    # Entries booked by hand against the transaction carry no item link.
    return stock_transaction.ledger_entries.filter(
        part_id=item.part_id,
        transaction_item__isnull=True,
        change_type__in=FORWARD_CHANGE_TYPES,
    ).exists()


def apply_transaction(stock_transaction, actor, *, skip_applied=False):
    """Apply every line item of an approved or completed stock transaction.

    Items are applied independently, each in its own atomic unit; a failing
    item is reported in the returned batch and does not undo the others.
    Without `skip_applied` nothing stops the same transaction from being
    applied twice. With it, a part that already has a forward ledger entry
    for this transaction is skipped, which makes a retry after partial
    failure safe.
    """
    if stock_transaction.status not in APPLICABLE_STATUSES:
        raise InvalidTransactionState(
            f"Cannot process inventory for transaction with status: {stock_transaction.status}"
        )

    batch = BatchResult()
    for item in stock_transaction.items.all():
        if skip_applied and _already_applied(stock_transaction, item):
            batch.results.append(ItemResult.for_item(item, ItemResult.SKIPPED, message="Already applied"))
            continue
        try:
            change = _forward_change(stock_transaction, item)
        except InventoryError as exc:
            batch.results.append(
                ItemResult.for_item(item, ItemResult.FAILED, message=str(exc.detail), error_code=exc.default_code)
            )
            continue
        _apply_item(batch, item, actor, **change)
    return batch.summarize("updated")


def reverse_transaction(stock_transaction, actor, *, skip_reversed=False):
    """Apply the inverse of a completed transaction's line items as new ledger entries."""
    if stock_transaction.status != Status.COMPLETED:
        raise InvalidTransactionState("Only completed transactions can be reversed.")

    batch = BatchResult()
    reason = f"REVERSAL: {stock_transaction.description}"
    for item in stock_transaction.items.all():
        if skip_reversed and item.ledger_entries.filter(change_type=InventoryHistory.ChangeType.ADJUSTMENT).exists():
            batch.results.append(ItemResult.for_item(item, ItemResult.SKIPPED, message="Already reversed"))
            continue
        try:
            quantity_change = -compute_delta(stock_transaction.transaction_type, item.quantity)
        except InventoryError as exc:
            batch.results.append(
                ItemResult.for_item(item, ItemResult.FAILED, message=str(exc.detail), error_code=exc.default_code)
            )
            continue
        _apply_item(
            batch,
            item,
            actor,
            quantity_change=quantity_change,
            reason=reason,
            change_type=InventoryHistory.ChangeType.ADJUSTMENT,
            transaction_type=TransactionType.ADJUSTMENT,
            stock_transaction=stock_transaction,
            location=_transaction_location(stock_transaction),
            notes=f"Reversal of transaction {stock_transaction.transaction_number}",
            cost=-item.total_cost if item.total_cost else None,
        )
    return batch.summarize("reversed")


def validate_availability(stock_transaction, actor=None):
    """Pre-flight stock check for outbound transactions.

    Demand for the same part is summed across lines. A part that cannot be
    read is reported as an issue rather than passed.
    """
    result = AvailabilityResult()
    if stock_transaction.transaction_type not in OUTBOUND_TRANSACTION_TYPES:
        return result

    demand = OrderedDict()
    for item in stock_transaction.items.all():
        required, _ = demand.get(item.part_id, (0, item.part_number))
        required -= compute_delta(stock_transaction.transaction_type, item.quantity)
        demand[item.part_id] = (required, item.part_number)

    for part_id, (required, part_number) in demand.items():
        try:
            with transaction.atomic():
                part = Part.objects.filter(pk=part_id).first()
        except DatabaseError:
            logger.exception("availability_check_failed", extra={"part_id": str(part_id), "part_number": part_number})
            result.issues.append(f"{part_number}: stock level could not be checked")
            continue
        if part is None:
            result.issues.append(f"{part_number}: part not found")
            continue
        if actor is not None and not can_access_department(actor, part.department_id):
            result.issues.append(f"{part.part_number}: part belongs to another department")
            continue
        if part.quantity - required < 0:
            result.issues.append(f"{part.part_number} ({part.name}): available {part.quantity}, required {required}")

    result.valid = not result.issues
    return result


def next_transaction_number():
    prefix = timezone.now().strftime("ST-%Y%m%d-")
    existing = StockTransaction.objects.filter(transaction_number__startswith=prefix).values_list("transaction_number", flat=True)
    serial = max([int(number.split("-")[-1]) for number in existing if number.split("-")[-1].isdigit()] + [0]) + 1
    return f"{prefix}{serial:04d}"


def recompute_totals(stock_transaction):
    items = list(StockTransactionItem.objects.filter(stock_transaction=stock_transaction))
    stock_transaction.total_amount = to_money(sum((item.total_cost for item in items), Decimal("0")))
    stock_transaction.total_items = len(items)
    stock_transaction.total_quantity = sum(item.quantity for item in items)
    stock_transaction.save(update_fields=["total_amount", "total_items", "total_quantity", "updated_at"])
    return stock_transaction


def replace_items(stock_transaction, items):
    """Replace the line items of a transaction and refresh its totals.

    Each entry of `items` is a mapping with a `part` instance, a `quantity`
    and optional `unit_cost`, `from_location`, `to_location` and `notes`.
    """
    stock_transaction.items.all().delete()
    for position, data in enumerate(items, start=1):
        part = data["part"]
        unit_cost = to_money(data.get("unit_cost") or 0)
        StockTransactionItem.objects.create(
            stock_transaction=stock_transaction,
            position=position,
            part=part,
            part_number=part.part_number,
            part_name=part.name,
            quantity=data["quantity"],
            unit_cost=unit_cost,
            total_cost=to_money(abs(data["quantity"]) * unit_cost),
            from_location=data.get("from_location", ""),
            to_location=data.get("to_location", ""),
            notes=data.get("notes", ""),
        )
    return recompute_totals(stock_transaction)


def append_internal_note(stock_transaction, actor, text, now=None):
    now = now or timezone.now()
    line = f"[{now.isoformat()}] {text} by {actor.display_name}"
    stock_transaction.internal_notes = f"{stock_transaction.internal_notes}\n{line}".strip()


def _locked_transaction(stock_transaction):
    return StockTransaction.objects.select_for_update().get(pk=stock_transaction.pk)


def transition_stock_transaction(stock_transaction, new_status, actor, *, notes=""):
    """Move a stock transaction along its lifecycle.

    Returns `(stock_transaction, batch)`. `batch` is only set when moving to
    completed; if any item failed the transaction stays approved and the
    batch says which parts failed.
    """
    with transaction.atomic():
        txn = _locked_transaction(stock_transaction)
        current = txn.status
        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransactionState(f"Cannot change status from {current} to {new_status}.")

        now = timezone.now()
        batch = None
        update_fields = ["status", "internal_notes", "updated_at"]
        if new_status == Status.APPROVED:
            availability = validate_availability(txn, actor)
            if not availability.valid:
                raise StockUnavailable(availability.issues)
            txn.approved_by = actor
            txn.approved_by_name = actor.display_name
            txn.approved_at = now
            update_fields += ["approved_by", "approved_by_name", "approved_at"]
        elif new_status == Status.COMPLETED:
            batch = apply_transaction(txn, actor, skip_applied=True)
            if not batch.success:
                logger.warning(
                    "stock_transaction_completion_incomplete",
                    extra={"transaction_number": txn.transaction_number, "user_id": str(actor.id)},
                )
                return txn, batch
            txn.completed_at = now
            update_fields.append("completed_at")
        elif new_status == Status.CANCELLED:
            txn.cancelled_at = now
            update_fields.append("cancelled_at")

        txn.status = new_status
        note = f"Status changed from {current} to {new_status}"
        append_internal_note(txn, actor, f"{note}: {notes}" if notes else note, now)
        txn.save(update_fields=update_fields)
    return txn, batch


def reverse_and_cancel(stock_transaction, actor, *, notes=""):
    """Reverse a completed transaction and cancel it once every item is reversed."""
    with transaction.atomic():
        txn = _locked_transaction(stock_transaction)
        batch = reverse_transaction(txn, actor, skip_reversed=True)
        if batch.success:
            now = timezone.now()
            txn.status = Status.CANCELLED
            txn.cancelled_at = now
            note = "Reversed and cancelled"
            append_internal_note(txn, actor, f"{note}: {notes}" if notes else note, now)
            txn.save(update_fields=["status", "cancelled_at", "internal_notes", "updated_at"])
    return txn, batch


def ensure_transaction_deletable(stock_transaction):
    if stock_transaction.status == Status.COMPLETED or stock_transaction.ledger_entries.exists():
        raise InvalidTransactionState("Transaction has already affected inventory")
    if stock_transaction.status not in DELETABLE_STATUSES:
        raise InvalidTransactionState(f"Cannot delete a {stock_transaction.status} transaction.")


def create_part_with_initial_stock(actor, *, initial_quantity=0, **part_fields):
    """Create a part at zero and book any opening quantity as a completed receipt."""
    if initial_quantity < 0:
        raise InventoryValidationError("Initial quantity cannot be negative.")

    with transaction.atomic():
        part = Part.objects.create(quantity=0, **part_fields)
        if initial_quantity == 0:
            return part

        now = timezone.now()
        txn = StockTransaction.objects.create(
            department_id=part.department_id,
            transaction_number=next_transaction_number(),
            transaction_type=TransactionType.RECEIPT,
            transaction_date=now,
            description=f"Initial stock for {part.part_number}",
            status=Status.COMPLETED,
            supplier=part.supplier,
            destination_location=part.location,
            created_by=actor,
            created_by_name=actor.display_name,
            approved_by=actor,
            approved_by_name=actor.display_name,
            approved_at=now,
            completed_at=now,
        )
        replace_items(txn, [{"part": part, "quantity": initial_quantity, "unit_cost": part.unit_price}])
        item = txn.items.get()
        part, _ = apply_quantity_change(
            part.id,
            initial_quantity,
            actor,
            reason=f"{TransactionType.RECEIPT.upper()}: {txn.description}",
            change_type=InventoryHistory.ChangeType.INITIAL,
            transaction_type=TransactionType.RECEIPT,
            stock_transaction=txn,
            transaction_item=item,
            location=part.location,
            cost=item.total_cost,
            purchase_unit_cost=item.unit_cost,
        )
    return part


def _approved_transfer(actor, now, **fields):
    return StockTransaction.objects.create(
        transaction_number=next_transaction_number(),
        transaction_date=now,
        status=Status.APPROVED,
        created_by=actor,
        created_by_name=actor.display_name,
        approved_by=actor,
        approved_by_name=actor.display_name,
        approved_at=now,
        **fields,
    )


def _complete_transfer_leg(stock_transaction, actor, now, note):
    stock_transaction.status = Status.COMPLETED
    stock_transaction.completed_at = now
    append_internal_note(stock_transaction, actor, note, now)
    stock_transaction.save(update_fields=["status", "completed_at", "internal_notes", "updated_at"])


def transfer_between_departments(source_department, destination_department, lines, actor, *, description, notes=""):
    """Move stock from one department to another as a linked pair of transactions.

    `lines` holds mappings with the source `part`, the receiving
    `destination_part` and a positive `quantity`. A transfer_out is booked
    in the source department and a transfer_in in the destination, each
    carrying the other's number as its reference. Every line takes stock
    out first; when that fails its inbound leg is skipped. A leg whose
    lines all applied is completed, otherwise it stays approved and can be
    finished through the status lifecycle.

    Returns `(outbound, inbound, batch)`.
    """
    if source_department.pk == destination_department.pk:
        raise InventoryValidationError("Transfer source and destination departments must be different.")
    if not lines:
        raise InventoryValidationError("At least one item is required.")

    with transaction.atomic():
        now = timezone.now()
        route = {
            "description": description,
            "notes": notes,
            "source_location": source_department.name,
            "destination_location": destination_department.name,
        }
        outbound = _approved_transfer(
            actor, now, department=source_department, transaction_type=TransactionType.TRANSFER_OUT, **route
        )
        inbound = _approved_transfer(
            actor,
            now,
            department=destination_department,
            transaction_type=TransactionType.TRANSFER_IN,
            reference_number=outbound.transaction_number,
            **route,
        )
        outbound.reference_number = inbound.transaction_number
        outbound.save(update_fields=["reference_number", "updated_at"])

        replace_items(outbound, [{"part": line["part"], "quantity": line["quantity"]} for line in lines])
        replace_items(inbound, [{"part": line["destination_part"], "quantity": line["quantity"]} for line in lines])

        batch = BatchResult()
        outbound_applied = inbound_applied = True
        for outgoing, incoming in zip(outbound.items.order_by("position"), inbound.items.order_by("position")):
            _apply_item(batch, outgoing, actor, **_forward_change(outbound, outgoing))
            if batch.results[-1].status == ItemResult.FAILED:
                outbound_applied = inbound_applied = False
                batch.results.append(ItemResult.for_item(incoming, ItemResult.SKIPPED, message="Outbound leg failed"))
                continue
            _apply_item(batch, incoming, actor, **_forward_change(inbound, incoming))
            if batch.results[-1].status == ItemResult.FAILED:
                inbound_applied = False

        if outbound_applied:
            _complete_transfer_leg(outbound, actor, now, f"Transferred to {destination_department.code}")
        if inbound_applied:
            _complete_transfer_leg(inbound, actor, now, f"Received from {source_department.code}")

    logger.info(
        "department_transfer_processed",
        extra={
            "transaction_number": outbound.transaction_number,
            "user_id": str(actor.id),
        },
    )
    return outbound, inbound, batch.summarize("transferred")
