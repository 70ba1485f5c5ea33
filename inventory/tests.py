import uuid
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import DatabaseError, connection
from django.test import TestCase
from django.test.utils import CaptureQueriesContext
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog, Department
from inventory.exceptions import InvalidTransactionState, InvalidTransactionType, InventoryValidationError
from inventory.ledger import apply_quantity_change, compute_delta, find_ledger_drift, replay_part_quantity
from inventory.models import (
    MAX_QUANTITY,
    AppendOnlyViolation,
    InventoryHistory,
    Part,
    StockTransaction,
    TransactionType,
)
from inventory.services import (
    apply_transaction,
    next_transaction_number,
    replace_items,
    reverse_and_cancel,
    transition_stock_transaction,
    transfer_between_departments,
    validate_availability,
)


class InventoryFixturesMixin:
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.department_a = Department.objects.create(code="MNT", name="Maintenance")
        self.department_b = Department.objects.create(code="OPS", name="Operations")

        self.user_a = self.user_model.objects.create_user(
            username="tech-a",
            password="pass1234",
            department=self.department_a,
        )
        self.admin_a = self.user_model.objects.create_user(
            username="admin-a",
            password="pass1234",
            first_name="Dana",
            last_name="Reyes",
            department=self.department_a,
            access_level="department_admin",
        )
        self.super_admin = self.user_model.objects.create_user(
            username="root",
            password="pass1234",
            access_level="super_admin",
        )

    def make_part(self, part_number, quantity=0, min_stock_level=0, department=None, **fields):
        fields.setdefault("unit_price", Decimal("0.00"))
        fields.setdefault("location", "Bin A1")
        return Part.objects.create(
            department=department or self.department_a,
            part_number=part_number,
            sku=f"SKU-{part_number}",
            material_code=f"MAT-{part_number}",
            name=f"Part {part_number}",
            quantity=quantity,
            min_stock_level=min_stock_level,
            **fields,
        )

    def make_transaction(self, transaction_type, lines, status=StockTransaction.Status.APPROVED, department=None, **fields):
        fields.setdefault("description", "Line maintenance")
        stock_transaction = StockTransaction.objects.create(
            department=department or self.department_a,
            transaction_number=next_transaction_number(),
            transaction_type=transaction_type,
            transaction_date=timezone.now(),
            status=status,
            created_by=self.admin_a,
            created_by_name=self.admin_a.display_name,
            **fields,
        )
        items = []
        for line in lines:
            part, quantity = line[0], line[1]
            unit_cost = line[2] if len(line) > 2 else 0
            items.append({"part": part, "quantity": quantity, "unit_cost": unit_cost})
        return replace_items(stock_transaction, items)


class QuantityDeltaTests(TestCase):
    def test_types_decide_the_direction_of_the_change(self):
        self.assertEqual(compute_delta(TransactionType.RECEIPT, 5), 5)
        self.assertEqual(compute_delta(TransactionType.RECEIPT, -5), 5)
        self.assertEqual(compute_delta(TransactionType.TRANSFER_IN, 2), 2)
        self.assertEqual(compute_delta(TransactionType.ISSUE, 5), -5)
        self.assertEqual(compute_delta(TransactionType.TRANSFER_OUT, -3), -3)
        self.assertEqual(compute_delta(TransactionType.SCRAP, 1), -1)

    def test_adjustment_quantity_passes_through_signed(self):
        self.assertEqual(compute_delta(TransactionType.ADJUSTMENT, -4), -4)
        self.assertEqual(compute_delta(TransactionType.ADJUSTMENT, 7), 7)

    def test_unknown_type_is_rejected(self):
        with self.assertRaises(InvalidTransactionType):
            compute_delta("transfer", 1)


class ApplyTransactionTests(InventoryFixturesMixin, TestCase):
    def test_receipt_adds_stock_and_records_history(self):
        part = self.make_part("P-100", quantity=10, min_stock_level=5)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 5)], supplier="Acme")

        batch = apply_transaction(receipt, self.admin_a)

        self.assertTrue(batch.success)
        self.assertEqual(batch.total_updated, 1)
        self.assertEqual(batch.message, "Successfully updated inventory for 1 parts")
        part.refresh_from_db()
        self.assertEqual(part.quantity, 15)
        self.assertEqual(part.stock_status, Part.StockStatus.IN_STOCK)

        entry = part.history.get()
        self.assertEqual((entry.previous_quantity, entry.quantity_change, entry.new_quantity), (10, 5, 15))
        self.assertEqual(entry.change_type, InventoryHistory.ChangeType.TRANSACTION)
        self.assertEqual(entry.stock_transaction_id, receipt.id)
        self.assertEqual(entry.transaction_number, receipt.transaction_number)
        self.assertEqual(entry.reason, "RECEIPT: Line maintenance")
        self.assertEqual(entry.sequence, 1)

    def test_issue_into_low_stock(self):
        part = self.make_part("P-101", quantity=3, min_stock_level=5)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 1)], recipient="Line 3")

        batch = apply_transaction(issue, self.admin_a)

        self.assertTrue(batch.success)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 2)
        self.assertEqual(part.stock_status, Part.StockStatus.LOW_STOCK)
        self.assertEqual(part.history.get().quantity_change, -1)

    def test_issue_from_empty_part_fails_without_history(self):
        part = self.make_part("P-102", quantity=0)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 1)], recipient="Line 3")

        batch = apply_transaction(issue, self.admin_a)

        self.assertFalse(batch.success)
        self.assertEqual(batch.total_failed, 1)
        self.assertEqual(batch.failed[0].error_code, "insufficient_stock")
        self.assertEqual(batch.message, "Updated 0 parts, 1 failed")
        part.refresh_from_db()
        self.assertEqual(part.quantity, 0)
        self.assertFalse(part.history.exists())

    def test_issuing_exact_on_hand_quantity_empties_the_part(self):
        part = self.make_part("P-103", quantity=4, min_stock_level=1)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 4)], recipient="Line 3")

        batch = apply_transaction(issue, self.admin_a)

        self.assertTrue(batch.success)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 0)
        self.assertEqual(part.stock_status, Part.StockStatus.OUT_OF_STOCK)

    def test_issuing_one_more_than_on_hand_leaves_part_unchanged(self):
        part = self.make_part("P-104", quantity=4)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 5)], recipient="Line 3")

        batch = apply_transaction(issue, self.admin_a)

        self.assertEqual(batch.failed[0].error_code, "insufficient_stock")
        self.assertIn("Current: 4, requested change: -5", batch.failed[0].message)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 4)

    def test_failed_item_does_not_undo_the_others(self):
        plenty = self.make_part("P-105", quantity=10)
        scarce = self.make_part("P-106", quantity=1)
        issue = self.make_transaction(TransactionType.ISSUE, [(plenty, 2), (scarce, 3)], recipient="Line 3")

        batch = apply_transaction(issue, self.admin_a)

        self.assertFalse(batch.success)
        self.assertEqual((batch.total_updated, batch.total_failed), (1, 1))
        self.assertEqual(batch.failed[0].part_number, "P-106")
        plenty.refresh_from_db()
        scarce.refresh_from_db()
        self.assertEqual(plenty.quantity, 8)
        self.assertEqual(scarce.quantity, 1)
        payload = batch.as_dict()
        self.assertEqual([result["success"] for result in payload["results"]], [True, False])

    def test_applying_twice_without_guard_applies_twice(self):
        part = self.make_part("P-107", quantity=10)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 5)], supplier="Acme")

        apply_transaction(receipt, self.admin_a)
        apply_transaction(receipt, self.admin_a)

        part.refresh_from_db()
        self.assertEqual(part.quantity, 20)
        self.assertEqual(list(part.history.order_by("sequence").values_list("sequence", flat=True)), [1, 2])

    def test_skip_applied_makes_a_retry_safe(self):
        part = self.make_part("P-108", quantity=10)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 5)], supplier="Acme")

        apply_transaction(receipt, self.admin_a, skip_applied=True)
        batch = apply_transaction(receipt, self.admin_a, skip_applied=True)

        self.assertTrue(batch.success)
        self.assertEqual((batch.total_updated, batch.total_skipped), (0, 1))
        self.assertIn("(1 skipped)", batch.message)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 15)
        self.assertEqual(part.history.count(), 1)

    def test_draft_transaction_is_rejected_before_any_change(self):
        part = self.make_part("P-109", quantity=10)
        draft = self.make_transaction(
            TransactionType.RECEIPT,
            [(part, 5)],
            status=StockTransaction.Status.DRAFT,
            supplier="Acme",
        )

        with self.assertRaises(InvalidTransactionState):
            apply_transaction(draft, self.admin_a)

        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)
        self.assertFalse(InventoryHistory.objects.exists())

    def test_repeated_part_lines_are_each_applied_under_the_guard(self):
        part = self.make_part("P-115", quantity=0)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 2), (part, 3)], supplier="Acme")

        batch = apply_transaction(receipt, self.admin_a, skip_applied=True)

        self.assertEqual((batch.total_updated, batch.total_skipped), (2, 0))
        part.refresh_from_db()
        self.assertEqual(part.quantity, 5)

    def test_part_lock_reads_only_the_part_row(self):
        part = self.make_part("P-116", quantity=1)

        with CaptureQueriesContext(connection) as ctx:
            apply_quantity_change(part.id, 1, self.admin_a, reason="Count")

        part_reads = [query["sql"] for query in ctx.captured_queries if 'FROM "inventory_part"' in query["sql"]]
        self.assertTrue(part_reads)
        self.assertFalse(any("JOIN" in sql for sql in part_reads))

    def test_quantity_beyond_the_column_range_is_rejected(self):
        part = self.make_part("P-117", quantity=MAX_QUANTITY - 1)

        with self.assertRaises(InventoryValidationError):
            apply_quantity_change(part.id, 2, self.admin_a, reason="Count")

        part.refresh_from_db()
        self.assertEqual(part.quantity, MAX_QUANTITY - 1)
        self.assertFalse(part.history.exists())

    def test_transaction_from_another_department_cannot_be_booked_on_a_part(self):
        part = self.make_part("P-118", quantity=10)
        part_b = self.make_part("P-119", quantity=10, department=self.department_b)
        scrap_b = self.make_transaction(TransactionType.SCRAP, [(part_b, 1)], department=self.department_b)

        with self.assertRaises(InventoryValidationError):
            apply_quantity_change(part.id, -1, self.super_admin, reason="Scrap", stock_transaction=scrap_b)

        self.assertFalse(scrap_b.ledger_entries.exists())

    def test_part_in_other_department_is_reported_per_item(self):
        part_b = self.make_part("P-110", quantity=10, department=self.department_b)
        issue = self.make_transaction(
            TransactionType.ISSUE,
            [(part_b, 2)],
            department=self.department_b,
            recipient="Line 9",
        )

        batch = apply_transaction(issue, self.admin_a)

        self.assertEqual(batch.failed[0].error_code, "department_scope_violation")
        part_b.refresh_from_db()
        self.assertEqual(part_b.quantity, 10)

        batch = apply_transaction(issue, self.super_admin)

        self.assertTrue(batch.success)
        part_b.refresh_from_db()
        self.assertEqual(part_b.quantity, 8)

    def test_outbound_change_updates_usage_tracking(self):
        part = self.make_part("P-111", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 3)], recipient="Line 3")

        apply_transaction(issue, self.admin_a)

        part.refresh_from_db()
        self.assertEqual(part.total_consumed, 3)
        self.assertIsNotNone(part.last_used_date)
        self.assertEqual(part.average_monthly_usage, Decimal("3.00"))

    def test_receipt_unit_cost_becomes_the_purchase_price(self):
        part = self.make_part("P-112", quantity=10, unit_price=Decimal("2.00"))
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 5, Decimal("2.50"))], supplier="Acme")

        apply_transaction(receipt, self.admin_a)

        part.refresh_from_db()
        self.assertEqual(part.unit_price, Decimal("2.50"))
        self.assertEqual(part.last_purchase_price, Decimal("2.50"))
        self.assertIsNotNone(part.last_purchase_date)
        self.assertEqual(part.total_value, Decimal("37.50"))
        self.assertEqual(part.history.get().cost, Decimal("12.50"))

    def test_history_chain_holds_across_mixed_changes(self):
        part = self.make_part("P-113", quantity=0)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 8)], supplier="Acme")
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 3)], recipient="Line 3")
        adjustment = self.make_transaction(TransactionType.ADJUSTMENT, [(part, -2)])

        apply_transaction(receipt, self.admin_a)
        apply_transaction(issue, self.admin_a)
        apply_transaction(adjustment, self.admin_a)
        apply_quantity_change(part.id, 4, self.admin_a, reason="Cycle count")

        part.refresh_from_db()
        self.assertEqual(part.quantity, 7)
        entries = list(part.history.order_by("sequence"))
        self.assertEqual([entry.sequence for entry in entries], [1, 2, 3, 4])
        self.assertEqual(entries[0].previous_quantity, 0)
        for previous, entry in zip(entries, entries[1:]):
            self.assertEqual(entry.previous_quantity, previous.new_quantity)
        for entry in entries:
            self.assertEqual(entry.new_quantity, entry.previous_quantity + entry.quantity_change)
            self.assertGreaterEqual(entry.new_quantity, 0)
        self.assertTrue(replay_part_quantity(part).in_sync)

    def test_persistence_failure_is_reported_and_rolled_back(self):
        part = self.make_part("P-114", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 2)], recipient="Line 3")

        with mock.patch.object(InventoryHistory.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("inventory.ledger", level="ERROR"):
                batch = apply_transaction(issue, self.admin_a)

        self.assertEqual(batch.failed[0].error_code, "persistence_error")
        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)
        self.assertEqual(part.total_consumed, 0)


class ReverseTransactionTests(InventoryFixturesMixin, TestCase):
    def test_reversal_restores_quantity_with_new_entries(self):
        part = self.make_part("P-200", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 4, Decimal("1.50"))], recipient="Line 3")
        issue, _ = transition_stock_transaction(issue, StockTransaction.Status.COMPLETED, self.admin_a)

        issue, batch = reverse_and_cancel(issue, self.admin_a)

        self.assertTrue(batch.success)
        self.assertEqual(batch.message, "Successfully reversed inventory for 1 parts")
        self.assertEqual(issue.status, StockTransaction.Status.CANCELLED)
        self.assertIsNotNone(issue.cancelled_at)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)

        forward, reversal = part.history.order_by("sequence")
        self.assertEqual(reversal.quantity_change, -forward.quantity_change)
        self.assertEqual(reversal.change_type, InventoryHistory.ChangeType.ADJUSTMENT)
        self.assertEqual(reversal.transaction_type, TransactionType.ADJUSTMENT)
        self.assertEqual(reversal.reason, "REVERSAL: Line maintenance")
        self.assertEqual(reversal.notes, f"Reversal of transaction {issue.transaction_number}")
        self.assertEqual(reversal.cost, Decimal("-6.00"))
        self.assertEqual(forward.change_type, InventoryHistory.ChangeType.TRANSACTION)

    def test_reversal_respects_non_negative_stock(self):
        part = self.make_part("P-201", quantity=0)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 5)], supplier="Acme")
        receipt, _ = transition_stock_transaction(receipt, StockTransaction.Status.COMPLETED, self.admin_a)
        apply_quantity_change(part.id, -4, self.admin_a, reason="Emergency repair")

        receipt, batch = reverse_and_cancel(receipt, self.admin_a)

        self.assertFalse(batch.success)
        self.assertEqual(batch.failed[0].error_code, "insufficient_stock")
        self.assertEqual(receipt.status, StockTransaction.Status.COMPLETED)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 1)

    def test_only_completed_transactions_can_be_reversed(self):
        part = self.make_part("P-202", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 1)], recipient="Line 3")

        with self.assertRaises(InvalidTransactionState):
            reverse_and_cancel(issue, self.admin_a)


class AvailabilityTests(InventoryFixturesMixin, TestCase):
    def test_reports_each_short_part_and_changes_nothing(self):
        short = self.make_part("P-300", quantity=2)
        plenty = self.make_part("P-301", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(short, 5), (plenty, 1)], recipient="Line 3")

        result = validate_availability(issue, self.admin_a)

        self.assertFalse(result.valid)
        self.assertEqual(len(result.issues), 1)
        self.assertIn("P-300", result.issues[0])
        self.assertIn("available 2, required 5", result.issues[0])
        short.refresh_from_db()
        self.assertEqual(short.quantity, 2)
        self.assertFalse(InventoryHistory.objects.exists())

    def test_demand_for_the_same_part_is_summed(self):
        part = self.make_part("P-302", quantity=5)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 3), (part, 3)], recipient="Line 3")

        result = validate_availability(issue)

        self.assertFalse(result.valid)
        self.assertIn("required 6", result.issues[0])

    def test_inbound_transactions_are_always_available(self):
        part = self.make_part("P-303", quantity=0)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 50)], supplier="Acme")

        result = validate_availability(receipt)

        self.assertTrue(result.valid)
        self.assertEqual(result.issues, [])

    def test_part_outside_actor_department_is_an_issue(self):
        part_b = self.make_part("P-304", quantity=10, department=self.department_b)
        issue = self.make_transaction(TransactionType.ISSUE, [(part_b, 1)], department=self.department_b, recipient="Line 9")

        result = validate_availability(issue, self.admin_a)

        self.assertFalse(result.valid)
        self.assertIn("another department", result.issues[0])


class StockTransactionApiTests(InventoryFixturesMixin, TestCase):
    def _status(self, stock_transaction, new_status, user=None, **extra):
        self.client.force_authenticate(user=user or self.admin_a)
        return self.client.post(
            f"/api/v1/stock-transactions/{stock_transaction.id}/status/",
            {"status": new_status, **extra},
            format="json",
        )

    def test_issue_moves_through_its_lifecycle(self):
        first = self.make_part("P-400", quantity=10)
        second = self.make_part("P-401", quantity=6)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            "/api/v1/stock-transactions/",
            {
                "transaction_type": "issue",
                "description": "Line 3 maintenance",
                "recipient": "Line 3",
                "items": [
                    {"part": str(first.id), "quantity": 2, "unit_cost": "1.25"},
                    {"part": str(second.id), "quantity": 3},
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "draft")
        self.assertTrue(payload["transaction_number"].startswith("ST-"))
        self.assertEqual(payload["department"], str(self.department_a.id))
        self.assertEqual((payload["total_items"], payload["total_quantity"]), (2, 5))
        self.assertEqual(payload["total_amount"], "2.50")
        stock_transaction = StockTransaction.objects.get(id=payload["id"])

        self.assertEqual(self._status(stock_transaction, "pending", user=self.user_a).status_code, 200)

        response = self._status(stock_transaction, "approved")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["transaction"]["approved_by_name"], "Dana Reyes")
        self.assertIsNone(response.json()["inventory"])

        response = self._status(stock_transaction, "completed", notes="Handed over")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["inventory"]["total_updated"], 2)
        self.assertEqual(response.json()["transaction"]["status"], "completed")
        self.assertIn(
            "Status changed from approved to completed: Handed over by Dana Reyes",
            response.json()["transaction"]["internal_notes"],
        )
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual((first.quantity, second.quantity), (8, 3))

        response = self.client.get(f"/api/v1/stock-transactions/{stock_transaction.id}/ledger/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 2)

        self.assertTrue(
            AuditLog.objects.filter(action="stock_transaction.status.completed", entity_id=stock_transaction.id).exists()
        )

    def test_invalid_transition_is_rejected(self):
        part = self.make_part("P-402", quantity=10)
        draft = self.make_transaction(
            TransactionType.ISSUE,
            [(part, 1)],
            status=StockTransaction.Status.DRAFT,
            recipient="Line 3",
        )

        response = self._status(draft, "completed")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")
        draft.refresh_from_db()
        self.assertEqual(draft.status, StockTransaction.Status.DRAFT)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)

    def test_approval_is_blocked_when_stock_is_short(self):
        part = self.make_part("P-403", quantity=1)
        pending = self.make_transaction(
            TransactionType.ISSUE,
            [(part, 5)],
            status=StockTransaction.Status.PENDING,
            recipient="Line 3",
        )

        response = self._status(pending, "approved")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "stock_unavailable")
        self.assertEqual(len(response.json()["errors"]["issues"]), 1)
        pending.refresh_from_db()
        self.assertEqual(pending.status, StockTransaction.Status.PENDING)
        self.assertIsNone(pending.approved_at)

    def test_regular_user_cannot_approve(self):
        part = self.make_part("P-404", quantity=10)
        pending = self.make_transaction(
            TransactionType.ISSUE,
            [(part, 1)],
            status=StockTransaction.Status.PENDING,
            recipient="Line 3",
        )

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self._status(pending, "approved", user=self.user_a)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_incomplete_completion_stays_approved_and_retry_finishes(self):
        plenty = self.make_part("P-405", quantity=10)
        scarce = self.make_part("P-406", quantity=3)
        approved = self.make_transaction(TransactionType.ISSUE, [(plenty, 2), (scarce, 3)], recipient="Line 3")
        apply_quantity_change(scarce.id, -2, self.admin_a, reason="Emergency repair")

        response = self._status(approved, "completed")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "inventory_update_incomplete")
        self.assertEqual(payload["errors"]["inventory"]["total_updated"], 1)
        self.assertEqual(payload["errors"]["inventory"]["total_failed"], 1)
        self.assertEqual(payload["errors"]["transaction"]["status"], "approved")
        approved.refresh_from_db()
        self.assertEqual(approved.status, StockTransaction.Status.APPROVED)

        apply_quantity_change(scarce.id, 5, self.admin_a, reason="Restocked from store")
        response = self._status(approved, "completed")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["inventory"]["total_skipped"], 1)
        self.assertEqual(response.json()["inventory"]["total_updated"], 1)
        plenty.refresh_from_db()
        scarce.refresh_from_db()
        self.assertEqual((plenty.quantity, scarce.quantity), (8, 3))
        approved.refresh_from_db()
        self.assertEqual(approved.status, StockTransaction.Status.COMPLETED)

    def test_completed_transaction_cannot_be_cancelled_but_can_be_reversed(self):
        part = self.make_part("P-407", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 4)], recipient="Line 3")
        self.assertEqual(self._status(issue, "completed").status_code, 200)

        response = self._status(issue, "cancelled")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")

        response = self.client.post(
            f"/api/v1/stock-transactions/{issue.id}/reverse/",
            {"notes": "Wrong part picked"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["transaction"]["status"], "cancelled")
        self.assertIn("Reversed and cancelled: Wrong part picked", response.json()["transaction"]["internal_notes"])
        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)

    def test_availability_endpoint(self):
        part = self.make_part("P-408", quantity=1)
        draft = self.make_transaction(
            TransactionType.SCRAP,
            [(part, 2)],
            status=StockTransaction.Status.DRAFT,
        )
        self.client.force_authenticate(user=self.user_a)

        response = self.client.get(f"/api/v1/stock-transactions/{draft.id}/availability/")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["valid"])
        self.assertEqual(len(response.json()["issues"]), 1)

    def test_super_admin_deletes_draft(self):
        part = self.make_part("P-409", quantity=10)
        draft = self.make_transaction(
            TransactionType.ISSUE,
            [(part, 1)],
            status=StockTransaction.Status.DRAFT,
            recipient="Line 3",
        )
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.delete(f"/api/v1/stock-transactions/{draft.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(StockTransaction.objects.filter(id=draft.id).exists())
        self.assertTrue(AuditLog.objects.filter(action="stock_transaction.delete", entity_id=draft.id).exists())

    def test_department_admin_cannot_delete(self):
        part = self.make_part("P-410", quantity=10)
        draft = self.make_transaction(
            TransactionType.ISSUE,
            [(part, 1)],
            status=StockTransaction.Status.DRAFT,
            recipient="Line 3",
        )
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.delete(f"/api/v1/stock-transactions/{draft.id}/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(StockTransaction.objects.filter(id=draft.id).exists())

    def test_completed_transaction_cannot_be_deleted(self):
        part = self.make_part("P-411", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 1)], recipient="Line 3")
        transition_stock_transaction(issue, StockTransaction.Status.COMPLETED, self.admin_a)
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.delete(f"/api/v1/stock-transactions/{issue.id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertEqual(response.json()["message"], "Transaction has already affected inventory")

    def test_draft_items_can_be_replaced(self):
        part = self.make_part("P-412", quantity=10)
        draft = self.make_transaction(TransactionType.ADJUSTMENT, [(part, 1)], status=StockTransaction.Status.DRAFT)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.patch(
            f"/api/v1/stock-transactions/{draft.id}/",
            {"items": [{"part": str(part.id), "quantity": -2, "unit_cost": "2.00"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total_quantity"], -2)
        self.assertEqual(response.json()["total_amount"], "4.00")
        self.assertEqual(draft.items.count(), 1)

    def test_completed_transaction_only_accepts_super_admin_note_corrections(self):
        part = self.make_part("P-413", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 1)], recipient="Line 3")
        transition_stock_transaction(issue, StockTransaction.Status.COMPLETED, self.admin_a)
        url = f"/api/v1/stock-transactions/{issue.id}/"

        self.client.force_authenticate(user=self.admin_a)
        self.assertEqual(self.client.patch(url, {"notes": "Counted twice"}, format="json").status_code, 403)

        self.client.force_authenticate(user=self.super_admin)
        response = self.client.patch(url, {"notes": "Counted twice"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "Counted twice")

        response = self.client.patch(url, {"description": "Something else"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")

    def test_super_admin_put_with_unchanged_items_corrects_notes(self):
        part = self.make_part("P-418", quantity=10)
        issue = self.make_transaction(TransactionType.ISSUE, [(part, 1)], recipient="Line 3")
        transition_stock_transaction(issue, StockTransaction.Status.COMPLETED, self.admin_a)
        url = f"/api/v1/stock-transactions/{issue.id}/"
        item_id = issue.items.get().id
        payload = {
            "transaction_type": "issue",
            "description": "Line maintenance",
            "recipient": "Line 3",
            "notes": "Recounted on shift change",
            "items": [{"part": str(part.id), "quantity": 1, "unit_cost": "0.00"}],
        }
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.put(url, payload, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "Recounted on shift change")
        self.assertEqual(issue.items.get().id, item_id)

        payload["items"][0]["quantity"] = 2
        response = self.client.put(url, payload, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertEqual(issue.items.get().quantity, 1)

    def test_completion_skips_parts_already_booked_by_hand(self):
        part = self.make_part("P-419", quantity=5)
        receipt = self.make_transaction(TransactionType.RECEIPT, [(part, 5)], supplier="Acme")
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            f"/api/v1/parts/{part.id}/inventory/",
            {"quantityChange": 5, "reason": "Late booking", "transactionId": str(receipt.id)},
            format="json",
        )
        self.assertEqual(response.status_code, 200)

        response = self._status(receipt, "completed")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["inventory"]["total_skipped"], 1)
        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)
        self.assertEqual(receipt.ledger_entries.filter(part=part).count(), 1)

    def test_item_quantity_out_of_range_is_a_validation_error(self):
        part = self.make_part("P-420", quantity=10)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            "/api/v1/stock-transactions/",
            {
                "transaction_type": "receipt",
                "description": "Bulk delivery",
                "supplier": "Acme",
                "items": [{"part": str(part.id), "quantity": 10**19}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("quantity", response.json()["errors"]["items"][0])
        self.assertFalse(StockTransaction.objects.exists())

    def test_issue_needs_a_recipient_asset_or_work_order(self):
        part = self.make_part("P-414", quantity=10)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            "/api/v1/stock-transactions/",
            {"transaction_type": "issue", "description": "No recipient", "items": [{"part": str(part.id), "quantity": 1}]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("non_field_errors", response.json()["errors"])

    def test_line_quantities_follow_the_type_sign_policy(self):
        part = self.make_part("P-415", quantity=10)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            "/api/v1/stock-transactions/",
            {
                "transaction_type": "receipt",
                "description": "Negative receipt",
                "supplier": "Acme",
                "items": [{"part": str(part.id), "quantity": -3}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("quantity", response.json()["errors"]["items"][0])

        response = self.client.post(
            "/api/v1/stock-transactions/",
            {
                "transaction_type": "adjustment",
                "description": "Count correction",
                "items": [{"part": str(part.id), "quantity": -3}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)

    def test_items_must_belong_to_the_transaction_department(self):
        part_b = self.make_part("P-416", quantity=10, department=self.department_b)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            "/api/v1/stock-transactions/",
            {"transaction_type": "scrap", "description": "Damaged", "items": [{"part": str(part_b.id), "quantity": 1}]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("part", response.json()["errors"]["items"][0])

    def test_user_cannot_read_other_department_transactions(self):
        part_b = self.make_part("P-417", quantity=10, department=self.department_b)
        other = self.make_transaction(TransactionType.SCRAP, [(part_b, 1)], department=self.department_b)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.get("/api/v1/stock-transactions/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertNotIn(str(other.id), ids)
        self.assertEqual(self.client.get(f"/api/v1/stock-transactions/{other.id}/").status_code, 404)


class DepartmentTransferTests(InventoryFixturesMixin, TestCase):
    url = "/api/v1/stock-transactions/department-transfer/"

    def setUp(self):
        super().setUp()
        self.source_part = self.make_part("P-800", quantity=10)
        self.destination_part = self.make_part("P-801", quantity=1, department=self.department_b, location="Bay 4")

    def _payload(self, quantity, **overrides):
        payload = {
            "source_department": str(self.department_a.id),
            "destination_department": str(self.department_b.id),
            "description": "Rebalance seals",
            "items": [
                {"part": str(self.source_part.id), "destination_part": str(self.destination_part.id), "quantity": quantity}
            ],
        }
        payload.update(overrides)
        return payload

    def test_stock_moves_as_a_linked_pair_of_transactions(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.post(self.url, self._payload(4), format="json")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        outbound = StockTransaction.objects.get(id=payload["outbound"]["id"])
        inbound = StockTransaction.objects.get(id=payload["inbound"]["id"])
        self.assertEqual((outbound.transaction_type, outbound.department_id), ("transfer_out", self.department_a.id))
        self.assertEqual((inbound.transaction_type, inbound.department_id), ("transfer_in", self.department_b.id))
        self.assertEqual(outbound.reference_number, inbound.transaction_number)
        self.assertEqual(inbound.reference_number, outbound.transaction_number)
        self.assertEqual((outbound.status, inbound.status), ("completed", "completed"))
        self.assertEqual(payload["inventory"]["total_updated"], 2)

        self.source_part.refresh_from_db()
        self.destination_part.refresh_from_db()
        self.assertEqual((self.source_part.quantity, self.destination_part.quantity), (6, 5))
        self.assertEqual(outbound.ledger_entries.get().quantity_change, -4)
        self.assertEqual(inbound.ledger_entries.get().quantity_change, 4)
        self.assertTrue(
            AuditLog.objects.filter(action="stock_transaction.department_transfer", entity_id=outbound.id).exists()
        )

    def test_inbound_leg_is_skipped_when_the_outbound_leg_fails(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.post(self.url, self._payload(11), format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "inventory_update_incomplete")
        results = response.json()["errors"]["inventory"]["results"]
        self.assertEqual([result["status"] for result in results], ["failed", "skipped"])
        self.assertEqual(results[0]["error_code"], "insufficient_stock")

        self.source_part.refresh_from_db()
        self.destination_part.refresh_from_db()
        self.assertEqual((self.source_part.quantity, self.destination_part.quantity), (10, 1))
        self.assertFalse(InventoryHistory.objects.exists())
        self.assertEqual(
            set(StockTransaction.objects.values_list("status", flat=True)),
            {StockTransaction.Status.APPROVED},
        )

    def test_department_admin_cannot_move_stock_out_of_their_department(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(self.url, self._payload(4), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "department_scope_violation")
        self.assertFalse(StockTransaction.objects.exists())

    def test_regular_user_cannot_transfer(self):
        self.client.force_authenticate(user=self.user_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(self.url, self._payload(4), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_parts_must_belong_to_their_side_of_the_transfer(self):
        stray = self.make_part("P-802", quantity=0)
        self.client.force_authenticate(user=self.super_admin)
        payload = self._payload(4)
        payload["items"][0]["destination_part"] = str(stray.id)

        response = self.client.post(self.url, payload, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("destination_part", response.json()["errors"]["items"][0])

    def test_source_and_destination_must_differ(self):
        with self.assertRaises(InventoryValidationError):
            transfer_between_departments(
                self.department_a,
                self.department_a,
                [{"part": self.source_part, "destination_part": self.source_part, "quantity": 1}],
                self.super_admin,
                description="Loop",
            )

        self.assertFalse(StockTransaction.objects.exists())


class ManualInventoryChangeTests(InventoryFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.part = self.make_part("P-500", quantity=10, min_stock_level=2)
        self.url = f"/api/v1/parts/{self.part.id}/inventory/"

    def test_camel_case_request_applies_an_adjustment(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(self.url, {"quantityChange": 5, "reason": "Cycle count"}, format="json")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["quantity"], 15)
        self.assertEqual(payload["stock_status"], "in_stock")
        self.assertEqual(payload["message"], "Inventory updated successfully. New quantity: 15")
        entry = InventoryHistory.objects.get(id=payload["history_id"])
        self.assertEqual(entry.change_type, InventoryHistory.ChangeType.ADJUSTMENT)
        self.assertEqual(entry.location, "Bin A1")
        self.assertEqual(entry.performed_by_id, self.user_a.id)
        self.assertTrue(AuditLog.objects.filter(action="inventory.update", entity_id=self.part.id).exists())

    def test_snake_case_correction(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            self.url,
            {"quantity_change": -3, "reason": "Miscount", "change_type": "correction", "location": "Bin B2"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        entry = self.part.history.get()
        self.assertEqual(entry.change_type, InventoryHistory.ChangeType.CORRECTION)
        self.assertEqual(entry.location, "Bin B2")
        self.assertEqual(entry.new_quantity, 7)

    def test_zero_change_is_recorded(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(self.url, {"quantityChange": 0, "reason": "Count confirmed"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.part.history.get().quantity_change, 0)

    def test_linked_transaction_marks_the_entry(self):
        receipt = self.make_transaction(TransactionType.RECEIPT, [(self.part, 5)], supplier="Acme")
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            self.url,
            {"quantityChange": 5, "reason": "Late booking", "transactionId": str(receipt.id), "transactionType": "receipt"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        entry = self.part.history.get()
        self.assertEqual(entry.change_type, InventoryHistory.ChangeType.TRANSACTION)
        self.assertEqual(entry.stock_transaction_id, receipt.id)
        self.assertEqual(entry.transaction_number, receipt.transaction_number)

    def test_linked_transaction_must_be_in_the_callers_department(self):
        part_b = self.make_part("P-503", quantity=10, department=self.department_b)
        cancelled = self.make_transaction(
            TransactionType.SCRAP,
            [(part_b, 1)],
            status=StockTransaction.Status.CANCELLED,
            department=self.department_b,
        )
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            self.url,
            {"quantityChange": 2, "reason": "Found stock", "transactionId": str(cancelled.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "department_scope_violation")
        self.assertFalse(cancelled.ledger_entries.exists())
        self.part.refresh_from_db()
        self.assertEqual(self.part.quantity, 10)

    def test_linked_transaction_must_be_approved_or_completed(self):
        draft = self.make_transaction(
            TransactionType.RECEIPT,
            [(self.part, 5)],
            status=StockTransaction.Status.DRAFT,
            supplier="Acme",
        )
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            self.url,
            {"quantityChange": 5, "reason": "Early booking", "transactionId": str(draft.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("transaction_id", response.json()["errors"])
        self.assertFalse(self.part.history.exists())

    def test_linked_transaction_must_match_the_part_department(self):
        part_b = self.make_part("P-504", quantity=10, department=self.department_b)
        scrap_b = self.make_transaction(TransactionType.SCRAP, [(part_b, 1)], department=self.department_b)
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.post(
            self.url,
            {"quantityChange": -1, "reason": "Scrap", "transactionId": str(scrap_b.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("different departments", response.json()["message"])
        self.assertFalse(scrap_b.ledger_entries.exists())

    def test_quantity_change_out_of_range_is_a_validation_error(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(self.url, {"quantityChange": 10**19, "reason": "Count"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("quantity_change", response.json()["errors"])
        self.assertFalse(self.part.history.exists())

    def test_reason_is_required(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(self.url, {"quantityChange": 1, "reason": ""}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("reason", response.json()["errors"])

    def test_quantity_change_must_be_a_number(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(self.url, {"quantityChange": "lots", "reason": "Count"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["errors"]["quantity_change"],
            ["Invalid quantity change - must be a number."],
        )

    def test_unknown_transaction_type(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            self.url,
            {"quantityChange": 1, "reason": "Count", "transactionType": "transfer"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_transaction_type")

    def test_insufficient_stock(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(self.url, {"quantityChange": -11, "reason": "Issue"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "insufficient_stock")
        self.assertEqual(
            response.json()["message"],
            "Insufficient stock for P-500. Current: 10, requested change: -11",
        )
        self.part.refresh_from_db()
        self.assertEqual(self.part.quantity, 10)
        self.assertFalse(self.part.history.exists())

    def test_other_department_part_is_forbidden(self):
        part_b = self.make_part("P-501", quantity=10, department=self.department_b)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(f"/api/v1/parts/{part_b.id}/inventory/", {"quantityChange": -1, "reason": "Use"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "department_scope_violation")
        part_b.refresh_from_db()
        self.assertEqual(part_b.quantity, 10)

        self.client.force_authenticate(user=self.super_admin)
        response = self.client.post(f"/api/v1/parts/{part_b.id}/inventory/", {"quantityChange": -1, "reason": "Use"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["quantity"], 9)

    def test_unknown_part(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            f"/api/v1/parts/{uuid.uuid4()}/inventory/",
            {"quantityChange": 1, "reason": "Count"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "part_not_found")

    def test_history_is_paginated_newest_first(self):
        for step in range(3):
            apply_quantity_change(self.part.id, 1, self.admin_a, reason=f"Count {step}")
        self.client.force_authenticate(user=self.user_a)

        response = self.client.get(self.url, {"page": 1, "limit": 2})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["count"], 3)
        self.assertEqual([entry["sequence"] for entry in payload["results"]], [3, 2])
        self.assertIsNotNone(payload["next"])

    def test_history_of_other_department_part_is_forbidden(self):
        part_b = self.make_part("P-502", quantity=10, department=self.department_b)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.get(f"/api/v1/parts/{part_b.id}/inventory/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "department_scope_violation")

    def test_history_entries_are_append_only(self):
        _, entry = apply_quantity_change(self.part.id, 1, self.admin_a, reason="Count")

        entry.reason = "Rewritten"
        with self.assertRaises(AppendOnlyViolation):
            entry.save()
        with self.assertRaises(AppendOnlyViolation):
            entry.delete()

    def test_blank_reason_is_rejected_by_the_ledger(self):
        with self.assertRaises(InventoryValidationError):
            apply_quantity_change(self.part.id, 1, self.admin_a, reason="  ")

        self.assertFalse(self.part.history.exists())


class PartApiTests(InventoryFixturesMixin, TestCase):
    def test_opening_stock_is_booked_as_a_completed_receipt(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            "/api/v1/parts/",
            {
                "part_number": "P-600",
                "sku": "SKU-P-600",
                "material_code": "MAT-600",
                "name": "Hydraulic seal",
                "unit_price": "4.00",
                "quantity": 7,
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        part = Part.objects.get(id=response.json()["id"])
        self.assertEqual(part.department_id, self.department_a.id)
        self.assertEqual(part.quantity, 7)
        self.assertEqual(part.total_value, Decimal("28.00"))
        self.assertEqual(part.last_purchase_price, Decimal("4.00"))
        self.assertIsNotNone(part.last_purchase_date)

        entry = part.history.get()
        self.assertEqual(entry.change_type, InventoryHistory.ChangeType.INITIAL)
        self.assertEqual((entry.previous_quantity, entry.new_quantity), (0, 7))
        receipt = entry.stock_transaction
        self.assertEqual(receipt.status, StockTransaction.Status.COMPLETED)
        self.assertEqual(receipt.transaction_type, TransactionType.RECEIPT)
        self.assertEqual(receipt.description, "Initial stock for P-600")

        response = self.client.get(f"/api/v1/parts/{part.id}/reconcile/")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["in_sync"])
        self.assertEqual(response.json()["replayed_quantity"], 7)

    def test_admin_create_part_ignores_injected_department(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            "/api/v1/parts/",
            {
                "department": str(self.department_b.id),
                "part_number": "P-601",
                "sku": "SKU-P-601",
                "material_code": "MAT-601",
                "name": "Bearing",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        part = Part.objects.get(id=response.json()["id"])
        self.assertEqual(part.department_id, self.department_a.id)
        self.assertEqual(part.quantity, 0)
        self.assertFalse(part.history.exists())

    def test_regular_user_cannot_create_parts(self):
        self.client.force_authenticate(user=self.user_a)

        response = self.client.post(
            "/api/v1/parts/",
            {"part_number": "P-602", "sku": "SKU-P-602", "material_code": "MAT-602", "name": "Gasket"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_quantity_cannot_be_edited_directly(self):
        part = self.make_part("P-603", quantity=10)
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.patch(f"/api/v1/parts/{part.id}/", {"quantity": 99}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("quantity", response.json()["errors"])

        response = self.client.patch(f"/api/v1/parts/{part.id}/", {"min_stock_level": 20}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["stock_status"], "low_stock")
        part.refresh_from_db()
        self.assertEqual(part.quantity, 10)

    def test_delete_deactivates_the_part(self):
        part = self.make_part("P-604", quantity=10)
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.delete(f"/api/v1/parts/{part.id}/")

        self.assertEqual(response.status_code, 204)
        part.refresh_from_db()
        self.assertEqual(part.status, Part.Status.INACTIVE)
        self.assertTrue(AuditLog.objects.filter(action="part.deactivate", entity_id=part.id).exists())

    def test_list_is_scoped_and_filterable(self):
        low = self.make_part("P-605", quantity=1, min_stock_level=5)
        self.make_part("P-606", quantity=50, min_stock_level=5)
        other = self.make_part("P-607", quantity=1, department=self.department_b)
        self.client.force_authenticate(user=self.user_a)

        response = self.client.get("/api/v1/parts/", {"stock_status": "low_stock"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = [item["id"] for item in payload["results"]]
        self.assertEqual(ids, [str(low.id)])
        self.assertNotIn(str(other.id), ids)


class LedgerReconciliationTests(InventoryFixturesMixin, TestCase):
    def test_drift_is_detected_after_an_out_of_band_write(self):
        part = self.make_part("P-700", quantity=0)
        apply_quantity_change(part.id, 6, self.admin_a, reason="Opening count")
        self.assertEqual(find_ledger_drift(Part.objects.all()), [])

        Part.objects.filter(id=part.id).update(quantity=99)

        with self.assertLogs("inventory.ledger", level="WARNING"):
            drifted = find_ledger_drift(Part.objects.all())
        self.assertEqual(len(drifted), 1)
        self.assertEqual(drifted[0].replayed_quantity, 6)
        self.assertEqual(drifted[0].stored_quantity, 99)

    def test_part_without_history_replays_to_its_quantity_only_at_zero(self):
        self.assertTrue(replay_part_quantity(self.make_part("P-701", quantity=0)).in_sync)
        self.assertFalse(replay_part_quantity(self.make_part("P-702", quantity=3)).in_sync)

    def test_reconcile_command_reports_drift(self):
        part = self.make_part("P-703", quantity=0)
        apply_quantity_change(part.id, 2, self.admin_a, reason="Opening count")
        out = StringIO()

        call_command("reconcile_inventory", stdout=out)
        self.assertIn("Parts out of sync: 0", out.getvalue())

        Part.objects.filter(id=part.id).update(quantity=5)
        out = StringIO()
        call_command("reconcile_inventory", stdout=out)
        self.assertIn("P-703: stored=5 replayed=2", out.getvalue())

        with self.assertRaises(CommandError):
            call_command("reconcile_inventory", "--fail-on-drift", stdout=StringIO())
