from django.core.management.base import BaseCommand, CommandError

from core.models import Department
from inventory.ledger import find_ledger_drift
from inventory.models import Part


class Command(BaseCommand):
    help = "Replay each part's inventory history and report parts whose stored quantity has drifted."

    def add_arguments(self, parser):
        parser.add_argument("--department-id", dest="department_id", help="Optional department UUID.")
        parser.add_argument(
            "--fail-on-drift",
            action="store_true",
            help="Exit with an error when any part is out of sync with its history.",
        )

    def handle(self, *args, **options):
        department_id = options.get("department_id")

        departments = Department.objects.filter(is_active=True).order_by("code")
        if department_id:
            departments = departments.filter(id=department_id)

        total_drifted = 0
        for department in departments:
            parts = Part.objects.filter(department=department).order_by("part_number")
            drifted = find_ledger_drift(parts)
            total_drifted += len(drifted)
            if not drifted:
                self.stdout.write(self.style.SUCCESS(f"Department {department.code}: {parts.count()} parts in sync."))
                continue

            self.stdout.write(self.style.WARNING(f"Department {department.code}: {len(drifted)} part(s) out of sync."))
            for replay in drifted:
                self.stdout.write(
                    f"- {replay.part.part_number}: stored={replay.stored_quantity} "
                    f"replayed={replay.replayed_quantity} broken_entries={len(replay.broken_entries)}"
                )

        if total_drifted and options["fail_on_drift"]:
            raise CommandError(f"{total_drifted} part(s) out of sync with inventory history.")

        self.stdout.write(self.style.SUCCESS(f"Reconciliation complete. Parts out of sync: {total_drifted}."))
