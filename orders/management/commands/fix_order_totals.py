"""
Django management command that repairs drifted order totals.
"""
import logging

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from orders.exceptions import ReconciliationError, StorageUnavailable
from orders.models import Order
from orders.publishers import publish_totals_repaired
from orders.reconciliation import audit, repair
from orders.storage import DjangoOrderStore

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Recompute and store the subtotal/total of orders that drifted from their line items"

    def add_arguments(self, parser):
        parser.add_argument(
            "--order",
            dest="order_numbers",
            action="append",
            default=[],
            metavar="ORDER_NUMBER",
            help="Only repair this order (repeatable)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List the orders that would be repaired without writing",
        )

    def handle(self, *args, **options):
        """Main command handler."""
        tolerance = settings.ORDER_TOTALS_TOLERANCE
        store = DjangoOrderStore()

        order_ids = None
        if options["order_numbers"]:
            found = dict(
                Order.objects.filter(order_number__in=options["order_numbers"]).values_list("order_number", "pk")
            )
            missing = sorted(set(options["order_numbers"]) - set(found))
            if missing:
                raise CommandError(f"Unknown order numbers: {', '.join(missing)}")
            order_ids = list(found.values())

        try:
            report = audit(store, order_ids=order_ids, tolerance=tolerance)
        except StorageUnavailable as e:
            raise CommandError(f"Order audit aborted: {e}")

        self.stdout.write(f"Found {report.checked} orders to check")

        for failure in report.failures:
            self.stdout.write(self.style.ERROR(f"Order id {failure.order_id} skipped: {failure.reason}"))

        fixed_count = 0
        for result in report.inconsistent:
            self.stdout.write(
                f"Fixing order {result.order_number}: total {result.stored_total} -> {result.canonical_total} "
                f"(subtotal {result.stored_subtotal} -> {result.canonical_subtotal})"
            )
            if options["dry_run"]:
                continue

            try:
                outcome = repair(store, result.order_id, tolerance)
            except ReconciliationError as e:
                # One order failing must not stop the rest of the batch
                self.stdout.write(self.style.ERROR(f"Could not repair {result.order_number}: {e}"))
                continue

            if outcome.applied:
                fixed_count += 1
                try:
                    publish_totals_repaired(outcome)
                except Exception as e:
                    logger.error(f"Failed to publish order.totals_repaired event: {e}", exc_info=True)

        if options["dry_run"]:
            self.stdout.write(self.style.WARNING(f"Dry run: {len(report.inconsistent)} orders would be fixed"))
        else:
            self.stdout.write(self.style.SUCCESS(f"Fixed {fixed_count} orders"))
