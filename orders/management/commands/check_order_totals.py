"""
Django management command that audits stored order totals.
"""
import logging

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db.models import Sum

from orders.exceptions import StorageUnavailable
from orders.models import Order
from orders.reconciliation import audit
from orders.storage import DjangoOrderStore

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Report orders whose stored subtotal/total disagree with their line items"

    def add_arguments(self, parser):
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Only check the N most recent orders (default: all orders)",
        )
        parser.add_argument(
            "--workers",
            type=int,
            default=1,
            help="Number of threads reconciling orders in parallel",
        )
        parser.add_argument(
            "--strict",
            action="store_true",
            help="Exit with an error if any order could not be checked",
        )

    def handle(self, *args, **options):
        """Main command handler."""
        store = DjangoOrderStore()
        order_ids = None
        if options["limit"]:
            order_ids = list(
                Order.objects.order_by("-created_at").values_list("pk", flat=True)[: options["limit"]]
            )

        try:
            report = audit(
                store,
                order_ids=order_ids,
                tolerance=settings.ORDER_TOTALS_TOLERANCE,
                workers=options["workers"],
            )
        except StorageUnavailable as e:
            raise CommandError(f"Order audit aborted: {e}")

        self.stdout.write(f"Checked {report.checked} orders")

        for result in report.inconsistent:
            self.stdout.write(
                self.style.WARNING(
                    f"Order {result.order_number}: "
                    f"subtotal stored={result.stored_subtotal} calculated={result.canonical_subtotal}, "
                    f"total stored={result.stored_total} correct={result.canonical_total}, "
                    f"difference={result.delta}"
                )
            )

        for failure in report.failures:
            self.stdout.write(self.style.ERROR(f"Order id {failure.order_id} skipped: {failure.reason}"))

        revenue = Order.objects.aggregate(revenue=Sum("total"))["revenue"] or 0
        self.stdout.write(f"Total revenue (stored): {revenue}")

        if report.inconsistent:
            self.stdout.write(
                self.style.WARNING(
                    f"{len(report.inconsistent)} inconsistent orders; run fix_order_totals to repair them"
                )
            )
        else:
            self.stdout.write(self.style.SUCCESS("All checked orders are consistent"))

        if options["strict"] and report.has_failures:
            raise CommandError(f"{len(report.failures)} orders could not be checked")
