import time

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments import repository
from payments.exceptions import PaymentError
from payments.reconciliation import get_engine


class Command(BaseCommand):
    help = "Ask Pesapal about pending payments that have a tracking id and record the completed ones"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=5)
        parser.add_argument("--kind", choices=["orders", "donations", "all"], default="all")

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        repos = {
            "orders": [repository.orders],
            "donations": [repository.donations],
            "all": [repository.orders, repository.donations],
        }[opts["kind"]]

        pending = []
        for repo in repos:
            pending.extend(repo.pending_with_tracking_id(older_than=cutoff)[:opts["max"]])
        pending = sorted(pending, key=lambda p: p.updated_at)[:opts["max"]]

        if not pending:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        engine = get_engine()
        for i, payable in enumerate(pending):
            if i and opts["sleep"]:
                time.sleep(opts["sleep"])
            try:
                result = engine.reconcile(payable.reference, payable.order_tracking_id, final_only=True)
            except PaymentError as e:
                self.stdout.write(self.style.WARNING(f"{payable.reference}: {e.message}"))
                continue
            if result.changed:
                self.stdout.write(self.style.SUCCESS(f"{payable.reference} -> {result.payment_status}"))
            else:
                self.stdout.write(f"{payable.reference}: still {result.payment_status}")
