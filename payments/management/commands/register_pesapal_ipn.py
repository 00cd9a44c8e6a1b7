from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from payments.exceptions import GatewayUnavailable
from payments.integrations.pesapal import get_client


class Command(BaseCommand):
    help = "Register the IPN URL with Pesapal and print the notification id to put in PESAPAL_IPN_ID"

    def add_arguments(self, parser):
        parser.add_argument("--url", default=None, help="Defaults to PUBLIC_BASE_URL/payments/pesapal/ipn")
        parser.add_argument("--method", choices=["GET", "POST"], default="POST")

    def handle(self, *args, **opts):
        url = opts["url"] or f"{settings.PUBLIC_BASE_URL}/payments/pesapal/ipn"
        try:
            ipn_id = get_client().register_ipn(url, notification_type=opts["method"])
        except GatewayUnavailable as e:
            raise CommandError(str(e))
        self.stdout.write(self.style.SUCCESS(f"Registered {url} ({opts['method']})"))
        self.stdout.write(ipn_id)
