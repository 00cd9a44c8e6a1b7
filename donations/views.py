import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from payments import repository
from payments.exceptions import PaymentError, ValidationError
from payments.reconciliation import get_engine
from payments.views import error_response, json_body, payment_meta

from .services import create_donation

logger = logging.getLogger(__name__)


def donation_meta(donation) -> dict:
    meta = payment_meta(donation)
    meta.update(
        donation_id=donation.donation_id,
        donation_type=donation.donation_type,
        donor_name=donation.donor_name,
    )
    if donation.is_monthly:
        meta.update(
            recurring_active=donation.recurring_active,
            total_donations=donation.total_donations,
            total_amount=str(donation.total_amount),
            last_donation_date=donation.last_donation_date.isoformat() if donation.last_donation_date else None,
            next_donation_date=donation.next_donation_date.isoformat() if donation.next_donation_date else None,
        )
    return meta


@csrf_exempt
@require_POST
def donation_create_view(request):
    try:
        body = json_body(request)
        donor = body.get("donor") or {}
        recurring = body.get("recurring") or {}
        if not isinstance(donor, dict) or not isinstance(recurring, dict):
            raise ValidationError("donor and recurring must be objects")
        donation = create_donation(
            amount=body.get("amount"),
            donation_type=body.get("type") or body.get("donation_type") or "one_time",
            first_name=donor.get("first_name") or body.get("first_name"),
            last_name=donor.get("last_name") or body.get("last_name"),
            email=donor.get("email") or body.get("email"),
            phone=donor.get("phone") or body.get("phone") or "",
            message=body.get("message") or "",
            recurring_start=recurring.get("start_date"),
            recurring_end=recurring.get("end_date"),
        )
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "donation": donation_meta(donation)}, status=201)


@csrf_exempt
@require_POST
def donation_pay_view(request, donation_id: str):
    try:
        submitted = get_engine().submit_payment(donation_id)
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({
        "ok": True,
        "donation_id": submitted.reference,
        "order_tracking_id": submitted.tracking_id,
        "redirect_url": submitted.redirect_url,
    })


@require_GET
def donation_status_view(request, donation_id: str):
    try:
        donation = repository.donations.get_by_reference(donation_id)
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "donation": donation_meta(donation)})
