import logging

from payments.emails import send_templated

logger = logging.getLogger(__name__)


def send_donation_thank_you(donation) -> None:
    if not donation.email:
        return
    ctx = {"donation": donation, "donor_name": donation.donor_name}
    subject = f"Thank you for your donation ({donation.donation_id})"
    try:
        send_templated(subject, "emails/donation_thank_you", ctx, [donation.email])
    except Exception:
        logger.exception("Failed to send thank-you email for %s", donation.donation_id)
