import logging
from typing import Iterable, List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template import TemplateDoesNotExist
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def from_email() -> str:
    return getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)


def admin_recipients() -> List[str]:
    """Addresses in PAYMENTS_ADMIN_EMAILS, else the sending account, without duplicates."""
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", "") or f"{settings.EMAIL_HOST_USER},{settings.DEFAULT_FROM_EMAIL}"
    by_lower = {}
    for address in raw.split(","):
        address = address.strip()
        if address:
            by_lower.setdefault(address.lower(), address)
    return list(by_lower.values())


def send_templated(subject: str, template: str, context: dict, recipients: Iterable[str]) -> None:
    """Render ``<template>.txt`` (and ``.html`` when present) and send it.

    Raises on failure; callers decide whether a failed email matters.
    """
    recipients = [r for r in recipients if r]
    if not recipients:
        return
    text = render_to_string(f"{template}.txt", context)
    msg = EmailMultiAlternatives(subject, text, from_email(), recipients)
    try:
        msg.attach_alternative(render_to_string(f"{template}.html", context), "text/html")
    except TemplateDoesNotExist:
        pass
    msg.send(fail_silently=fail_silently())
