"""
auth/mail.py -- Outbound contract for action-token delivery.

The auth subsystem only mints tokens. Delivering them is the job of an
external mail service reached through Mailer.send_mail(address, token, kind).
LogMailer is the development default: it records that a message would have
been sent, with the address redacted and the token withheld.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import ActionKind

logger = logging.getLogger("storefront.auth.mail")


class Mailer(Protocol):
    def send_mail(self, address: str, token: str, kind: ActionKind) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LogMailer:
    def send_mail(self, address: str, token: str, kind: ActionKind) -> None:
        logger.info("Mail service not configured; %s token for %s not delivered", ActionKind(kind).value, redact_email(address))
