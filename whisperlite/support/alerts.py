from __future__ import annotations

"""
Trusted-adult alerts.

Design intent:
- Let a student send a short, pre-written message without typing.
- Validate the contact before the student needs it.
- Delivery is simulated and logged; no SMS/email provider is wired in.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES: tuple[str, ...] = (
    "I'm feeling overwhelmed. Can I take a break?",
    "I need some support right now.",
    "Can you check on me when you get a chance?",
)
ALERT_CHANNELS: frozenset[str] = frozenset({"sms", "email", "push"})

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[\d\s\-+()]{10,}$")


class AlertConfigError(ValueError):
    """Raised when a trusted-adult contact cannot receive alerts."""


@dataclass(frozen=True)
class TrustedAdult:
    name: str
    channel: str
    address: str


@dataclass(frozen=True)
class AlertResult:
    success: bool
    message: str
    channel: Optional[str] = None

    def to_wire(self) -> dict[str, object]:
        payload: dict[str, object] = {"success": self.success, "message": self.message}
        if self.channel:
            payload["channel"] = self.channel
        return payload


def validate_trusted_adult(adult: TrustedAdult) -> str:
    if adult.channel not in ALERT_CHANNELS:
        raise AlertConfigError("Invalid channel. Must be sms, email, or push.")
    if not adult.address.strip():
        raise AlertConfigError("Invalid trusted adult configuration")
    if adult.channel == "email" and not _EMAIL_RE.match(adult.address):
        raise AlertConfigError("Invalid email address")
    if adult.channel == "sms" and not _PHONE_RE.match(adult.address):
        raise AlertConfigError("Invalid phone number")
    return f"Configuration valid for {adult.channel} alerts to {adult.name or 'trusted adult'}"


def send_alert(adult: TrustedAdult, message: Optional[str] = None) -> AlertResult:
    text = (message or "").strip() or DEFAULT_MESSAGES[0]
    if adult.channel == "sms":
        logger.info("alert_sms to=%s chars=%s", adult.address, len(text))
        return AlertResult(True, f"[DEMO] SMS would be sent to {adult.name} at {adult.address}", "sms")
    if adult.channel == "email":
        logger.info("alert_email to=%s chars=%s", adult.address, len(text))
        return AlertResult(True, f"[DEMO] Email would be sent to {adult.name} at {adult.address}", "email")
    if adult.channel == "push":
        logger.info("alert_push chars=%s", len(text))
        return AlertResult(True, "[DEMO] Push notification would be sent", "push")
    logger.warning("alert_unknown_channel channel=%s", adult.channel)
    return AlertResult(False, "Unknown channel")
