"""
notify/gateways.py -- Carrier email-to-SMS gateway addresses.

Most US carriers accept an email addressed to <10-digit number>@<gateway> and
deliver it as a text message. The table is static; callers validate the
carrier name against it before issuing a code.
"""

from __future__ import annotations

import re
from typing import Optional

from core.errors import InvalidInputError

SMS_GATEWAYS: dict[str, str] = {
    "att": "txt.att.net",
    "boost": "sms.myboostmobile.com",
    "cricket": "sms.cricketwireless.net",
    "googlefi": "msg.fi.google.com",
    "metropcs": "mymetropcs.com",
    "tmobile": "tmomail.net",
    "uscellular": "email.uscc.net",
    "verizon": "vtext.com",
    "virgin": "vmobl.com",
}

_NON_DIGITS = re.compile(r"\D")


def supported_carriers() -> list[str]:
    return sorted(SMS_GATEWAYS)


def sms_destination(phone: str, carrier: Optional[str] = None) -> str:
    """Return the delivery address for a phone number.

    With a carrier: "<digits>@<gateway>". A leading US country code is
    dropped because the gateways expect the 10-digit national number.
    Without a carrier: the number itself, for providers that send SMS natively.
    """
    if carrier is None:
        return phone
    gateway = SMS_GATEWAYS.get(carrier.lower())
    if gateway is None:
        raise InvalidInputError(
            f"Carrier must be one of: {', '.join(supported_carriers())}",
            details={"carrier": carrier},
        )
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if not digits:
        raise InvalidInputError("Phone number has no digits.")
    return f"{digits}@{gateway}"
