"""
Address normalization for WhatsApp recipients.

Brazilian mobile numbers gained a leading ninth digit (area code + 9 + eight
digits), but WhatsApp accounts registered before the change may still be keyed
on the old eight-digit subscriber number. A raw contact string from a checkout
form can therefore map to two plausible WhatsApp identities; `variants()`
returns every one of them, country-prefixed, with the nine-digit form first.
"""
from __future__ import annotations

import re

DEFAULT_COUNTRY_CODE = "55"
JID_SUFFIX = "@s.whatsapp.net"

_AREA_CODE_LEN = 2
_MOBILE_DIGIT = "9"
_LEGACY_MOBILE_PREFIXES = ("6", "7", "8", "9")


def digits_only(raw: str) -> str:
    return re.sub(r"[^\d]", "", raw or "")


def _strip_country_code(digits: str, country_code: str) -> str:
    # Only strip when what is left still looks like a local number; an area
    # code can itself start with the country code digits (e.g. 55 in RS).
    if digits.startswith(country_code):
        local = digits[len(country_code):]
        if len(local) in (10, 11):
            return local
    return digits


def variants(raw_contact: str, country_code: str = DEFAULT_COUNTRY_CODE) -> list[str]:
    """Return every plausible canonical address for `raw_contact`. Never empty."""
    local = _strip_country_code(digits_only(raw_contact), country_code)

    area, subscriber = local[:_AREA_CODE_LEN], local[_AREA_CODE_LEN:]

    if len(local) == 11 and subscriber.startswith(_MOBILE_DIGIT):
        candidates = [
            country_code + local,
            country_code + area + subscriber[1:],
        ]
    elif len(local) == 10 and subscriber.startswith(_LEGACY_MOBILE_PREFIXES):
        candidates = [
            country_code + area + _MOBILE_DIGIT + subscriber,
            country_code + local,
        ]
    else:
        candidates = [country_code + local]

    return list(dict.fromkeys(candidates))


def canonical(raw_contact: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """The preferred (first) variant — used as the conversation key."""
    return variants(raw_contact, country_code)[0]


def to_jid(address: str) -> str:
    if address.endswith(JID_SUFFIX):
        return address
    return digits_only(address) + JID_SUFFIX


def from_jid(jid: str) -> str:
    """Strip the WhatsApp JID suffix (and any device part) from a sender id."""
    user = (jid or "").split("@", 1)[0]
    return user.split(":", 1)[0]
