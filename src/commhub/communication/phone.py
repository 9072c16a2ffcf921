"""
Phone number normalization and contact lookup by number.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from commhub.communication.models import ContactData

_NON_DIGIT_PLUS = re.compile(r"[^\d+]")
_NON_DIGIT = re.compile(r"\D")

WHATSAPP_PREFIX = "whatsapp:"


def normalize_e164(number: str) -> str:
    """Best-effort E.164 normalization, assuming NANP for bare 10/11 digit numbers."""
    if not number:
        return ""
    if number.startswith(WHATSAPP_PREFIX):
        number = number[len(WHATSAPP_PREFIX):]
    cleaned = _NON_DIGIT_PLUS.sub("", number)
    if cleaned.startswith("+"):
        return "+" + cleaned[1:].replace("+", "")
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    return f"+{cleaned}" if cleaned else ""


def to_whatsapp(number: str) -> str:
    if number.startswith(WHATSAPP_PREFIX):
        return number
    return f"{WHATSAPP_PREFIX}{normalize_e164(number)}"


def phone_lookup_variants(number: str) -> set[str]:
    """All string forms under which ``number`` is indexed: +digits, digits, original."""
    if not number:
        return set()
    cleaned = _NON_DIGIT_PLUS.sub("", number).replace("+", "")
    variants = {number}
    if cleaned:
        variants.add(f"+{cleaned}")
        variants.add(cleaned)
        # (555) 123-4567 and 555-123-4567 style inputs
        if len(cleaned) == 10:
            variants.add(f"+1{cleaned}")
            variants.add(f"1{cleaned}")
    return variants


def looks_like_phone_number(name: str) -> bool:
    return len(_NON_DIGIT.sub("", name)) >= 7


def has_real_name(contact: ContactData) -> bool:
    name = (contact.display_name or "").strip()
    return bool(name) and not looks_like_phone_number(name)


class ContactIndex:
    """Dictionary of contacts keyed by every lookup variant of their numbers."""

    def __init__(self, contacts: Iterable[ContactData] = ()) -> None:
        self._by_phone: dict[str, ContactData] = {}
        for contact in contacts:
            self.add(contact)

    def add(self, contact: ContactData) -> None:
        for number in contact.phone_numbers:
            for variant in phone_lookup_variants(number):
                self._by_phone.setdefault(variant, contact)

    def lookup(self, number: str) -> ContactData | None:
        if not number:
            return None
        for variant in (number, *sorted(phone_lookup_variants(number))):
            contact = self._by_phone.get(variant)
            if contact is not None:
                return contact
        return None

    def __len__(self) -> int:
        return len(self._by_phone)

    def __bool__(self) -> bool:
        return bool(self._by_phone)
