"""
Field validation for SEPA credit transfers.

This module contains pure functions used when turning incoming invoices
into payment instructions. No side effects, no I/O.

Design Decisions:
- IBANs are normalized (spaces removed, upper-cased) before checking
- IBAN check digits verified with ISO 7064 MOD 97-10
- Free text is reduced to the SEPA Latin character set instead of rejected
- Identifiers are truncated to the lengths allowed by pain.001
"""

import re
import unicodedata

# Maximum field lengths in pain.001.001.03
MAX_ID_LENGTH = 35
MAX_NAME_LENGTH = 70
MAX_REMITTANCE_LENGTH = 140

IBAN_PATTERN = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{11,30}$")
BIC_PATTERN = re.compile(r"^[A-Z]{6}[A-Z0-9]{2}([A-Z0-9]{3})?$")

# Characters permitted in SEPA text fields
_SEPA_TEXT_DISALLOWED = re.compile(r"[^A-Za-z0-9/\-?:().,'+ ]")
# Identifiers additionally exclude spaces
_SEPA_ID_DISALLOWED = re.compile(r"[^A-Za-z0-9/\-?:().,'+]")

_TRANSLITERATIONS = {
    "ä": "ae", "ö": "oe", "ü": "ue", "Ä": "Ae", "Ö": "Oe", "Ü": "Ue",
    "ß": "ss", "&": "+",
}


def normalize_iban(iban: str | None) -> str:
    """Strip whitespace and upper-case an IBAN. None becomes an empty string."""
    if not iban:
        return ""
    return re.sub(r"\s+", "", iban).upper()


def is_valid_iban(iban: str | None) -> bool:
    """
    Validate structure and check digits of an IBAN.

    Rule: move the first four characters to the end, map letters to
    numbers (A=10 ... Z=35), and the result mod 97 must equal 1.
    """
    value = normalize_iban(iban)
    if not IBAN_PATTERN.match(value):
        return False

    rearranged = value[4:] + value[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(digits) % 97 == 1


def normalize_bic(bic: str | None) -> str:
    """Strip whitespace and upper-case a BIC. None becomes an empty string."""
    if not bic:
        return ""
    return re.sub(r"\s+", "", bic).upper()


def is_valid_bic(bic: str | None) -> bool:
    """Check the 8 or 11 character BIC format."""
    return bool(BIC_PATTERN.match(normalize_bic(bic)))


def sanitize_text(value: str | None, max_length: int) -> str:
    """
    Reduce free text to the SEPA character set.

    German umlauts are transliterated, other accents stripped and
    anything still outside the allowed set replaced by a space.
    """
    if not value:
        return ""
    for source, target in _TRANSLITERATIONS.items():
        value = value.replace(source, target)
    value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    value = _SEPA_TEXT_DISALLOWED.sub(" ", value)
    value = re.sub(r"\s+", " ", value).strip()
    return value[:max_length]


def make_end_to_end_id(reference: str | None, fallback: str) -> str:
    """
    Derive an end-to-end identifier from an invoice reference.

    Disallowed characters are dropped and the result truncated to 35
    characters. An empty result falls back to ``fallback`` treated the
    same way, then to ``NOTPROVIDED`` as the standard prescribes.
    """
    for candidate in (reference, fallback):
        if candidate:
            cleaned = _SEPA_ID_DISALLOWED.sub("", candidate)[:MAX_ID_LENGTH]
            if cleaned:
                return cleaned
    return "NOTPROVIDED"
