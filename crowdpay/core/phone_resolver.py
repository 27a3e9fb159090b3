"""
Phone number normalization and mobile-money operator resolution.

Numbers are handled in international form without prefix: calling code
followed by the subscriber number, digits only (e.g. "22890123456").
"""
import re
from typing import Dict, Iterable, Optional, Pattern, Tuple

DEFAULT_COUNTRY_CODE = "228"

# Registration order; identify_provider returns the first match
MOBILE_MONEY_PROVIDERS: Tuple[str, ...] = ("mtn", "moov", "flooz", "orange", "wave")

# provider -> calling code -> (valid subscriber prefixes, digits after the prefix)
NUMBERING_RULES: Dict[str, Dict[str, Tuple[Tuple[str, ...], int]]] = {
    "mtn": {
        "228": (("90", "91", "92", "93"), 6),  # Togo
        "233": (("24", "54", "55", "59"), 7),  # Ghana
    },
    "moov": {
        "228": (("96", "97", "98", "99"), 6),
    },
    "flooz": {
        "228": (("96", "97", "98", "99"), 6),
    },
    "orange": {
        "221": (("77", "78"), 7),  # Senegal
        "223": (("07", "09"), 7),  # Mali
    },
    "wave": {
        "221": (("77", "78"), 7),
    },
}

_PATTERNS: Dict[str, Dict[str, Pattern[str]]] = {
    provider: {
        code: re.compile(rf"^{code}(?:{'|'.join(prefixes)})\d{{{length}}}$")
        for code, (prefixes, length) in rules.items()
    }
    for provider, rules in NUMBERING_RULES.items()
}

_NON_DIGITS = re.compile(r"\D")

# Longest local (national) number we expect without a calling code
_MAX_LOCAL_LENGTH = 10


def normalize(phone_number: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a phone number to calling code + subscriber digits.

    A leading "+" or "00" marks an international number and is stripped.
    Prefix-less numbers longer than a local number are taken as already
    international. Anything else gets default_country_code prepended.

    Args:
        phone_number: Raw number as typed by the payer
        default_country_code: Calling code for local numbers

    Returns:
        str: Normalized number (may be empty if the input has no digits)
    """
    raw = phone_number.strip()
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return ""
    if raw.startswith("+"):
        return digits
    if digits.startswith("00"):
        return digits[2:]
    if len(digits) > _MAX_LOCAL_LENGTH:
        return digits
    return f"{default_country_code}{digits}"


def is_valid_for_provider(normalized_number: str, provider_id: str) -> bool:
    """
    Check a normalized number against an operator's numbering plan.

    Numbers whose calling code has no rule for this operator are accepted
    unchecked. This permissive fallback is a known gap, kept on purpose.
    Unknown provider ids (including card gateways) are never valid.
    """
    patterns = _PATTERNS.get(provider_id)
    if patterns is None:
        return False
    for code, pattern in patterns.items():
        if normalized_number.startswith(code):
            return bool(pattern.match(normalized_number))
    return True


def identify_provider(
    normalized_number: str, providers: Iterable[str] = MOBILE_MONEY_PROVIDERS
) -> Optional[str]:
    """
    Guess the operator of a normalized number.

    Returns:
        Optional[str]: First provider, in registration order, whose rules
        accept the number, or None if unidentified
    """
    for provider_id in providers:
        if is_valid_for_provider(normalized_number, provider_id):
            return provider_id
    return None


class PhoneResolver:
    """The functions above bound to configured defaults."""

    def __init__(
        self,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        providers: Iterable[str] = MOBILE_MONEY_PROVIDERS,
    ):
        self.default_country_code = default_country_code
        self.providers = tuple(providers)

    def normalize(self, phone_number: str) -> str:
        return normalize(phone_number, self.default_country_code)

    def is_valid_for_provider(self, normalized_number: str, provider_id: str) -> bool:
        return is_valid_for_provider(normalized_number, provider_id)

    def identify_provider(self, normalized_number: str) -> Optional[str]:
        return identify_provider(normalized_number, self.providers)
