"""
Phone Service - subscriber number validation and canonicalization.

Canonical form is <country code><9-digit subscriber number>, e.g. 254712345678.
Accepted inputs:
- 0712345678     -> 254712345678
- +254712345678  -> 254712345678
- 254712345678   -> 254712345678
- 712345678      -> 254712345678
"""

import logging
import re
from typing import Dict, FrozenSet, Iterable, List

from rentflow.errors import PhoneValidationError

logger = logging.getLogger(__name__)

NON_DIGITS = re.compile(r"\D")

# Safaricom, Airtel and Telkom mobile ranges (254 + 3-digit network code)
KENYA_MOBILE_PREFIXES: FrozenSet[str] = frozenset(
    [f"254{code}" for code in range(701, 760)]
    + ["254768", "254769"]
    + [f"254{code}" for code in range(790, 800)]
)


class PhoneNormalizer:
    """
    Pure, deterministic subscriber number normalizer.
    
    The 11-digit repair inserts `repair_digit` after the country code when
    one digit is missing. It is a guess, not a recovery, and can be turned
    off with allow_repair=False.
    """
    
    def __init__(
        self,
        country_code: str = "254",
        valid_prefixes: Iterable[str] = KENYA_MOBILE_PREFIXES,
        repair_digit: str = "7",
        allow_repair: bool = True,
    ):
        self.country_code = country_code
        self.valid_prefixes = frozenset(valid_prefixes)
        self.repair_digit = repair_digit
        self.allow_repair = allow_repair
        self.canonical_length = len(country_code) + 9
    
    def normalize(self, phone: str) -> str:
        """Return the canonical form or raise PhoneValidationError."""
        if not phone or not isinstance(phone, str):
            raise PhoneValidationError("Phone number is required", "PHONE_REQUIRED")
        
        cleaned = NON_DIGITS.sub("", phone)
        
        if cleaned.startswith(self.country_code):
            pass
        elif phone.strip().startswith("+"):
            # International format for some other country
            raise PhoneValidationError(
                f"Phone number must start with country code {self.country_code}",
                "INVALID_COUNTRY_CODE",
            )
        elif cleaned.startswith("0"):
            cleaned = self.country_code + cleaned[1:]
        elif len(cleaned) == 9:
            cleaned = self.country_code + cleaned
        else:
            raise PhoneValidationError("Invalid phone number format", "INVALID_FORMAT")
        
        if len(cleaned) < self.canonical_length - 1 or len(cleaned) > self.canonical_length:
            raise PhoneValidationError(
                f"Phone number must be {self.canonical_length} digits in format "
                f"{self.country_code}XXXXXXXXX",
                "INVALID_LENGTH",
            )
        
        if len(cleaned) == self.canonical_length - 1:
            if not self.allow_repair:
                raise PhoneValidationError(
                    "Phone number is missing a digit",
                    "INVALID_LENGTH",
                )
            cc = len(self.country_code)
            repaired = cleaned[:cc] + self.repair_digit + cleaned[cc:]
            if not self._has_valid_prefix(repaired):
                raise PhoneValidationError(
                    "Phone number appears incomplete and cannot be safely normalized",
                    "INVALID_PREFIX",
                )
            logger.info(f"Repaired {len(cleaned)}-digit phone: {phone} -> {repaired}")
            cleaned = repaired
        
        if not cleaned.startswith(self.country_code):
            raise PhoneValidationError(
                f"Phone number must start with country code {self.country_code}",
                "INVALID_COUNTRY_CODE",
            )
        
        if not self._has_valid_prefix(cleaned):
            raise PhoneValidationError("Invalid mobile number prefix", "INVALID_PREFIX")
        
        return cleaned
    
    def format_for_display(self, phone: str) -> str:
        """254712345678 -> +254 712 345 678"""
        canonical = self.normalize(phone)
        cc = len(self.country_code)
        return (
            f"+{canonical[:cc]} {canonical[cc:cc + 3]} "
            f"{canonical[cc + 3:cc + 6]} {canonical[cc + 6:]}"
        )
    
    def validate_many(self, phones: Iterable[str]) -> Dict[str, List]:
        """Split numbers into canonical valid ones and invalid ones with reasons."""
        valid: List[str] = []
        invalid: List[Dict[str, str]] = []
        for phone in phones:
            try:
                valid.append(self.normalize(phone))
            except PhoneValidationError as e:
                invalid.append({"phone": phone, "error": str(e), "code": e.code})
        return {"valid": valid, "invalid": invalid}
    
    def _has_valid_prefix(self, cleaned: str) -> bool:
        return cleaned[:len(self.country_code) + 3] in self.valid_prefixes


default_normalizer = PhoneNormalizer()


def normalize_phone(phone: str) -> str:
    """Normalize with the default (Kenya) rules."""
    return default_normalizer.normalize(phone)
