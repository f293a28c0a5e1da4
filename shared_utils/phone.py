import re
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone(phone_val, default_country_code: str = "1") -> Optional[str]:
    """
    Normalize a provider/customer phone number to E.164 (+15551234567).

    Provider webhooks send bare digits ("15551234567"); API callers may send
    formatted numbers. Returns None when nothing usable is left.
    """
    if phone_val is None:
        return None

    raw_phone = str(phone_val).strip()
    if not raw_phone:
        return None

    cleaned = re.sub(r"[^\d+]", "", raw_phone)
    digits = re.sub(r"\D", "", cleaned)
    if not digits:
        return None

    if not cleaned.startswith("+"):
        # Local 10-digit number without country code
        if len(digits) == 10:
            digits = f"{default_country_code}{digits}"
        cleaned = "+" + digits

    try:
        number = phonenumbers.parse(cleaned, None)
        if phonenumbers.is_valid_number(number):
            return phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164)
    except phonenumbers.NumberParseException as e:
        logger.debug(f"phonenumbers could not parse {raw_phone}: {e}")

    # Test/sandbox ranges are often not "valid" to libphonenumber; keep the digits as-is
    if 8 <= len(digits) <= 15:
        return f"+{digits}"

    return None
