import re
from typing import Optional

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_e164(phone_number: Optional[str]) -> bool:
    return bool(phone_number) and bool(E164_PATTERN.match(phone_number))


def mask_phone(phone_number: Optional[str]) -> str:
    """
    Mask a phone number for logs, keeping only the last 4 digits.

        >>> mask_phone("+14155550123")
        '****0123'
    """
    if not phone_number:
        return ""
    if len(phone_number) <= 4:
        return "****"
    return f"****{phone_number[-4:]}"
