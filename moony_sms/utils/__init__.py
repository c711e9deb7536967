"""
Moony SMS Utilities
===================

Shared helper modules for the Moony conversational SMS service:

- logger.py          → structured JSON logging
- secrets.py         → AWS Secrets Manager integration
- twilio_client.py   → authenticated Twilio client builder
- idempotency.py     → DynamoDB-backed seen-set, run markers and job locks
- phone.py           → E.164 validation and phone masking for logs

All helpers are stateless apart from the clients they are handed, and are
safe to reuse across Lambda invocations.
"""

from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import is_valid_e164, mask_phone

__all__ = [
    "get_logger",
    "is_valid_e164",
    "mask_phone",
]
