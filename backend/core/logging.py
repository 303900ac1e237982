"""Centralized logging configuration with PII redaction."""

import logging
import re


# IBAN pattern: 2 letters + 2 digits + 11 to 30 alphanumeric characters
IBAN_PATTERN = re.compile(r'\b([A-Z]{2}\d{2}[A-Z0-9]{11,30})\b')
# Email pattern: word characters, @, word characters, ., word characters
EMAIL_PATTERN = re.compile(r'(\b\S+@\S+\.\S+\b)')
# Phone pattern: optional +, digits, spaces, dashes, slashes
PHONE_PATTERN = re.compile(r'(\+\d[\d \-/]{6,})')


def mask_iban(iban: str) -> str:
    """Mask IBAN: keep the first 4 and last 4 characters."""
    if len(iban) <= 8:
        return "*" * len(iban)
    return iban[:4] + "*" * (len(iban) - 8) + iban[-4:]


def _mask_iban_match(match) -> str:
    return mask_iban(match.group(1))


def _mask_email_match(match) -> str:
    """Mask email: show first char of user, keep domain."""
    email = match.group(1)
    if "@" not in email:
        return email
    user, domain = email.split("@", 1)
    if len(user) <= 1:
        masked_user = "*"
    else:
        masked_user = user[0] + "*" * (len(user) - 1)
    return f"{masked_user}@{domain}"


def _mask_phone_match(match) -> str:
    phone = match.group(1)
    if len(phone) <= 2:
        return "*" * len(phone)
    return phone[:2] + "*" * (len(phone) - 2)


def redact_pii(text):
    """Redact IBANs, emails and phone numbers from a string."""
    if not isinstance(text, str):
        return text
    text = IBAN_PATTERN.sub(_mask_iban_match, text)
    text = EMAIL_PATTERN.sub(_mask_email_match, text)
    return PHONE_PATTERN.sub(_mask_phone_match, text)


class PIIRedactionFilter(logging.Filter):
    """Filter to redact PII from log messages and their arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_pii(str(record.msg))

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(redact_pii(arg) for arg in record.args)

        return True


def get_logger(name: str) -> logging.Logger:
    """Get a logger with PII redaction applied."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, PIIRedactionFilter) for f in logger.filters):
        logger.addFilter(PIIRedactionFilter())
    return logger
