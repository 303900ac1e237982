"""IBAN parsing, validation and privacy helpers.

Pure functions over static country tables; no I/O.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Optional

# country -> (IBAN length, bank identifier slice within the BBAN)
IBAN_FORMATS: dict[str, tuple[int, tuple[int, int]]] = {
    "AD": (24, (0, 4)),
    "AT": (20, (0, 5)),
    "BE": (16, (0, 3)),
    "BG": (22, (0, 4)),
    "CH": (21, (0, 5)),
    "CY": (28, (0, 3)),
    "CZ": (24, (0, 4)),
    "DE": (22, (0, 8)),
    "DK": (18, (0, 4)),
    "EE": (20, (0, 2)),
    "ES": (24, (0, 4)),
    "FI": (18, (0, 3)),
    "FO": (18, (0, 4)),
    "FR": (27, (0, 5)),
    "GB": (22, (0, 4)),
    "GI": (23, (0, 4)),
    "GL": (18, (0, 4)),
    "GR": (27, (0, 3)),
    "HR": (21, (0, 7)),
    "HU": (28, (0, 3)),
    "IE": (22, (0, 4)),
    "IS": (26, (0, 4)),
    "IT": (27, (1, 6)),
    "LI": (21, (0, 5)),
    "LT": (20, (0, 5)),
    "LU": (20, (0, 3)),
    "LV": (21, (0, 4)),
    "MC": (27, (0, 5)),
    "MT": (31, (0, 4)),
    "NL": (18, (0, 4)),
    "NO": (15, (0, 4)),
    "PL": (28, (0, 8)),
    "PT": (25, (0, 4)),
    "RO": (24, (0, 4)),
    "SE": (24, (0, 3)),
    "SI": (19, (0, 5)),
    "SK": (24, (0, 4)),
    "SM": (27, (1, 6)),
    "VA": (22, (0, 3)),
    # Non-SEPA IBAN countries
    "AE": (23, (0, 3)),
    "AL": (28, (0, 3)),
    "BA": (20, (0, 3)),
    "BH": (22, (0, 4)),
    "BR": (29, (0, 8)),
    "IL": (23, (0, 3)),
    "KW": (30, (0, 4)),
    "ME": (22, (0, 3)),
    "MK": (19, (0, 3)),
    "RS": (22, (0, 3)),
    "SA": (24, (0, 2)),
    "TR": (26, (1, 6)),
    "UA": (29, (0, 6)),
}

SEPA_COUNTRIES = frozenset({
    "AD", "AT", "BE", "BG", "CH", "CY", "CZ", "DE", "DK", "EE", "ES", "FI",
    "FO", "FR", "GB", "GI", "GL", "GR", "HR", "HU", "IE", "IS", "IT", "LI",
    "LT", "LU", "LV", "MC", "MT", "NL", "NO", "PL", "PT", "RO", "SE", "SI",
    "SK", "SM", "VA",
})

_PREFIX = re.compile(r"^IBAN")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_SHAPE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]+$")


@dataclass(frozen=True)
class IbanValidation:
    valid: bool
    iban: str
    country_code: Optional[str] = None
    is_sepa: bool = False
    checksum: Optional[str] = None
    bban: Optional[str] = None
    bank_id: Optional[str] = None
    formatted: Optional[str] = None
    errors: tuple[str, ...] = field(default_factory=tuple)


def normalize(iban: Optional[str]) -> str:
    """Upper-case, drop an ``IBAN`` prefix and everything but letters and digits."""
    if not iban:
        return ""
    value = _NON_ALNUM.sub("", iban.upper())
    return _PREFIX.sub("", value)


def mod97(iban: str) -> int:
    """ISO 7064 MOD 97-10 remainder of a normalized IBAN."""
    rearranged = iban[4:] + iban[:4]
    remainder = 0
    for char in rearranged:
        digits = str(ord(char) - 55) if char.isalpha() else char
        remainder = int(f"{remainder}{digits}") % 97
    return remainder


def validate(iban: Optional[str]) -> IbanValidation:
    value = normalize(iban)
    if not value:
        return IbanValidation(valid=False, iban=value, errors=("IBAN is empty",))

    if not _SHAPE.match(value):
        return IbanValidation(valid=False, iban=value, errors=("IBAN has an invalid format",))

    country = value[:2]
    fmt = IBAN_FORMATS.get(country)
    if fmt is None:
        return IbanValidation(
            valid=False, iban=value, country_code=country,
            errors=(f"Unsupported IBAN country: {country}",),
        )

    length, (start, end) = fmt
    errors: list[str] = []
    if len(value) != length:
        errors.append(f"IBAN length for {country} must be {length}, got {len(value)}")
    elif mod97(value) != 1:
        errors.append("IBAN checksum is invalid")

    bban = value[4:]
    return IbanValidation(
        valid=not errors,
        iban=value,
        country_code=country,
        is_sepa=country in SEPA_COUNTRIES,
        checksum=value[2:4],
        bban=bban,
        bank_id=bban[start:end] if not errors else None,
        formatted=format_iban(value),
        errors=tuple(errors),
    )


def is_valid(iban: Optional[str]) -> bool:
    return validate(iban).valid


def country_code(iban: Optional[str]) -> Optional[str]:
    value = normalize(iban)
    return value[:2] if len(value) >= 2 and value[:2].isalpha() else None


def is_sepa_country(country: Optional[str]) -> bool:
    return bool(country) and country.upper() in SEPA_COUNTRIES


def bank_id(iban: Optional[str]) -> Optional[str]:
    return validate(iban).bank_id


def iban_hash(iban: Optional[str]) -> str:
    """Stable SHA-256 of the normalized IBAN, used as the dedup key."""
    return hashlib.sha256(normalize(iban).encode("utf-8")).hexdigest()


def mask(iban: Optional[str]) -> str:
    """Display form keeping the first 4 and last 4 characters."""
    value = normalize(iban)
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


def format_iban(iban: Optional[str]) -> str:
    value = normalize(iban)
    return " ".join(value[i:i + 4] for i in range(0, len(value), 4))
