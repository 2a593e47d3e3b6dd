"""
National identifier validators.

Format and check-digit validation for Brazilian person (CPF) and company
(CNPJ) identifiers. Runs locally, before any network call is made for the
identifier. CNPJ validation accepts the alphanumeric format (letters in the
first twelve positions) alongside the classic all-digit one.
"""

import re
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Optional

from text_utils import clean_document


class IdentifierScheme(str, PyEnum):
    """Supported national identifier schemes"""
    CPF = "cpf"
    CNPJ = "cnpj"


@dataclass(frozen=True)
class IdentifierCheck:
    """Outcome of validating one identifier"""
    scheme: IdentifierScheme
    value: str
    valid: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.valid


_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6,) + _CNPJ_WEIGHTS_1


def clean_cpf(raw: Optional[str]) -> str:
    return clean_document(raw, digits_only=True)


def clean_cnpj(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return re.sub(r'[^0-9A-Z]', '', raw.upper())


def validate_cpf(raw: Optional[str]) -> IdentifierCheck:
    """Validate a CPF (11 digits, two mod-11 check digits).

    Args:
        raw: CPF as typed, punctuation allowed

    Returns:
        IdentifierCheck with the cleaned value
    """
    cpf = clean_cpf(raw)
    if len(cpf) != 11:
        return IdentifierCheck(IdentifierScheme.CPF, cpf, False, "CPF must have 11 digits")
    if cpf == cpf[0] * 11:
        return IdentifierCheck(IdentifierScheme.CPF, cpf, False, "CPF with repeated digits")

    digits = [int(c) for c in cpf]
    for position in (9, 10):
        total = sum(d * w for d, w in zip(digits[:position], range(position + 1, 1, -1)))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != digits[position]:
            return IdentifierCheck(IdentifierScheme.CPF, cpf, False, "CPF check digit mismatch")

    return IdentifierCheck(IdentifierScheme.CPF, cpf, True)


def _cnpj_check_digit(chars: str, weights) -> int:
    total = sum((ord(c) - 48) * w for c, w in zip(chars, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def validate_cnpj(raw: Optional[str]) -> IdentifierCheck:
    """Validate a CNPJ (14 characters, two mod-11 check digits).

    Args:
        raw: CNPJ as typed, punctuation allowed

    Returns:
        IdentifierCheck with the cleaned value
    """
    cnpj = clean_cnpj(raw)
    if len(cnpj) != 14:
        return IdentifierCheck(IdentifierScheme.CNPJ, cnpj, False, "CNPJ must have 14 characters")
    if not cnpj[12:].isdigit():
        return IdentifierCheck(IdentifierScheme.CNPJ, cnpj, False, "CNPJ check digits must be numeric")
    if cnpj == cnpj[0] * 14:
        return IdentifierCheck(IdentifierScheme.CNPJ, cnpj, False, "CNPJ with repeated digits")

    first = _cnpj_check_digit(cnpj[:12], _CNPJ_WEIGHTS_1)
    second = _cnpj_check_digit(cnpj[:12] + str(first), _CNPJ_WEIGHTS_2)
    if cnpj[12:] != f"{first}{second}":
        return IdentifierCheck(IdentifierScheme.CNPJ, cnpj, False, "CNPJ check digit mismatch")

    return IdentifierCheck(IdentifierScheme.CNPJ, cnpj, True)


_VALIDATORS = {
    IdentifierScheme.CPF: validate_cpf,
    IdentifierScheme.CNPJ: validate_cnpj,
}


def validate_identifier(scheme: IdentifierScheme, raw: Optional[str]) -> IdentifierCheck:
    """Dispatch to the validator registered for `scheme`."""
    return _VALIDATORS[IdentifierScheme(scheme)](raw)


def detect_scheme(raw: Optional[str]) -> Optional[IdentifierScheme]:
    """Guess the scheme of an identifier from its cleaned length."""
    if len(clean_cpf(raw)) == 11 and len(clean_cnpj(raw)) == 11:
        return IdentifierScheme.CPF
    if len(clean_cnpj(raw)) == 14:
        return IdentifierScheme.CNPJ
    return None
