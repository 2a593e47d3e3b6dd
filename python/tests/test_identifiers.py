"""
Unit tests for CPF and CNPJ validation.
"""

import pytest

from identifiers import (
    IdentifierScheme,
    detect_scheme,
    validate_cnpj,
    validate_cpf,
    validate_identifier,
)

VALID_CPF = "529.982.247-25"
VALID_CNPJ = "11.222.333/0001-81"


class TestCpf:
    """CPF: 11 digits, two mod-11 check digits."""

    def test_valid_formatted(self):
        check = validate_cpf(VALID_CPF)
        assert check.valid
        assert check.value == "52998224725"
        assert bool(check) is True

    def test_valid_digits_only(self):
        assert validate_cpf("52998224725").valid

    @pytest.mark.parametrize("cpf", ["52998224724", "52998224735"])
    def test_wrong_check_digit(self, cpf):
        check = validate_cpf(cpf)
        assert not check.valid
        assert "check digit" in check.reason

    @pytest.mark.parametrize("cpf", ["111.111.111-11", "00000000000"])
    def test_repeated_digits_rejected(self, cpf):
        assert not validate_cpf(cpf).valid

    @pytest.mark.parametrize("cpf", ["", None, "1234", "529982247251"])
    def test_wrong_length(self, cpf):
        check = validate_cpf(cpf)
        assert not check.valid
        assert check.reason


class TestCnpj:
    """CNPJ: 14 characters, two mod-11 check digits."""

    def test_valid_formatted(self):
        check = validate_cnpj(VALID_CNPJ)
        assert check.valid
        assert check.value == "11222333000181"

    def test_wrong_check_digit(self):
        assert not validate_cnpj("11222333000182").valid

    def test_repeated_digits_rejected(self):
        assert not validate_cnpj("00.000.000/0000-00").valid

    def test_wrong_length(self):
        assert not validate_cnpj("1122233300018").valid

    def test_non_numeric_check_digits(self):
        check = validate_cnpj("112223330001AB")
        assert not check.valid


class TestDispatch:
    """Scheme dispatch and detection."""

    def test_validate_identifier_by_scheme(self):
        assert validate_identifier(IdentifierScheme.CPF, VALID_CPF).valid
        assert validate_identifier("cnpj", VALID_CNPJ).valid

    def test_detect_scheme(self):
        assert detect_scheme(VALID_CPF) == IdentifierScheme.CPF
        assert detect_scheme(VALID_CNPJ) == IdentifierScheme.CNPJ
        assert detect_scheme("123") is None
