"""
Tests para los utilitarios de montos: redondeo, conversión y lectura de valores impresos.
"""

from decimal import Decimal

import pytest

from app.core.v1.amounts import ZERO, parse_amount, quantize_amount, sum_amounts, to_decimal


class TestQuantizeAmount:
    """Tests de redondeo a centavos."""

    def test_rounds_half_up(self):
        """Test que medio centavo redondea hacia arriba."""
        assert quantize_amount(Decimal("10.005")) == Decimal("10.01")
        assert quantize_amount(Decimal("10.004")) == Decimal("10.00")

    def test_rounds_negative_half_away_from_zero(self):
        """Test que los negativos redondean alejándose de cero."""
        assert quantize_amount(Decimal("-2.345")) == Decimal("-2.35")

    def test_none_exponent_keeps_value(self):
        """Test que sin exponente el valor no cambia."""
        assert quantize_amount(Decimal("1.23456"), None) == Decimal("1.23456")


class TestToDecimal:
    """Tests de conversión a Decimal."""

    def test_accepts_int_str_and_decimal(self):
        """Test de tipos numéricos aceptados."""
        assert to_decimal(5) == Decimal("5")
        assert to_decimal(" 12.50 ") == Decimal("12.50")
        assert to_decimal(Decimal("3.3")) == Decimal("3.3")

    def test_float_uses_its_repr(self):
        """Test que un float no arrastra error binario."""
        assert to_decimal(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [
        True, "abc", None, "1..2", "NaN", "sNaN", "-Infinity", Decimal("NaN"), float("inf")
    ])
    def test_rejects_non_numeric(self, value):
        """Test que valores no numéricos o no finitos lanzan ValueError."""
        with pytest.raises(ValueError):
            to_decimal(value)


class TestSumAmounts:
    """Tests de suma de montos."""

    def test_empty_sum_is_zero(self):
        """Test que la suma vacía es cero con dos decimales."""
        assert sum_amounts([]) == ZERO
        assert str(sum_amounts([])) == "0.00"

    def test_sum_is_quantized(self):
        """Test que la suma queda en centavos."""
        assert sum_amounts([Decimal("0.105"), Decimal("0.100")]) == Decimal("0.21")


class TestParseAmount:
    """Tests de lectura de montos impresos en facturas."""

    @pytest.mark.parametrize("raw,expected", [
        ("90.000", Decimal("90000")),
        ("$ 1.234.567,89", Decimal("1234567.89")),
        ("1,234,567.89", Decimal("1234567.89")),
        ("45000", Decimal("45000")),
        ("12,5", Decimal("12.5")),
        ("12.50", Decimal("12.50")),
        ("1,234", Decimal("1234")),
        ("COP 80.000", Decimal("80000")),
    ])
    def test_grouping_styles(self, raw, expected):
        """Test de agrupación colombiana y estadounidense."""
        assert parse_amount(raw) == expected

    def test_negative_amounts(self):
        """Test de montos negativos con signo o paréntesis."""
        assert parse_amount("-1.000") == Decimal("-1000")
        assert parse_amount("(2.500,50)") == Decimal("-2500.50")

    def test_numeric_input_passes_through(self):
        """Test que enteros y Decimals no se reinterpretan."""
        assert parse_amount(7) == Decimal("7")
        assert parse_amount(Decimal("7.25")) == Decimal("7.25")

    @pytest.mark.parametrize("raw", [None, "", "abc", "12a", "$"])
    def test_rejects_garbage(self, raw):
        """Test que textos que no son montos lanzan ValueError."""
        with pytest.raises(ValueError):
            parse_amount(raw)
