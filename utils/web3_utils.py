"""
Helpers de importes para el ledger EVM.

Todos los importes del dominio son ``Decimal`` en unidades del coin nativo con
8 decimales. La conversión desde wei redondea hacia abajo para no contar nunca
saldo que no existe.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

EIGHT_PLACES = Decimal("0.00000001")
WEI_PER_NATIVE = Decimal(10) ** 18


def quantize(amount: Decimal | int | float | str, rounding: str = ROUND_HALF_UP) -> Decimal:
    # float pasa por str para no arrastrar su representación binaria
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return value.quantize(EIGHT_PLACES, rounding=rounding)


def quantize_down(amount: Decimal | int | float | str) -> Decimal:
    return quantize(amount, rounding=ROUND_DOWN)


def wei_to_native(wei: int) -> Decimal:
    return quantize_down(Decimal(int(wei)) / WEI_PER_NATIVE)


def native_to_wei(amount: Decimal) -> int:
    return int((Decimal(amount) * WEI_PER_NATIVE).to_integral_value(rounding=ROUND_DOWN))


def short_address(address: str) -> str:
    if not address or len(address) < 12:
        return address or ""
    return f"{address[:6]}…{address[-4:]}"
