from decimal import Decimal

import pytest

from backend.errores import ValidacionError
from backend.modelos import EstrategiaMoneda
from backend.utils.montos import (
    LineaFactura,
    calcular_monto,
    calcular_totales,
    horas,
    proyectar_lineas,
)


def linea(amount, rate="50", usd=None, entry_id=1):
    return LineaFactura(
        time_entry_id=entry_id,
        description="Trabajo",
        quantity=Decimal("1"),
        rate=Decimal(rate),
        amount=Decimal(amount),
        usd_exchange_rate=Decimal(usd) if usd is not None else None,
    )


def test_monto_de_horas_netas_por_tarifa():
    assert calcular_monto(True, 90, Decimal("50")) == Decimal("75.00")
    assert calcular_monto(True, 165, Decimal("50")) == Decimal("137.50")


def test_monto_redondea_a_centavos():
    # 10 minutos a 10/h = 1.6666...
    assert calcular_monto(True, 10, Decimal("10")) == Decimal("1.67")


def test_no_facturable_o_sin_tarifa_da_cero():
    assert calcular_monto(False, 600, Decimal("100")) == Decimal("0.00")
    assert calcular_monto(True, 600, None) == Decimal("0.00")


def test_horas_con_cuatro_decimales():
    assert horas(165) == Decimal("2.7500")
    assert horas(10) == Decimal("0.1667")


def test_pesificacion_historica_usa_la_cotizacion_de_cada_registro():
    lineas = [linea("10", usd="1000", entry_id=1), linea("20", usd="1100", entry_id=2)]
    proyectadas = proyectar_lineas(lineas, "USD", "ARS", EstrategiaMoneda.HISTORICAL)
    totales = calcular_totales(proyectadas, 0)
    assert [l.amount for l in proyectadas] == [Decimal("10000.00"), Decimal("22000.00")]
    assert totales.subtotal == Decimal("32000.00")


def test_pesificacion_current_usa_una_sola_cotizacion():
    lineas = [linea("10", usd="1000", entry_id=1), linea("20", usd="1100", entry_id=2)]
    proyectadas = proyectar_lineas(lineas, "USD", "ARS", EstrategiaMoneda.CURRENT, Decimal("1200"))
    assert calcular_totales(proyectadas, 0).subtotal == Decimal("36000.00")
    assert proyectadas[0].rate == Decimal("60000.0000")


def test_historica_sin_cotizacion_guardada_se_rechaza():
    with pytest.raises(ValidacionError):
        proyectar_lineas([linea("10", usd=None)], "USD", "ARS", EstrategiaMoneda.HISTORICAL)


def test_current_sin_cotizacion_se_rechaza():
    with pytest.raises(ValidacionError):
        proyectar_lineas([linea("10")], "USD", "ARS", EstrategiaMoneda.CURRENT, None)


def test_misma_moneda_no_convierte():
    lineas = [linea("10.50", usd="1000")]
    assert proyectar_lineas(lineas, "USD", "usd", EstrategiaMoneda.CURRENT) == lineas


def test_destino_no_soportado():
    with pytest.raises(ValidacionError):
        proyectar_lineas([linea("10")], "ARS", "USD", EstrategiaMoneda.CURRENT, Decimal("1000"))


def test_totales_con_impuesto():
    totales = calcular_totales([linea("100"), linea("50.55")], Decimal("21"))
    assert totales.subtotal == Decimal("150.55")
    assert totales.tax_amount == Decimal("31.62")
    assert totales.total_amount == Decimal("182.17")
