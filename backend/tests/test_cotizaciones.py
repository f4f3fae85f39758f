from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
import requests
from sqlmodel import select

from backend.modelos import TimeEntry
from backend.utils import cotizaciones
from backend.utils.cotizaciones import ProveedorCotizaciones, backfill_cotizaciones_historicas

INICIO = datetime(2025, 3, 10, 9, 0)


class RespFake:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code}")

    def json(self):
        return self._body


def test_cotizacion_oficial_venta(monkeypatch):
    monkeypatch.setattr(cotizaciones.requests, "get", lambda url, timeout=None: RespFake(
        {"casa": "oficial", "compra": 1040, "venta": 1080.5, "fechaActualizacion": "2025-03-10T15:00:00.000Z"}
    ))
    cotizacion = ProveedorCotizaciones(url="http://dolar").obtener_cotizacion_usd()
    assert cotizacion.rate == Decimal("1080.5")
    assert cotizacion.source == "oficial"
    assert cotizacion.updated_at.year == 2025


@pytest.mark.parametrize("respuesta", [
    RespFake({}, status_code=503),
    RespFake({"compra": 1000}),
    RespFake({"venta": "no-es-numero"}),
    RespFake({"venta": 0}),
])
def test_cualquier_falla_devuelve_el_respaldo(monkeypatch, respuesta):
    monkeypatch.setattr(cotizaciones.requests, "get", lambda url, timeout=None: respuesta)
    cotizacion = ProveedorCotizaciones(url="http://dolar", fallback="1050").obtener_cotizacion_usd()
    assert cotizacion.rate == Decimal("1050")
    assert cotizacion.source == "fallback"


def test_sin_conexion_devuelve_el_respaldo(monkeypatch):
    def sin_red(url, timeout=None):
        raise requests.exceptions.ConnectTimeout("timeout")

    monkeypatch.setattr(cotizaciones.requests, "get", sin_red)
    assert ProveedorCotizaciones(fallback="999").obtener_cotizacion_usd().rate == Decimal("999")


def test_historial_ignora_filas_invalidas(monkeypatch):
    monkeypatch.setattr(cotizaciones.requests, "get", lambda url, timeout=None: RespFake([
        {"casa": "oficial", "compra": 990, "venta": 1010, "fecha": "2025-03-10"},
        {"casa": "oficial", "venta": 1020, "fecha": "2025-03-11"},
        {"casa": "oficial", "fecha": "2025-03-12"},
    ]))
    historial = ProveedorCotizaciones(url_historial="http://historial").obtener_historial_cotizaciones()
    assert historial == {date(2025, 3, 10): Decimal("1010"), date(2025, 3, 11): Decimal("1020")}


def test_backfill_solo_toca_la_cotizacion(session, nuevo_registro):
    a = nuevo_registro(INICIO, INICIO + timedelta(hours=1), usd="900")
    b = nuevo_registro(INICIO + timedelta(days=1), INICIO + timedelta(days=1, hours=1))
    c = nuevo_registro(INICIO + timedelta(days=5), INICIO + timedelta(days=5, hours=1))
    historial = {date(2025, 3, 10): Decimal("1010"), date(2025, 3, 11): Decimal("1020")}

    simulado = backfill_cotizaciones_historicas(session, historial, dry_run=True)
    assert simulado == {"procesados": 3, "actualizados": 2, "sin_cotizacion": 1}
    assert session.get(TimeEntry, a.id).usd_exchange_rate == Decimal("900")

    resultado = backfill_cotizaciones_historicas(session, historial)
    assert resultado == simulado
    entries = {e.id: e for e in session.exec(select(TimeEntry)).all()}
    assert entries[a.id].usd_exchange_rate == Decimal("1010")
    assert entries[b.id].usd_exchange_rate == Decimal("1020")
    assert entries[c.id].usd_exchange_rate is None
    assert entries[a.id].amount == Decimal("50.00")
