from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from backend.errores import NumeracionAgotadaError, ValidacionError
from backend.modelos import Invoice, TimeEntry, ahora
from backend.utils import numeracion
from backend.utils.facturas_manage import SolicitudFactura, crear_factura_desde_registros

OWNER_ID = 1
INICIO = datetime(2025, 3, 10, 9, 0)


def factura(session, client_id, numero, billing_type="LEGAL"):
    invoice = Invoice(client_id=client_id, invoice_number=numero, billing_type=billing_type)
    session.add(invoice)
    session.commit()
    return invoice


def test_primer_numero_del_anio(session, jerarquia):
    assert numeracion.siguiente_numero_factura(session, "INV", 2025) == "INV-2025-001"


def test_sigue_al_mayor_existente(session, jerarquia):
    factura(session, jerarquia.client.id, "INV-2025-001")
    factura(session, jerarquia.client.id, "INV-2025-007")
    factura(session, jerarquia.client.id, "INV-2024-099")
    factura(session, jerarquia.client.id, "INT-2025-050", billing_type="INTERNAL")
    assert numeracion.siguiente_numero_factura(session, "INV", 2025) == "INV-2025-008"
    assert numeracion.siguiente_numero_factura(session, "INT", 2025) == "INT-2025-051"
    assert numeracion.siguiente_numero_factura(session, "NC", 2025) == "NC-2025-001"


def test_prefijos():
    assert numeracion.prefijo_para("LEGAL") == "INV"
    assert numeracion.prefijo_para("INTERNAL") == "INT"
    assert numeracion.prefijo_para("LEGAL", nota_credito=True) == "NC"
    with pytest.raises(ValidacionError):
        numeracion.prefijo_para("OTRO")


def test_choque_de_numero_se_reintenta_con_el_siguiente(session, jerarquia, nuevo_registro, monkeypatch):
    """Otra request persistió N+1 entre el cálculo y el commit: esta factura queda con N+2."""
    anio = ahora().year
    factura(session, jerarquia.client.id, f"INV-{anio}-001")
    # La "otra" request que ganó la carrera
    factura(session, jerarquia.client.id, f"INV-{anio}-002")
    entry = nuevo_registro(INICIO, INICIO + timedelta(hours=1))

    original = numeracion.siguiente_numero_factura
    calculados = []

    def numero_viejo_la_primera_vez(s, prefijo, anio=None):
        numero = f"{prefijo}-{ahora().year}-002" if not calculados else original(s, prefijo, anio)
        calculados.append(numero)
        return numero

    monkeypatch.setattr(numeracion, "siguiente_numero_factura", numero_viejo_la_primera_vez)
    invoice = crear_factura_desde_registros(
        session, OWNER_ID, SolicitudFactura(client_id=jerarquia.client.id, time_entry_ids=[entry.id])
    )

    assert calculados == [f"INV-{anio}-002", f"INV-{anio}-003"]
    assert invoice.invoice_number == f"INV-{anio}-003"
    numeros = session.exec(select(Invoice.invoice_number)).all()
    assert len(numeros) == len(set(numeros)) == 3
    entry = session.get(TimeEntry, entry.id)
    assert entry.is_billed is True
    assert entry.invoice_id == invoice.id
    assert len(invoice.items) == 1


def test_dos_sesiones_compiten_por_el_mismo_numero(base_compartida, monkeypatch):
    anio = ahora().year
    propio = base_compartida.registro(INICIO, INICIO + timedelta(hours=1))
    ajeno = base_compartida.registro(INICIO + timedelta(days=1), INICIO + timedelta(days=1, hours=1))
    original = numeracion.siguiente_numero_factura
    calculados = []

    def numerar_y_dejar_que_otra_sesion_use_el_numero(s, prefijo, anio=None):
        numero = original(s, prefijo, anio)
        calculados.append(numero)
        if len(calculados) == 1:
            # La otra sesión calcula el mismo número y hace commit primero
            with Session(base_compartida.engine) as otra:
                crear_factura_desde_registros(
                    otra, OWNER_ID, SolicitudFactura(client_id=base_compartida.client_id, time_entry_ids=[ajeno])
                )
        return numero

    monkeypatch.setattr(numeracion, "siguiente_numero_factura", numerar_y_dejar_que_otra_sesion_use_el_numero)
    with Session(base_compartida.engine) as session:
        invoice = crear_factura_desde_registros(
            session, OWNER_ID, SolicitudFactura(client_id=base_compartida.client_id, time_entry_ids=[propio])
        )
        assert calculados == [f"INV-{anio}-001", f"INV-{anio}-001", f"INV-{anio}-002"]
        assert invoice.invoice_number == f"INV-{anio}-002"
        assert [i.time_entry_id for i in invoice.items] == [propio]

        numeros = session.exec(select(Invoice.invoice_number).order_by(Invoice.invoice_number)).all()
        assert numeros == [f"INV-{anio}-001", f"INV-{anio}-002"]
        assert session.get(TimeEntry, propio).invoice_id == invoice.id
        assert session.get(TimeEntry, ajeno).invoice_id != invoice.id


def test_reintentos_agotados(session, jerarquia, nuevo_registro, monkeypatch):
    anio = ahora().year
    factura(session, jerarquia.client.id, f"INV-{anio}-001")
    entry = nuevo_registro(INICIO, INICIO + timedelta(hours=1))
    monkeypatch.setattr(numeracion, "siguiente_numero_factura", lambda s, prefijo, anio=None: f"INV-{ahora().year}-001")

    with pytest.raises(NumeracionAgotadaError):
        crear_factura_desde_registros(
            session, OWNER_ID, SolicitudFactura(client_id=jerarquia.client.id, time_entry_ids=[entry.id])
        )
    entry = session.get(TimeEntry, entry.id)
    assert entry.is_billed is False
    assert len(session.exec(select(Invoice)).all()) == 1


def test_otros_errores_no_se_reintentan():
    llamadas = []

    def falla():
        llamadas.append(1)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        numeracion.con_reintento_numeracion(falla, max_intentos=3)
    assert len(llamadas) == 1
