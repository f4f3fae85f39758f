import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlmodel import Session, col, select

from backend.errores import ConflictoError, NoEncontradoError, ValidacionError
from backend.modelos import (
    Client,
    EstadoFactura,
    EstrategiaMoneda,
    Invoice,
    InvoiceItem,
    Project,
    Task,
    TimeEntry,
    TipoFacturacion,
    ahora,
)
from backend.utils import numeracion
from backend.utils.cotizaciones import ProveedorCotizaciones
from backend.utils.fiscal_manage import validar_transicion
from backend.utils.montos import CERO, LineaFactura, calcular_totales, centavos, horas, proyectar_lineas
from backend.utils.registros import Cotizador

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

DESCRIPCION_POR_DEFECTO = "Trabajo"
ESTADOS_IMPAGOS = (EstadoFactura.DRAFT.value, EstadoFactura.SENT.value, EstadoFactura.OVERDUE.value)


@dataclass
class SolicitudFactura:
    client_id: int
    time_entry_ids: List[int]
    tax_rate: Decimal = CERO
    due_date: Optional[date] = None
    billing_type: str = TipoFacturacion.LEGAL.value
    currency: Optional[str] = None
    currency_strategy: str = EstrategiaMoneda.CURRENT.value
    cbte_tipo: Optional[int] = None
    notes: Optional[str] = None
    issue_date: Optional[date] = None


# ==============================================================================
# Consultas
# ==============================================================================

def obtener_factura(session: Session, owner_id: int, invoice_id: int) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if invoice is None or invoice.client.owner_id != owner_id:
        raise NoEncontradoError("Factura no encontrada.")
    return invoice


def listar_facturas(
    session: Session,
    owner_id: int,
    client_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[Invoice]:
    stmt = (
        select(Invoice)
        .join(Client, Client.id == Invoice.client_id)
        .where(Client.owner_id == owner_id)
        .order_by(col(Invoice.created_at).desc(), col(Invoice.id).desc())
    )
    if client_id is not None:
        stmt = stmt.where(Invoice.client_id == client_id)
    if status:
        stmt = stmt.where(Invoice.status == status)
    return list(session.exec(stmt).all())


def _registro_facturable(entry: TimeEntry, owner_id: int, client_id: int) -> Optional[str]:
    """Motivo por el que el registro no se puede facturar, o None si es válido."""
    if entry.owner_id != owner_id:
        return "no pertenece al usuario"
    if entry.end_time is None:
        return "el timer sigue activo"
    if not entry.billable:
        return "no es facturable"
    if entry.is_billed:
        return f"ya está facturado (factura {entry.invoice_id})"
    if entry.task.project.client_id != client_id:
        return "pertenece a otro cliente"
    return None


def _filtrar_facturables(entries, owner_id: int, client_id: int) -> List[TimeEntry]:
    validos = []
    for entry in entries:
        motivo = _registro_facturable(entry, owner_id, client_id)
        if motivo:
            logger.warning(f"Registro {entry.id} excluido de la factura: {motivo}")
        else:
            validos.append(entry)
    return validos


def _linea_de(entry: TimeEntry) -> LineaFactura:
    return LineaFactura(
        time_entry_id=entry.id,
        description=entry.description or entry.task.name or DESCRIPCION_POR_DEFECTO,
        quantity=horas(entry.duration_neto),
        rate=Decimal(entry.rate_applied or 0),
        amount=Decimal(entry.amount or 0),
        usd_exchange_rate=entry.usd_exchange_rate,
    )


# ==============================================================================
# Creación
# ==============================================================================

def crear_factura_desde_registros(
    session: Session,
    owner_id: int,
    solicitud: SolicitudFactura,
    cotizador: Optional[Cotizador] = None,
) -> Invoice:
    """Crea una factura en borrador a partir de registros cerrados del cliente.

    La cotización se pide antes de abrir la transacción. Número + factura + ítems +
    marcas de facturado van en una sola transacción, reintentada completa si el
    número choca o si otra factura tomó alguno de los registros; cada intento
    vuelve a validar los registros contra la base.
    """
    client = session.get(Client, solicitud.client_id)
    if client is None or client.owner_id != owner_id:
        raise NoEncontradoError("Cliente no encontrado.")
    if not client.is_billable:
        raise ValidacionError(f"El cliente '{client.name}' no es facturable.")

    prefijo = numeracion.prefijo_para(solicitud.billing_type)
    try:
        estrategia = EstrategiaMoneda(solicitud.currency_strategy)
    except ValueError:
        raise ValidacionError(f"Estrategia de moneda '{solicitud.currency_strategy}' inválida. Debe ser CURRENT o HISTORICAL.")

    ids = list(dict.fromkeys(solicitud.time_entry_ids or []))
    if not ids:
        raise ValidacionError("Debe seleccionar al menos un período de trabajo.")

    entries = session.exec(
        select(TimeEntry).where(col(TimeEntry.id).in_(ids)).order_by(TimeEntry.start_time)
    ).all()
    validos = _filtrar_facturables(entries, owner_id, client.id)
    faltantes = set(ids) - {e.id for e in entries}
    if faltantes:
        logger.warning(f"Registros inexistentes en la solicitud de factura: {sorted(faltantes)}")
    if not validos:
        raise ValidacionError("No hay períodos de trabajo válidos para facturar.")

    moneda_nativa = client.currency.upper()
    moneda_destino = (solicitud.currency or client.currency).upper()

    cotizacion_actual = None
    if moneda_destino != moneda_nativa and estrategia == EstrategiaMoneda.CURRENT:
        cotizacion_actual = (cotizador or ProveedorCotizaciones()).obtener_cotizacion_usd().rate

    candidatos = [e.id for e in validos]

    def _crear() -> Invoice:
        with numeracion.transaccion_numerada(session):
            numero = numeracion.siguiente_numero_factura(session, prefijo)

            # Otra request pudo facturar alguno de estos registros desde la validación inicial
            vigentes = session.exec(
                select(TimeEntry)
                .where(col(TimeEntry.id).in_(candidatos))
                .order_by(TimeEntry.start_time)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).all()
            por_id = {e.id: e for e in _filtrar_facturables(vigentes, owner_id, client.id)}
            if not por_id:
                raise ValidacionError("Los períodos de trabajo seleccionados ya fueron facturados.")

            lineas = proyectar_lineas(
                [_linea_de(e) for e in por_id.values()], moneda_nativa, moneda_destino, estrategia, cotizacion_actual
            )
            totales = calcular_totales(lineas, solicitud.tax_rate)
            invoice = Invoice(
                client_id=client.id,
                invoice_number=numero,
                status=EstadoFactura.DRAFT.value,
                billing_type=solicitud.billing_type,
                currency=moneda_destino,
                currency_strategy=estrategia.value if moneda_destino != moneda_nativa else None,
                exchange_rate=cotizacion_actual,
                subtotal=totales.subtotal,
                tax_rate=totales.tax_rate,
                tax_amount=totales.tax_amount,
                total_amount=totales.total_amount,
                issue_date=solicitud.issue_date or ahora().date(),
                due_date=solicitud.due_date,
                notes=solicitud.notes or None,
                cbte_tipo=solicitud.cbte_tipo,
            )
            for linea in lineas:
                invoice.items.append(InvoiceItem(
                    time_entry_id=linea.time_entry_id,
                    description=linea.description,
                    quantity=linea.quantity,
                    rate=linea.rate,
                    amount=linea.amount,
                ))
            session.add(invoice)
            session.flush()

            # Solo se marcan los que siguen sin facturar; si alguno cambió, se rehace todo el intento
            marcados = session.connection().execute(
                update(TimeEntry)
                .where(col(TimeEntry.id).in_(list(por_id)), TimeEntry.is_billed == False)  # noqa: E712
                .values(is_billed=True, invoice_id=invoice.id)
            ).rowcount
            if marcados != len(por_id):
                logger.warning(
                    f"Factura {numero}: {len(por_id) - marcados} registros fueron facturados por otra operación"
                )
                raise numeracion.RegistrosYaFacturadosError(f"{len(por_id) - marcados} registros ya facturados")

            for entry in por_id.values():
                entry.is_billed = True
                entry.invoice_id = invoice.id
                session.add(entry)
        return invoice

    invoice = numeracion.con_reintento_numeracion(_crear)
    session.refresh(invoice)
    logger.info(
        f"Factura {invoice.invoice_number} (id {invoice.id}) creada para cliente {client.id}: "
        f"{len(invoice.items)} ítems, subtotal={invoice.subtotal} total={invoice.total_amount} {invoice.currency}"
    )
    return invoice


# ==============================================================================
# Eliminación y estados
# ==============================================================================

def eliminar_factura(session: Session, owner_id: int, invoice_id: int) -> Dict[str, Any]:
    invoice = obtener_factura(session, owner_id, invoice_id)
    if invoice.cae:
        raise ConflictoError(
            f"La factura {invoice.invoice_number} tiene CAE {invoice.cae} y no puede eliminarse; debe anularse con una nota de crédito."
        )
    if invoice.status != EstadoFactura.DRAFT.value:
        raise ConflictoError(f"Solo se pueden eliminar facturas en borrador (estado actual: {invoice.status}).")

    numero = invoice.invoice_number
    ids_items = [i.time_entry_id for i in invoice.items if i.time_entry_id is not None]
    try:
        entries = session.exec(
            select(TimeEntry).where(
                or_(TimeEntry.invoice_id == invoice.id, col(TimeEntry.id).in_(ids_items or [-1]))
            )
        ).all()
        for entry in entries:
            entry.is_billed = False
            entry.invoice_id = None
            session.add(entry)
        session.flush()
        session.delete(invoice)
        session.commit()
    except Exception:
        session.rollback()
        logger.error(f"Error eliminando factura {numero}", exc_info=True)
        raise

    logger.info(f"Factura {numero} eliminada; {len(entries)} registros liberados")
    return {"invoice_number": numero, "registros_liberados": len(entries)}


def cambiar_estado_factura(session: Session, owner_id: int, invoice_id: int, nuevo_estado: str) -> Invoice:
    invoice = obtener_factura(session, owner_id, invoice_id)
    try:
        destino = EstadoFactura(nuevo_estado)
    except ValueError:
        raise ValidacionError(f"Estado '{nuevo_estado}' inválido.")

    validar_transicion(invoice.status, destino.value)
    if destino == EstadoFactura.SENT and invoice.billing_type == TipoFacturacion.LEGAL.value and not invoice.cae:
        # Una factura legal sale de borrador solo al autorizarse en AFIP
        raise ConflictoError(
            f"La factura legal {invoice.invoice_number} no tiene CAE; autorícela en AFIP en lugar de marcarla como enviada."
        )
    if destino == EstadoFactura.CANCELLED and invoice.cae:
        raise ConflictoError(
            f"La factura {invoice.invoice_number} tiene CAE; para cancelarla emita una nota de crédito."
        )

    anterior = invoice.status
    invoice.status = destino.value
    if destino == EstadoFactura.PAID:
        invoice.paid_at = ahora()
    session.add(invoice)
    session.commit()
    session.refresh(invoice)
    logger.info(f"Factura {invoice.invoice_number}: {anterior} -> {invoice.status}")
    return invoice


# ==============================================================================
# Resúmenes
# ==============================================================================

def resumen_pagos(invoice: Invoice) -> Dict[str, Any]:
    pagado = centavos(sum((Decimal(p.amount) for p in invoice.payments), CERO))
    total = Decimal(invoice.total_amount)
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "currency": invoice.currency,
        "total": total,
        "pagado": pagado,
        "saldo": centavos(max(CERO, total - pagado)),
        "pagos": len(invoice.payments),
    }


def resumen_facturacion_clientes(session: Session, owner_id: int) -> List[Dict[str, Any]]:
    """Por cliente: horas sin facturar, facturado impago y facturado cobrado.

    Las notas de crédito no suman en ninguno de los dos totales facturados.
    """
    clients = session.exec(select(Client).where(Client.owner_id == owner_id).order_by(Client.name)).all()

    pendientes = session.exec(
        select(TimeEntry, Project.client_id)
        .join(Task, Task.id == TimeEntry.task_id)
        .join(Project, Project.id == Task.project_id)
        .where(
            TimeEntry.owner_id == owner_id,
            TimeEntry.billable == True,  # noqa: E712
            TimeEntry.is_billed == False,  # noqa: E712
            col(TimeEntry.end_time).is_not(None),
        )
    ).all()
    minutos = defaultdict(int)
    importes = defaultdict(lambda: CERO)
    for entry, client_id in pendientes:
        minutos[client_id] += entry.duration_neto
        importes[client_id] += Decimal(entry.amount or 0)

    resumen = []
    for client in clients:
        impago = defaultdict(lambda: CERO)
        cobrado = defaultdict(lambda: CERO)
        for inv in client.invoices:
            if inv.reversal_of_invoice_id is not None:
                continue
            if inv.status in ESTADOS_IMPAGOS:
                impago[inv.currency] += Decimal(inv.total_amount)
            elif inv.status == EstadoFactura.PAID.value:
                cobrado[inv.currency] += Decimal(inv.total_amount)
        resumen.append({
            "clientId": client.id,
            "clientName": client.name,
            "currency": client.currency,
            "unbilledMinutes": minutos[client.id],
            "unbilledAmount": centavos(importes[client.id]),
            "billedUnpaidAmount": {k: centavos(v) for k, v in impago.items()},
            "billedPaidAmount": {k: centavos(v) for k, v in cobrado.items()},
        })
    return resumen
