"""
Máquina de estados fiscal de las facturas.

- Autorizar (CAE): último comprobante + 1, luego solicitud de autorización.
  Son dos llamadas separadas a AFIP; se serializan por (punto de venta, tipo)
  dentro del proceso, pero dos procesos distintos todavía pueden pisarse.
- Anular: nota de crédito por el total, asociada al comprobante original.

Un fallo de AFIP deja la factura como estaba y guarda el error con timestamp
en `afip_error`.
"""
import logging
import threading
from datetime import date
from decimal import Decimal
from typing import Dict, Optional, Tuple

from sqlmodel import Session

from backend import config
from backend.errores import ConflictoError, FiscalError, FiscalRequestError, NoEncontradoError, ValidacionError
from backend.modelos import EstadoFactura, Invoice, InvoiceItem, TipoFacturacion, ahora
from backend.utils import numeracion
from backend.utils.afipTools import (
    NOTA_CREDITO_POR_TIPO,
    TIPOS_CON_IVA,
    ClienteAfip,
    ComprobanteAsociado,
    SolicitudComprobante,
    moneda_afip,
    solo_digitos,
)
from backend.utils.cotizaciones import ProveedorCotizaciones

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

TRANSICIONES = {
    EstadoFactura.DRAFT.value: {EstadoFactura.SENT.value, EstadoFactura.CANCELLED.value},
    EstadoFactura.SENT.value: {EstadoFactura.PAID.value, EstadoFactura.OVERDUE.value, EstadoFactura.CANCELLED.value},
    EstadoFactura.OVERDUE.value: {EstadoFactura.PAID.value, EstadoFactura.CANCELLED.value},
    EstadoFactura.PAID.value: {EstadoFactura.CANCELLED.value},
    EstadoFactura.CANCELLED.value: set(),
}

_locks: Dict[Tuple[int, int], threading.Lock] = {}
_locks_guard = threading.Lock()


def validar_transicion(actual: str, destino: str) -> None:
    if destino not in TRANSICIONES.get(actual, set()):
        logger.warning(f"Transición de estado rechazada: {actual} -> {destino}")
        raise ConflictoError(f"Transición de estado inválida: {actual} -> {destino}.")


def _lock_para(punto_venta: int, tipo: int) -> threading.Lock:
    with _locks_guard:
        return _locks.setdefault((punto_venta, tipo), threading.Lock())


def _factura(session: Session, invoice_id: int, owner_id: Optional[int]) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if invoice is None or (owner_id is not None and invoice.client.owner_id != owner_id):
        raise NoEncontradoError("Factura no encontrada.")
    return invoice


def _periodo_servicio(invoice: Invoice) -> Tuple[date, date]:
    """Del primer al último día trabajado en los registros facturados; si no hay, la fecha de emisión."""
    inicios = []
    fines = []
    for item in invoice.items:
        entry = item.time_entry
        if entry is not None:
            inicios.append(entry.start_time.date())
            fines.append((entry.end_time or entry.start_time).date())
    if not inicios:
        return invoice.issue_date, invoice.issue_date
    return min(inicios), max(fines)


def _cotizacion_comprobante(invoice: Invoice, cotizador) -> Tuple[str, Decimal]:
    moneda = moneda_afip(invoice.currency)
    if moneda == "PES":
        return moneda, Decimal("1")
    if invoice.exchange_rate:
        return moneda, Decimal(invoice.exchange_rate)
    return moneda, (cotizador or ProveedorCotizaciones()).obtener_cotizacion_usd().rate


def _importes(invoice: Invoice, tipo: int) -> Dict[str, Decimal]:
    if tipo in TIPOS_CON_IVA:
        return {"neto": invoice.subtotal, "iva": invoice.tax_amount, "alicuota_iva": invoice.tax_rate}
    return {"neto": invoice.total_amount, "iva": Decimal("0"), "alicuota_iva": None}


def _registrar_error(session: Session, invoice: Invoice, error: Exception) -> None:
    session.rollback()
    invoice.afip_error = f"[{ahora().isoformat()}Z] {error}"
    session.add(invoice)
    session.commit()
    logger.error(f"Factura {invoice.invoice_number}: error AFIP registrado: {error}")


def _cuit_emisor(cliente_afip: ClienteAfip) -> Optional[str]:
    return getattr(cliente_afip, "cuit_emisor", None) or config.AFIP_CUIT


def _solicitar_cae(
    session: Session,
    invoice_con_error: Invoice,
    cliente_afip: ClienteAfip,
    punto_venta: int,
    tipo: int,
    armar_solicitud,
):
    """Las dos llamadas a AFIP bajo el lock de (punto, tipo). Devuelve (numero, solicitud, respuesta)."""
    with _lock_para(punto_venta, tipo):
        try:
            ultimo = cliente_afip.get_last_voucher_number(punto_venta, tipo)
            numero = ultimo + 1
            solicitud = armar_solicitud(numero)
            logger.info(f"[AFIP] Solicitando CAE: pv={punto_venta} tipo={tipo} numero={numero} total={solicitud.total}")
            respuesta = cliente_afip.authorize_voucher(solicitud)
        except FiscalError as e:
            _registrar_error(session, invoice_con_error, e)
            raise
        except Exception as e:
            _registrar_error(session, invoice_con_error, e)
            raise FiscalRequestError(f"Error en la solicitud a AFIP: {e}") from e
    return numero, solicitud, respuesta


# ==============================================================================
# Autorización
# ==============================================================================

def autorizar_factura(
    session: Session,
    invoice_id: int,
    cliente_afip: ClienteAfip,
    owner_id: Optional[int] = None,
    cotizador=None,
) -> Invoice:
    invoice = _factura(session, invoice_id, owner_id)
    if invoice.billing_type != TipoFacturacion.LEGAL.value:
        raise ValidacionError("Solo las facturas LEGAL se autorizan ante AFIP.")
    if invoice.cae:
        raise ConflictoError(f"La factura {invoice.invoice_number} ya tiene un CAE asignado.")
    if invoice.status != EstadoFactura.DRAFT.value:
        raise ConflictoError(f"Solo se autorizan facturas en borrador (estado actual: {invoice.status}).")
    doc_nro = solo_digitos(invoice.client.tax_id)
    if not doc_nro:
        raise ValidacionError("El cliente no tiene CUIT configurado.")

    punto_venta = invoice.punto_venta or config.PUNTO_VENTA
    tipo = invoice.cbte_tipo or config.AFIP_CBTE_TIPO_DEFAULT
    if tipo not in NOTA_CREDITO_POR_TIPO:
        raise ValidacionError(f"Tipo de comprobante {tipo} no soportado para facturar (use 1, 6 u 11).")

    moneda, cotizacion = _cotizacion_comprobante(invoice, cotizador)
    fecha = ahora().date()
    desde, hasta = _periodo_servicio(invoice)
    importes = _importes(invoice, tipo)

    def armar(numero: int) -> SolicitudComprobante:
        return SolicitudComprobante(
            punto_venta=punto_venta,
            tipo=tipo,
            numero=numero,
            fecha=fecha,
            doc_nro=doc_nro,
            total=invoice.total_amount,
            servicio_desde=desde,
            servicio_hasta=hasta,
            vencimiento_pago=max(invoice.due_date or fecha, fecha),
            moneda=moneda,
            cotizacion=cotizacion,
            **importes,
        )

    numero, _, respuesta = _solicitar_cae(session, invoice, cliente_afip, punto_venta, tipo, armar)

    invoice.cae = respuesta.cae
    invoice.cae_due_date = respuesta.cae_vencimiento
    invoice.cbte_nro = numero
    invoice.punto_venta = punto_venta
    invoice.cbte_tipo = tipo
    invoice.issuer_tax_id = _cuit_emisor(cliente_afip)
    invoice.issue_date = fecha
    if moneda != "PES" and not invoice.exchange_rate:
        invoice.exchange_rate = cotizacion
    invoice.afip_error = None
    invoice.status = EstadoFactura.SENT.value
    session.add(invoice)
    session.commit()
    session.refresh(invoice)
    logger.info(f"Factura {invoice.invoice_number} autorizada: CAE {invoice.cae} comprobante {punto_venta}-{numero}")
    return invoice


# ==============================================================================
# Nota de crédito
# ==============================================================================

def emitir_nota_credito(
    session: Session,
    invoice_id: int,
    cliente_afip: ClienteAfip,
    motivo: Optional[str] = None,
    owner_id: Optional[int] = None,
) -> Invoice:
    """Anula por completo una factura con CAE. Devuelve la nueva factura (nota de crédito)."""
    original = _factura(session, invoice_id, owner_id)
    if not original.cae:
        raise ValidacionError("Solo se pueden anular facturas con CAE. Una factura sin CAE se elimina.")
    if original.status == EstadoFactura.CANCELLED.value:
        raise ConflictoError(f"La factura {original.invoice_number} ya está cancelada.")
    tipo_nc = NOTA_CREDITO_POR_TIPO.get(original.cbte_tipo)
    if tipo_nc is None:
        raise ValidacionError(f"No hay nota de crédito para el tipo de comprobante {original.cbte_tipo}.")

    punto_venta = original.punto_venta or config.PUNTO_VENTA
    fecha = ahora().date()
    desde, hasta = _periodo_servicio(original)
    importes = _importes(original, tipo_nc)
    asociado = ComprobanteAsociado(tipo=original.cbte_tipo, punto_venta=punto_venta, numero=original.cbte_nro)

    def armar(numero: int) -> SolicitudComprobante:
        return SolicitudComprobante(
            punto_venta=punto_venta,
            tipo=tipo_nc,
            numero=numero,
            fecha=fecha,
            doc_nro=solo_digitos(original.client.tax_id),
            total=original.total_amount,
            servicio_desde=desde,
            servicio_hasta=hasta,
            vencimiento_pago=fecha,
            moneda=moneda_afip(original.currency),
            cotizacion=Decimal(original.exchange_rate) if moneda_afip(original.currency) != "PES" and original.exchange_rate else Decimal("1"),
            asociados=[asociado],
            **importes,
        )

    numero, _, respuesta = _solicitar_cae(session, original, cliente_afip, punto_venta, tipo_nc, armar)
    nota = f"Nota de crédito que anula la factura {original.invoice_number}"
    if motivo:
        nota = f"{nota}. Motivo: {motivo}"
    prefijo = numeracion.prefijo_para(TipoFacturacion.LEGAL.value, nota_credito=True)

    def _crear() -> Invoice:
        with numeracion.transaccion_numerada(session):
            credito = Invoice(
                client_id=original.client_id,
                invoice_number=numeracion.siguiente_numero_factura(session, prefijo),
                status=EstadoFactura.SENT.value,
                billing_type=TipoFacturacion.LEGAL.value,
                currency=original.currency,
                currency_strategy=original.currency_strategy,
                exchange_rate=original.exchange_rate,
                subtotal=original.subtotal,
                tax_rate=original.tax_rate,
                tax_amount=original.tax_amount,
                total_amount=original.total_amount,
                issue_date=fecha,
                notes=nota,
                cae=respuesta.cae,
                cae_due_date=respuesta.cae_vencimiento,
                cbte_nro=numero,
                punto_venta=punto_venta,
                cbte_tipo=tipo_nc,
                issuer_tax_id=_cuit_emisor(cliente_afip),
                reversal_of_invoice_id=original.id,
            )
            for item in original.items:
                credito.items.append(InvoiceItem(
                    description=item.description,
                    quantity=item.quantity,
                    rate=item.rate,
                    amount=item.amount,
                ))
            original.status = EstadoFactura.CANCELLED.value
            original.afip_error = None
            session.add(credito)
            session.add(original)
        return credito

    try:
        credito = numeracion.con_reintento_numeracion(_crear)
    except Exception:
        # El CAE ya fue emitido en AFIP
        logger.critical(
            f"Nota de crédito autorizada en AFIP pero no persistida: CAE {respuesta.cae} "
            f"comprobante {punto_venta}-{numero} tipo {tipo_nc} (anula {original.invoice_number})",
            exc_info=True,
        )
        raise
    session.refresh(credito)
    logger.info(
        f"Factura {original.invoice_number} anulada con nota de crédito {credito.invoice_number} "
        f"(CAE {credito.cae}, comprobante {punto_venta}-{numero})"
    )
    return credito
