import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from backend.app.dependencias import a_http, obtener_cotizador
from backend.database import get_db
from backend.errores import LedgerError
from backend.modelos import EstadoFactura, EstrategiaMoneda, Invoice, TipoFacturacion
from backend.security import obtener_usuario_actual
from backend.utils import facturas_manage
from backend.utils.facturas_manage import SolicitudFactura

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/facturas", tags=["Facturas"])


class CrearFacturaPayload(BaseModel):
    client_id: int
    time_entry_ids: List[int] = Field(..., min_length=1, description="Registros a facturar.")
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=100, description="Porcentaje de impuesto (ej. 21).")
    due_date: Optional[date] = None
    billing_type: TipoFacturacion = TipoFacturacion.LEGAL
    currency: Optional[str] = Field(None, min_length=3, max_length=3, description="Moneda destino; por defecto la del cliente.")
    currency_strategy: EstrategiaMoneda = EstrategiaMoneda.CURRENT
    cbte_tipo: Optional[int] = Field(None, description="Tipo de comprobante AFIP: 1=A, 6=B, 11=C")
    notes: Optional[str] = None


class CambiarEstadoPayload(BaseModel):
    status: EstadoFactura


def factura_a_dict(invoice: Invoice, con_items: bool = True) -> Dict[str, Any]:
    data = invoice.model_dump()
    data["client_name"] = invoice.client.name if invoice.client else None
    if con_items:
        data["items"] = [i.model_dump() for i in invoice.items]
        data["pagos"] = facturas_manage.resumen_pagos(invoice)
    return data


@router.get("", response_model=List[Dict[str, Any]])
def listar(
    client_id: Optional[int] = None,
    estado: Optional[EstadoFactura] = None,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    facturas = facturas_manage.listar_facturas(db, usuario_id, client_id, estado.value if estado else None)
    return [factura_a_dict(f, con_items=False) for f in facturas]


@router.get("/resumen-clientes", response_model=List[Dict[str, Any]])
def resumen_clientes(db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    return facturas_manage.resumen_facturacion_clientes(db, usuario_id)


@router.get("/{invoice_id}")
def obtener(invoice_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        return factura_a_dict(facturas_manage.obtener_factura(db, usuario_id, invoice_id))
    except LedgerError as e:
        raise a_http(e)


@router.post("", status_code=status.HTTP_201_CREATED)
def crear(
    payload: CrearFacturaPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
    cotizador=Depends(obtener_cotizador),
):
    logger.info(f"Recibida solicitud de factura: cliente {payload.client_id}, {len(payload.time_entry_ids)} registros")
    solicitud = SolicitudFactura(
        client_id=payload.client_id,
        time_entry_ids=payload.time_entry_ids,
        tax_rate=payload.tax_rate,
        due_date=payload.due_date,
        billing_type=payload.billing_type.value,
        currency=payload.currency,
        currency_strategy=payload.currency_strategy.value,
        cbte_tipo=payload.cbte_tipo,
        notes=payload.notes,
    )
    try:
        return factura_a_dict(facturas_manage.crear_factura_desde_registros(db, usuario_id, solicitud, cotizador))
    except LedgerError as e:
        raise a_http(e)


@router.delete("/{invoice_id}")
def eliminar(invoice_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        return facturas_manage.eliminar_factura(db, usuario_id, invoice_id)
    except LedgerError as e:
        raise a_http(e)


@router.patch("/{invoice_id}/estado")
def cambiar_estado(
    invoice_id: int,
    payload: CambiarEstadoPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    try:
        invoice = facturas_manage.cambiar_estado_factura(db, usuario_id, invoice_id, payload.status.value)
        return factura_a_dict(invoice, con_items=False)
    except LedgerError as e:
        raise a_http(e)


@router.get("/{invoice_id}/pagos")
def pagos(invoice_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        invoice = facturas_manage.obtener_factura(db, usuario_id, invoice_id)
    except LedgerError as e:
        raise a_http(e)
    return {
        "resumen": facturas_manage.resumen_pagos(invoice),
        "pagos": [p.model_dump() for p in invoice.payments],
    }
