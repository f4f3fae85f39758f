import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from backend.app.blueprints.facturas import factura_a_dict
from backend.app.dependencias import a_http, obtener_cliente_afip, obtener_cotizador
from backend.database import get_db
from backend.errores import LedgerError
from backend.security import obtener_usuario_actual
from backend.utils import fiscal_manage
from backend.utils.afipTools import generar_qr_afip
from backend.utils.afip_credenciales import cargar_credenciales
from backend.utils.facturas_manage import obtener_factura

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/afip", tags=["AFIP"])


class AnularAfipPayload(BaseModel):
    motivo: Optional[str] = None


@router.post("/facturas/{invoice_id}/autorizar")
def autorizar(
    invoice_id: int,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
    cliente_afip=Depends(obtener_cliente_afip),
    cotizador=Depends(obtener_cotizador),
):
    """
    Solicita el CAE de una factura en borrador. Si AFIP falla, la factura
    queda en borrador con el error en `afip_error`.
    """
    try:
        invoice = fiscal_manage.autorizar_factura(db, invoice_id, cliente_afip, owner_id=usuario_id, cotizador=cotizador)
    except LedgerError as e:
        raise a_http(e)
    return {
        "success": True,
        "cae": invoice.cae,
        "cbte_nro": invoice.cbte_nro,
        "factura": factura_a_dict(invoice, con_items=False),
        "qr_url": generar_qr_afip(invoice, invoice.client.tax_id),
    }


@router.post("/facturas/{invoice_id}/anular")
def anular(
    invoice_id: int,
    payload: AnularAfipPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
    cliente_afip=Depends(obtener_cliente_afip),
):
    """Emite una nota de crédito por el total y cancela la factura original."""
    try:
        nota = fiscal_manage.emitir_nota_credito(db, invoice_id, cliente_afip, payload.motivo, owner_id=usuario_id)
    except LedgerError as e:
        raise a_http(e)
    return {
        "success": True,
        "nota_credito": factura_a_dict(nota, con_items=False),
        "factura_anulada_id": invoice_id,
    }


@router.get("/facturas/{invoice_id}/qr")
def qr(invoice_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        invoice = obtener_factura(db, usuario_id, invoice_id)
    except LedgerError as e:
        raise a_http(e)
    url = generar_qr_afip(invoice, invoice.client.tax_id)
    if not url:
        raise HTTPException(status_code=404, detail="La factura no tiene CAE o CUIT de emisor válido para generar el QR.")
    return {"invoice_id": invoice_id, "qr_url": url}


@router.get("/credenciales/estado")
def estado_credenciales():
    """Verifica que el certificado configurado sea legible, vigente y corresponda a la clave."""
    try:
        cred = cargar_credenciales()
    except LedgerError as e:
        return {"ok": False, "error": str(e)}
    return {
        "ok": True,
        "cuit": cred.cuit,
        "production": cred.production,
        "vence": cred.vence.isoformat() if cred.vence else None,
    }
