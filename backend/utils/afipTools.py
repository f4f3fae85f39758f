import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import requests

from backend import config
from backend.errores import FiscalAuthError, FiscalError, FiscalRequestError
from .afip_credenciales import CredencialesAfip, cargar_credenciales
from .json_utils import default_json, payload_seguro

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

AFIP_QR_BASE_URL = "https://www.afip.gob.ar/fe/qr/"

# Servicios
CONCEPTO_SERVICIOS = 2


class TipoDocumento(Enum):
    CUIT = 80
    CUIL = 86
    DNI = 96
    CONSUMIDOR_FINAL = 99


class TipoComprobante(Enum):
    FACTURA_A = 1
    NOTA_CREDITO_A = 3
    FACTURA_B = 6
    NOTA_CREDITO_B = 8
    FACTURA_C = 11
    NOTA_CREDITO_C = 13


NOTA_CREDITO_POR_TIPO = {
    TipoComprobante.FACTURA_A.value: TipoComprobante.NOTA_CREDITO_A.value,
    TipoComprobante.FACTURA_B.value: TipoComprobante.NOTA_CREDITO_B.value,
    TipoComprobante.FACTURA_C.value: TipoComprobante.NOTA_CREDITO_C.value,
}

# A y B discriminan IVA; C (monotributo) no
TIPOS_CON_IVA = (
    TipoComprobante.FACTURA_A.value,
    TipoComprobante.NOTA_CREDITO_A.value,
    TipoComprobante.FACTURA_B.value,
    TipoComprobante.NOTA_CREDITO_B.value,
)

# Tasa de IVA (%) -> Id de alícuota AFIP
ALICUOTAS_IVA = {
    Decimal("0"): 3,
    Decimal("2.5"): 9,
    Decimal("5"): 8,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
}

_PALABRAS_AUTH = (
    "token", "sign", "wsaa", "certificado", "certificate", "clave privada", "private key",
    "cuit", "autentic", "authenticat", "unauthorized", "notauthorized", "no autorizado", "computador no autorizado",
)


def solo_digitos(valor: Optional[str]) -> str:
    return re.sub(r"\D", "", valor or "")


def fecha_afip(valor: date) -> str:
    return valor.strftime("%Y%m%d")


def parse_fecha_afip(valor: Any) -> Optional[date]:
    """YYYYMMDD o YYYY-MM-DD -> date."""
    if valor is None or valor == "":
        return None
    if isinstance(valor, datetime):
        return valor.date()
    if isinstance(valor, date):
        return valor
    texto = str(valor).strip()
    for formato in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(texto[:10] if "-" in texto else texto[:8], formato).date()
        except ValueError:
            continue
    raise FiscalRequestError(f"Error en la solicitud a AFIP: fecha de vencimiento de CAE ilegible '{valor}'.")


def moneda_afip(currency: str) -> str:
    return "PES" if (currency or "ARS").upper() == "ARS" else "DOL"


def _importe(valor) -> float:
    return float(Decimal(str(valor or 0)).quantize(Decimal("0.01")))


@dataclass(frozen=True)
class ComprobanteAsociado:
    tipo: int
    punto_venta: int
    numero: int

    def to_payload(self) -> Dict[str, int]:
        return {"Tipo": self.tipo, "PtoVta": self.punto_venta, "Nro": self.numero}


@dataclass
class SolicitudComprobante:
    """Datos de un comprobante a autorizar, en el orden del WSFE."""
    punto_venta: int
    tipo: int
    numero: int
    fecha: date
    doc_nro: str
    total: Decimal
    neto: Decimal
    servicio_desde: date
    servicio_hasta: date
    vencimiento_pago: date
    iva: Decimal = Decimal("0")
    alicuota_iva: Optional[Decimal] = None
    exento: Decimal = Decimal("0")
    no_gravado: Decimal = Decimal("0")
    tributos: Decimal = Decimal("0")
    moneda: str = "PES"
    cotizacion: Decimal = Decimal("1")
    concepto: int = CONCEPTO_SERVICIOS
    doc_tipo: int = TipoDocumento.CUIT.value
    cantidad: int = 1
    asociados: List[ComprobanteAsociado] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        datos = {
            "CantReg": self.cantidad,
            "PtoVta": self.punto_venta,
            "CbteTipo": self.tipo,
            "Concepto": self.concepto,
            "DocTipo": self.doc_tipo,
            "DocNro": int(solo_digitos(self.doc_nro) or 0),
            "CbteDesde": self.numero,
            "CbteHasta": self.numero,
            "CbteFch": fecha_afip(self.fecha),
            "ImpTotal": _importe(self.total),
            "ImpTotConc": _importe(self.no_gravado),
            "ImpNeto": _importe(self.neto),
            "ImpOpEx": _importe(self.exento),
            "ImpIVA": _importe(self.iva),
            "ImpTrib": _importe(self.tributos),
            "MonId": self.moneda,
            "MonCotiz": float(self.cotizacion),
            "FchServDesde": fecha_afip(self.servicio_desde),
            "FchServHasta": fecha_afip(self.servicio_hasta),
            "FchVtoPago": fecha_afip(self.vencimiento_pago),
        }
        if self.tipo in TIPOS_CON_IVA and self.iva:
            alicuota = ALICUOTAS_IVA.get(Decimal(str(self.alicuota_iva or 21)).normalize(), 5)
            datos["Iva"] = [{"Id": alicuota, "BaseImp": _importe(self.neto), "Importe": _importe(self.iva)}]
        if self.asociados:
            datos["CbtesAsoc"] = [a.to_payload() for a in self.asociados]
        return datos


@dataclass
class RespuestaAutorizacion:
    cae: str
    cae_vencimiento: date
    raw: Dict[str, Any] = field(default_factory=dict)


class ClienteAfip(Protocol):
    def get_last_voucher_number(self, punto_venta: int, tipo: int) -> int: ...

    def authorize_voucher(self, solicitud: SolicitudComprobante) -> RespuestaAutorizacion: ...


def clasificar_error(mensaje: str, status_code: Optional[int] = None) -> FiscalError:
    """Separa fallas de autenticación / identidad frente a AFIP del resto."""
    texto = (mensaje or "").lower()
    if status_code in (401, 403) or any(p in texto for p in _PALABRAS_AUTH):
        return FiscalAuthError(f"Error de autenticación con AFIP: {mensaje}")
    return FiscalRequestError(f"Error en la solicitud a AFIP: {mensaje}")


def _mensaje_de_body(body: Any) -> str:
    if isinstance(body, dict):
        for clave in ("message", "error", "errores", "detail", "Errors"):
            valor = body.get(clave)
            if valor:
                return valor if isinstance(valor, str) else json.dumps(valor, ensure_ascii=False, default=default_json)
    return json.dumps(body, ensure_ascii=False, default=default_json)


class MicroservicioAfip:
    """Cliente del microservicio de facturación que habla con el WSFE de AFIP/ARCA.

    Cada request lleva las credenciales del emisor (cuit + certificado + clave)
    como en el resto de las integraciones con el facturador.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        credenciales: Optional[CredencialesAfip] = None,
        timeout: Optional[float] = None,
    ):
        self.url = (url or config.FACTURACION_API_URL).rstrip("/")
        self._credenciales = credenciales
        self.timeout = timeout or config.AFIP_TIMEOUT

    @property
    def credenciales(self) -> CredencialesAfip:
        if self._credenciales is None:
            self._credenciales = cargar_credenciales()
        return self._credenciales

    @property
    def cuit_emisor(self) -> str:
        return self.credenciales.cuit

    def _post(self, ruta: str, datos: Dict[str, Any], clave: str = "datos_factura") -> Dict[str, Any]:
        payload = {
            "credenciales": self.credenciales.para_microservicio(),
            "production": self.credenciales.production,
            clave: datos,
        }
        url = f"{self.url}{ruta}"
        logger.info(f"AFIP request -> {url}: {json.dumps(payload_seguro(payload), ensure_ascii=False, default=default_json)}")
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"No se pudo conectar con el microservicio de facturación: {e!r}")
            raise FiscalRequestError(f"Error en la solicitud a AFIP: el servicio de facturación no está disponible ({e!r})") from e

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        logger.info(f"AFIP response <- {response.status_code}: {json.dumps(body, ensure_ascii=False, default=default_json)}")

        if response.status_code >= 400:
            raise clasificar_error(f"Status: {response.status_code}. {_mensaje_de_body(body)}", response.status_code)
        if not isinstance(body, dict):
            raise FiscalRequestError(f"Error en la solicitud a AFIP: respuesta inesperada {body!r}")
        if body.get("errores") or body.get("error"):
            raise clasificar_error(_mensaje_de_body(body))
        if body.get("resultado") == "R":
            raise clasificar_error(f"Comprobante rechazado: {json.dumps(body, ensure_ascii=False, default=default_json)}")
        return body

    def get_last_voucher_number(self, punto_venta: int, tipo: int) -> int:
        body = self._post("/ultimo-comprobante", {"punto_venta": punto_venta, "tipo_afip": tipo}, clave="datos")
        for clave in ("ultimo_comprobante", "numero_comprobante", "CbteNro"):
            if body.get(clave) is not None:
                return int(body[clave])
        raise FiscalRequestError(f"Error en la solicitud a AFIP: respuesta sin número de último comprobante {body!r}")

    def authorize_voucher(self, solicitud: SolicitudComprobante) -> RespuestaAutorizacion:
        body = self._post("", solicitud.to_payload())
        cae = body.get("cae") or body.get("CAE")
        vencimiento = body.get("vencimiento_cae") or body.get("CAEFchVto") or body.get("CAE_FchVto")
        if not cae:
            raise FiscalRequestError(f"Error en la solicitud a AFIP: la respuesta no incluye CAE {body!r}")
        return RespuestaAutorizacion(cae=str(cae), cae_vencimiento=parse_fecha_afip(vencimiento), raw=body)


# ==============================================================================
# QR fiscal
# ==============================================================================

def generar_qr_afip(invoice, client_tax_id: Optional[str] = None) -> Optional[str]:
    """URL del QR de AFIP (https://www.afip.gob.ar/fe/qr/?p=<base64>) para una factura con CAE.

    Devuelve None si la factura no tiene CAE o no tiene CUIT de emisor válido.
    """
    if not invoice.cae or not invoice.issuer_tax_id:
        return None
    cuit_emisor = solo_digitos(invoice.issuer_tax_id)
    if len(cuit_emisor) != 11:
        return None

    moneda = moneda_afip(invoice.currency)
    datos_para_qr = {
        "ver": 1,
        "fecha": invoice.issue_date.isoformat(),
        "cuit": int(cuit_emisor),
        "ptoVta": invoice.punto_venta or config.PUNTO_VENTA,
        "tipoCmp": invoice.cbte_tipo or config.AFIP_CBTE_TIPO_DEFAULT,
        "nroCmp": invoice.cbte_nro or 0,
        "importe": _importe(invoice.total_amount),
        "moneda": moneda,
        "ctz": 1 if moneda == "PES" else float(invoice.exchange_rate or 1),
        "tipoCodAut": "E",
        "codAut": int(solo_digitos(invoice.cae)[:14] or 0),
    }
    doc_receptor = solo_digitos(client_tax_id)
    if len(doc_receptor) >= 10:
        datos_para_qr["tipoDocRec"] = TipoDocumento.CUIT.value
        datos_para_qr["nroDocRec"] = int(doc_receptor[:20])

    json_string = json.dumps(datos_para_qr, default=default_json)
    datos_base64 = base64.b64encode(json_string.encode("utf-8")).decode("utf-8")
    return f"{AFIP_QR_BASE_URL}?p={datos_base64}"
