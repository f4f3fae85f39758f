import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from backend import config
from backend.errores import FiscalAuthError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredencialesAfip:
    cuit: str
    certificado: str
    clave_privada: str
    production: bool = False
    vence: Optional[datetime] = None

    def para_microservicio(self) -> dict:
        return {
            "cuit": self.cuit,
            "certificado": self.certificado,
            "clave_privada": self.clave_privada,
        }


def _decodificar_b64(valor: str, nombre: str) -> str:
    try:
        return base64.b64decode(valor, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise FiscalAuthError(f"{nombre} no es un Base64 válido: {e}") from e


def verificar_certificado(cert_pem: str, key_pem: str, ahora_utc: Optional[datetime] = None) -> datetime:
    """Valida que el certificado esté vigente y corresponda a la clave. Devuelve el vencimiento (UTC)."""
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode())
    except ValueError as e:
        raise FiscalAuthError(f"El certificado AFIP no es un PEM válido: {e}") from e
    try:
        key = serialization.load_pem_private_key(key_pem.encode(), password=None)
    except (ValueError, TypeError) as e:
        raise FiscalAuthError(f"La clave privada AFIP no es un PEM válido: {e}") from e

    momento = ahora_utc or datetime.now(timezone.utc)
    if momento < cert.not_valid_before_utc:
        raise FiscalAuthError(f"El certificado AFIP todavía no es válido (desde {cert.not_valid_before_utc.date()}).")
    if momento > cert.not_valid_after_utc:
        raise FiscalAuthError(f"El certificado AFIP venció el {cert.not_valid_after_utc.date()}.")

    pub_cert = cert.public_key()
    pub_key = key.public_key()
    if hasattr(pub_cert, "public_numbers") and hasattr(pub_key, "public_numbers"):
        if pub_cert.public_numbers() != pub_key.public_numbers():
            raise FiscalAuthError("El certificado AFIP no corresponde a la clave privada configurada.")
    return cert.not_valid_after_utc


def cargar_credenciales(
    cuit: Optional[str] = None,
    cert_b64: Optional[str] = None,
    key_b64: Optional[str] = None,
    production: Optional[bool] = None,
) -> CredencialesAfip:
    """Credenciales del emisor desde AFIP_CUIT / AFIP_CERT_B64 / AFIP_KEY_B64.

    Cualquier problema (faltantes, Base64 roto, certificado vencido o ajeno a la
    clave) es un FiscalAuthError y se detecta antes de llamar a AFIP.
    """
    cuit = cuit or config.AFIP_CUIT
    cert_b64 = cert_b64 or config.AFIP_CERT_B64
    key_b64 = key_b64 or config.AFIP_KEY_B64
    if not (cuit and cert_b64 and key_b64):
        raise FiscalAuthError("Falta configuración de AFIP: AFIP_CUIT, AFIP_CERT_B64 o AFIP_KEY_B64.")

    cuit = re.sub(r"\D", "", cuit)
    if len(cuit) != 11:
        raise FiscalAuthError(f"AFIP_CUIT inválido: '{cuit}' (se esperan 11 dígitos).")

    cert_pem = _decodificar_b64(cert_b64, "AFIP_CERT_B64")
    key_pem = _decodificar_b64(key_b64, "AFIP_KEY_B64")
    vence = verificar_certificado(cert_pem, key_pem)
    logger.info(f"Credenciales AFIP cargadas (cuit={cuit}, vence={vence.date()}, produccion={config.AFIP_PRODUCTION if production is None else production})")
    return CredencialesAfip(
        cuit=cuit,
        certificado=cert_pem,
        clave_privada=key_pem,
        production=config.AFIP_PRODUCTION if production is None else production,
        vence=vence,
    )
