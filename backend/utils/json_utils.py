"""
Serialización JSON para logs y payloads del facturador.

`default_json` se usa como `json.dumps(..., default=default_json)`;
`payload_seguro` quita las credenciales antes de loguear un request a AFIP.
"""
from __future__ import annotations
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
import base64
from typing import Any, Dict

CLAVES_SENSIBLES = ("certificado", "clave_privada", "token", "sign")


def default_json(o: Any) -> Any:
    """Handler por defecto para json.dumps.

    - datetime/date -> ISO string
    - Decimal -> float (montos con 2 decimales; sin pérdida práctica)
    - Enum -> su valor
    - bytes -> base64 string
    - otros -> str(o)
    """
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return float(o)
    if isinstance(o, Enum):
        return o.value
    if isinstance(o, (bytes, bytearray)):
        return base64.b64encode(bytes(o)).decode("utf-8")
    return str(o)


def payload_seguro(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Copia del payload con las credenciales reemplazadas por un indicador de presencia."""
    seguro = dict(payload)
    cred = seguro.get("credenciales")
    if isinstance(cred, dict):
        seguro["credenciales"] = {
            k: (f"<{k} presente>" if v else None) if k in CLAVES_SENSIBLES else v
            for k, v in cred.items()
        }
    return seguro
