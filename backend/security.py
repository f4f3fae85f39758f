"""
Resolución del usuario actual.

La autenticación la hace el gateway que está delante de esta API: cada request
llega con el id del usuario ya validado en el header X-Usuario-Id.
"""

from typing import Optional

from fastapi import Header, HTTPException, status

CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Usuario no identificado: falta el header X-Usuario-Id o es inválido",
)


def obtener_usuario_actual(x_usuario_id: Optional[str] = Header(default=None)) -> int:
    """Dependencia que devuelve el owner_id de la request."""
    if not x_usuario_id:
        raise CREDENTIALS_EXCEPTION
    try:
        usuario_id = int(x_usuario_id)
    except ValueError:
        raise CREDENTIALS_EXCEPTION
    if usuario_id <= 0:
        raise CREDENTIALS_EXCEPTION
    return usuario_id
