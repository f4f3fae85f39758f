import logging

from fastapi import HTTPException, status

from backend.errores import (
    ConflictoError,
    FiscalError,
    LedgerError,
    NoEncontradoError,
    NumeracionAgotadaError,
    ValidacionError,
)
from backend.utils.afipTools import MicroservicioAfip
from backend.utils.cotizaciones import ProveedorCotizaciones

logger = logging.getLogger(__name__)

_STATUS_POR_ERROR = (
    (ValidacionError, status.HTTP_400_BAD_REQUEST),
    (NoEncontradoError, status.HTTP_404_NOT_FOUND),
    (ConflictoError, status.HTTP_409_CONFLICT),
    (FiscalError, status.HTTP_502_BAD_GATEWAY),
    (NumeracionAgotadaError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def a_http(error: LedgerError) -> HTTPException:
    """Traduce un error de dominio al HTTPException que ve el cliente."""
    for tipo, codigo in _STATUS_POR_ERROR:
        if isinstance(error, tipo):
            return HTTPException(status_code=codigo, detail=str(error))
    logger.error(f"Error de dominio sin mapeo HTTP: {error!r}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# Colaboradores externos como dependencias, para poder reemplazarlos con app.dependency_overrides
def obtener_cotizador() -> ProveedorCotizaciones:
    return ProveedorCotizaciones()


def obtener_cliente_afip() -> MicroservicioAfip:
    return MicroservicioAfip()
