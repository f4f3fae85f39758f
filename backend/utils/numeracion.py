import logging
import re
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy import func
from sqlmodel import Session, col, select
from tenacity import (
    RetryError,
    Retrying,
    after_log,
    before_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from backend import config
from backend.errores import NumeracionAgotadaError, ValidacionError
from backend.modelos import Invoice, TipoFacturacion, ahora

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

T = TypeVar("T")

_SUFIJO = re.compile(r"-(\d+)$")


class ConflictoReintentable(Exception):
    """Otra transacción ganó la carrera; el intento completo se repite desde cero."""


class NumeroDuplicadoError(ConflictoReintentable):
    """El commit chocó contra uq_invoice_number_billing_type: hay que recalcular el número."""


class RegistrosYaFacturadosError(ConflictoReintentable):
    """Algún registro a facturar quedó tomado por otra factura entre la lectura y la marca."""


def prefijo_para(billing_type: str, nota_credito: bool = False) -> str:
    if nota_credito:
        return config.INVOICE_PREFIX_CREDIT_NOTE
    if billing_type == TipoFacturacion.LEGAL:
        return config.INVOICE_PREFIX_LEGAL
    if billing_type == TipoFacturacion.INTERNAL:
        return config.INVOICE_PREFIX_INTERNAL
    raise ValidacionError(f"Tipo de facturación '{billing_type}' inválido. Debe ser LEGAL o INTERNAL.")


def siguiente_numero_factura(session: Session, prefijo: str, anio: Optional[int] = None) -> str:
    """{PREFIJO}-{AÑO}-{NNN}: sufijo del mayor número existente + 1, o 001 si no hay ninguno."""
    anio = anio or ahora().year
    base = f"{prefijo}-{anio}-"
    ultimo = session.exec(
        select(func.max(Invoice.invoice_number)).where(col(Invoice.invoice_number).like(f"{base}%"))
    ).one()

    siguiente = 1
    if ultimo:
        m = _SUFIJO.search(ultimo)
        if m:
            siguiente = int(m.group(1)) + 1
        else:
            logger.warning(f"Número de factura con formato inesperado: '{ultimo}'. Se reinicia la secuencia.")
    numero = f"{base}{siguiente:03d}"
    logger.debug(f"Siguiente número para {base}*: {numero}")
    return numero


def _es_numero_duplicado(e: IntegrityError) -> bool:
    texto = str(getattr(e, "orig", e)).lower()
    return "invoice_number" in texto or "uq_invoice_number_billing_type" in texto


@contextmanager
def transaccion_numerada(session: Session) -> Iterator[None]:
    """Transacción de una operación que crea una factura numerada; hace commit al salir.

    Un choque de numeración se convierte en NumeroDuplicadoError (reintentable);
    cualquier otro error hace rollback y se propaga tal cual.
    """
    try:
        yield
        session.commit()
    except IntegrityError as e:
        session.rollback()
        if _es_numero_duplicado(e):
            logger.warning(f"Número de factura duplicado: {e.orig}")
            raise NumeroDuplicadoError(str(e.orig)) from e
        raise
    except Exception:
        session.rollback()
        raise


def con_reintento_numeracion(fn: Callable[[], T], max_intentos: Optional[int] = None) -> T:
    """Ejecuta `fn` completa (calcular número + crear filas + commit) con reintentos.

    `fn` debe recalcular el número en cada intento y lanzar un ConflictoReintentable
    ante un choque (ver transaccion_numerada). Agotados los intentos -> NumeracionAgotadaError.
    """
    intentos = max_intentos or config.INVOICE_NUMBER_MAX_ATTEMPTS
    retryer = Retrying(
        stop=stop_after_attempt(intentos),
        wait=wait_exponential(multiplier=0.05, min=0, max=0.5),
        before=before_log(logger, logging.DEBUG),
        after=after_log(logger, logging.WARNING),
        retry=retry_if_exception_type(ConflictoReintentable),
    )
    try:
        return retryer(fn)
    except RetryError as e:
        logger.error(f"No se pudo asignar un número de factura único tras {intentos} intentos.")
        raise NumeracionAgotadaError(
            f"No se pudo asignar un número de factura único tras {intentos} intentos. Reintente la operación."
        ) from e.last_attempt.exception()
