import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import requests
from sqlmodel import Session, select

from backend import config
from backend.modelos import TimeEntry

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cotizacion:
    rate: Decimal
    updated_at: Optional[datetime]
    source: str


def _parse_fecha(valor) -> Optional[datetime]:
    if not valor or not isinstance(valor, str):
        return None
    try:
        return datetime.fromisoformat(valor.replace("Z", "+00:00"))
    except ValueError:
        return None


class ProveedorCotizaciones:
    """Cliente del proveedor de cotización del Dólar Oficial (venta).

    Nunca falla hacia quien lo llama: ante cualquier error devuelve la
    cotización de respaldo configurada.
    """

    def __init__(self, url: str = None, url_historial: str = None, fallback=None, timeout: float = None):
        self.url = url or config.EXCHANGE_RATE_URL
        self.url_historial = url_historial or config.EXCHANGE_RATE_HISTORY_URL
        self.fallback = Decimal(str(fallback if fallback is not None else config.EXCHANGE_RATE_FALLBACK))
        self.timeout = timeout or config.EXCHANGE_RATE_TIMEOUT

    def obtener_cotizacion_usd(self) -> Cotizacion:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            rate = Decimal(str(data["venta"]))
            if rate <= 0:
                raise ValueError(f"cotización no positiva: {rate}")
            cotizacion = Cotizacion(
                rate=rate,
                updated_at=_parse_fecha(data.get("fechaActualizacion")),
                source=data.get("casa") or self.url,
            )
            logger.info(f"Cotización USD obtenida: {cotizacion.rate} ({cotizacion.source})")
            return cotizacion
        except (requests.exceptions.RequestException, KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.error(f"Error obteniendo cotización USD, se usa respaldo {self.fallback}: {e}")
            return Cotizacion(rate=self.fallback, updated_at=None, source="fallback")

    def obtener_historial_cotizaciones(self) -> Dict[date, Decimal]:
        """Historial completo {fecha: venta}. Este sí propaga errores: es una tarea de mantenimiento."""
        response = requests.get(self.url_historial, timeout=self.timeout)
        response.raise_for_status()
        historial = {}
        for item in response.json():
            try:
                historial[date.fromisoformat(item["fecha"])] = Decimal(str(item["venta"]))
            except (KeyError, TypeError, ValueError, InvalidOperation):
                logger.warning(f"Cotización histórica ignorada por formato inválido: {item}")
        logger.info(f"Historial de cotizaciones descargado: {len(historial)} fechas")
        return historial


def backfill_cotizaciones_historicas(
    session: Session,
    historial: Dict[date, Decimal],
    owner_id: Optional[int] = None,
    dry_run: bool = False,
) -> Dict[str, int]:
    """Normaliza usd_exchange_rate de cada registro con la cotización oficial del día de inicio.

    Solo metadata: amount no se toca.
    """
    stmt = select(TimeEntry).order_by(TimeEntry.start_time)
    if owner_id is not None:
        stmt = stmt.where(TimeEntry.owner_id == owner_id)
    entries = session.exec(stmt).all()

    actualizados = 0
    sin_cotizacion = 0
    for entry in entries:
        valor = historial.get(entry.start_time.date())
        if valor is None:
            sin_cotizacion += 1
            logger.warning(f"No se encontró cotización para la fecha {entry.start_time.date()} (registro {entry.id})")
            continue
        if not dry_run:
            entry.usd_exchange_rate = valor
            session.add(entry)
        actualizados += 1

    if dry_run:
        session.rollback()
    else:
        session.commit()
    logger.info(f"Backfill de cotizaciones {'(dry-run) ' if dry_run else ''}finalizado: {actualizados} registros, {sin_cotizacion} sin cotización")
    return {"procesados": len(entries), "actualizados": actualizados, "sin_cotizacion": sin_cotizacion}
