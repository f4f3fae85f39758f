from datetime import datetime
from typing import Iterable, Optional, Protocol, Tuple


class _Intervalo(Protocol):
    start_time: datetime
    end_time: Optional[datetime]


def _minutos(inicio: datetime, fin: datetime) -> int:
    return int((fin - inicio).total_seconds() // 60)


def calcular_duraciones(
    start_time: datetime,
    end_time: Optional[datetime],
    breaks: Iterable[_Intervalo],
) -> Tuple[int, int]:
    """Devuelve (bruto, neto) en minutos enteros.

    - bruto = fin - inicio (0 si el registro sigue activo)
    - pausas = suma de (fin - inicio) de las pausas CERRADAS; una pausa abierta
      no descuenta nada hasta que se cierra
    - neto = max(0, bruto - pausas)
    """
    if end_time is None:
        return 0, 0

    bruto = _minutos(start_time, end_time)
    segundos_pausa = sum(
        (b.end_time - b.start_time).total_seconds()
        for b in breaks
        if b.end_time is not None
    )
    minutos_pausa = int(segundos_pausa // 60)
    neto = max(0, bruto - minutos_pausa)
    return bruto, neto


def aplicar_duraciones(entry) -> None:
    """Escribe duration_total / duration_neto en el registro.

    No toca rate_applied ni amount: eso lo hace montos.aplicar_monto, siempre después.
    """
    entry.duration_total, entry.duration_neto = calcular_duraciones(
        entry.start_time, entry.end_time, entry.breaks
    )
