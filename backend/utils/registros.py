import logging
from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from backend.errores import ConflictoError, NoEncontradoError, ValidacionError
from backend.modelos import Project, Task, TimeEntry, TimeEntryBreak, a_utc, ahora
from backend.utils.cotizaciones import Cotizacion
from backend.utils.duraciones import aplicar_duraciones
from backend.utils.montos import aplicar_monto
from backend.utils.tarifas import resolver_tarifa_para_tarea

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


class Cotizador(Protocol):
    def obtener_cotizacion_usd(self) -> Cotizacion: ...


# ==============================================================================
# Helpers
# ==============================================================================

def _registro_propio(session: Session, owner_id: int, entry_id: int) -> TimeEntry:
    entry = session.get(TimeEntry, entry_id)
    if entry is None or entry.owner_id != owner_id:
        raise NoEncontradoError("Time entry no encontrado.")
    return entry


def _pausa_propia(session: Session, owner_id: int, break_id: int) -> TimeEntryBreak:
    pausa = session.get(TimeEntryBreak, break_id)
    if pausa is None or pausa.time_entry.owner_id != owner_id:
        raise NoEncontradoError("Pausa no encontrada.")
    return pausa


def _validar_intervalo(inicio: datetime, fin: Optional[datetime], que: str = "registro") -> None:
    if fin is not None and fin < inicio:
        raise ValidacionError(f"El fin del {que} no puede ser anterior a su inicio.")


def _validar_pausa_dentro(
    entry: TimeEntry,
    inicio: datetime,
    fin: Optional[datetime],
    desde: Optional[datetime] = None,
    hasta: Optional[datetime] = None,
) -> None:
    """`desde`/`hasta` reemplazan los límites del registro cuando se están editando."""
    desde = desde or entry.start_time
    hasta = hasta or entry.end_time
    _validar_intervalo(inicio, fin, "intervalo de pausa")
    if inicio < desde:
        raise ValidacionError("La pausa no puede comenzar antes del inicio del registro.")
    if hasta is not None and (fin or inicio) > hasta:
        raise ValidacionError("La pausa no puede terminar después del fin del registro.")


def _no_facturado(entry: TimeEntry, accion: str) -> None:
    if entry.is_billed:
        raise ConflictoError(f"No se puede {accion} un registro ya facturado (factura {entry.invoice_id}).")


def recomputar(entry: TimeEntry) -> None:
    """Duraciones primero, monto después. Nunca re-resuelve la tarifa."""
    aplicar_duraciones(entry)
    aplicar_monto(entry)
    entry.updated_at = ahora()


def _commit(session: Session, mensaje_conflicto: str) -> None:
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Conflicto de integridad: {e.orig}")
        raise ConflictoError(mensaje_conflicto) from e


# ==============================================================================
# Timer
# ==============================================================================

def obtener_registro_activo(session: Session, owner_id: int) -> Optional[TimeEntry]:
    return session.exec(
        select(TimeEntry).where(TimeEntry.owner_id == owner_id, col(TimeEntry.end_time).is_(None))
    ).first()


def iniciar_timer(
    session: Session,
    owner_id: int,
    task_id: int,
    description: Optional[str] = None,
    start_time: Optional[datetime] = None,
) -> TimeEntry:
    task = session.get(Task, task_id)
    if task is None or task.project.client.owner_id != owner_id:
        raise NoEncontradoError("Tarea no encontrada.")

    if obtener_registro_activo(session, owner_id) is not None:
        logger.warning(f"Usuario {owner_id} intentó iniciar un timer con otro activo")
        raise ConflictoError("Ya tienes un timer activo. Deténlo antes de iniciar uno nuevo.")

    entry = TimeEntry(
        owner_id=owner_id,
        active_owner_id=owner_id,
        task_id=task_id,
        description=description or None,
        start_time=a_utc(start_time) or ahora(),
    )
    session.add(entry)
    # La restricción única sobre active_owner_id cubre la carrera entre dos inicios simultáneos
    _commit(session, "Ya tienes un timer activo. Deténlo antes de iniciar uno nuevo.")
    session.refresh(entry)
    logger.info(f"Timer iniciado: registro {entry.id} (usuario {owner_id}, tarea {task_id})")
    return entry


def detener_timer(
    session: Session,
    owner_id: int,
    entry_id: int,
    cotizador: Optional[Cotizador] = None,
    end_time: Optional[datetime] = None,
) -> TimeEntry:
    """Cierra el registro: duraciones, tarifa congelada, monto y cotización USD, en un solo commit."""
    entry = _registro_propio(session, owner_id, entry_id)
    if entry.end_time is not None:
        raise ConflictoError("Este timer ya está detenido.")

    fin = a_utc(end_time) or ahora()
    _validar_intervalo(entry.start_time, fin)

    # La llamada externa va antes de tocar el registro
    cotizacion = cotizador.obtener_cotizacion_usd() if cotizador else None

    for pausa in entry.breaks:
        if pausa.end_time is None:
            pausa.end_time = max(fin, pausa.start_time)
            pausa.active_entry_id = None
            session.add(pausa)

    tarifa = resolver_tarifa_para_tarea(session, entry.task_id)
    entry.end_time = fin
    entry.active_owner_id = None
    entry.billable = tarifa.billable
    entry.rate_applied = tarifa.rate
    if cotizacion is not None:
        entry.usd_exchange_rate = cotizacion.rate
    recomputar(entry)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(
        f"Timer detenido: registro {entry.id} neto={entry.duration_neto}min "
        f"rate={entry.rate_applied} amount={entry.amount} usd={entry.usd_exchange_rate}"
    )
    return entry


def editar_horario(
    session: Session,
    owner_id: int,
    entry_id: int,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    description: Optional[str] = None,
) -> TimeEntry:
    entry = _registro_propio(session, owner_id, entry_id)
    _no_facturado(entry, "editar")
    if entry.end_time is None and end_time is not None:
        raise ValidacionError("Un timer activo se cierra deteniéndolo, no editando su horario.")

    nuevo_inicio = a_utc(start_time) or entry.start_time
    nuevo_fin = a_utc(end_time) or entry.end_time
    _validar_intervalo(nuevo_inicio, nuevo_fin)
    for pausa in entry.breaks:
        _validar_pausa_dentro(entry, pausa.start_time, pausa.end_time, desde=nuevo_inicio, hasta=nuevo_fin)

    entry.start_time = nuevo_inicio
    entry.end_time = nuevo_fin
    if description is not None:
        entry.description = description or None
    recomputar(entry)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(f"Horario editado: registro {entry.id} {entry.start_time} -> {entry.end_time}")
    return entry


def recalcular_registro(session: Session, owner_id: int, entry_id: int) -> TimeEntry:
    """Único camino que re-resuelve la tarifa de un registro ya cerrado."""
    entry = _registro_propio(session, owner_id, entry_id)
    _no_facturado(entry, "recalcular")
    if entry.end_time is None:
        raise ValidacionError("No se puede recalcular un registro activo. Detenga el timer primero.")

    tarifa = resolver_tarifa_para_tarea(session, entry.task_id)
    anterior = (entry.rate_applied, entry.amount)
    entry.billable = tarifa.billable
    entry.rate_applied = tarifa.rate
    recomputar(entry)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(f"Registro {entry.id} recalculado: (rate, amount) {anterior} -> ({entry.rate_applied}, {entry.amount})")
    return entry


def eliminar_registro(session: Session, owner_id: int, entry_id: int) -> None:
    entry = _registro_propio(session, owner_id, entry_id)
    _no_facturado(entry, "eliminar")
    session.delete(entry)
    session.commit()
    logger.info(f"Registro {entry_id} eliminado (usuario {owner_id})")


def listar_registros_sin_facturar(
    session: Session,
    owner_id: int,
    client_id: Optional[int] = None,
) -> List[TimeEntry]:
    stmt = (
        select(TimeEntry)
        .join(Task, Task.id == TimeEntry.task_id)
        .join(Project, Project.id == Task.project_id)
        .where(
            TimeEntry.owner_id == owner_id,
            TimeEntry.is_billed == False,  # noqa: E712
            TimeEntry.billable == True,  # noqa: E712
            col(TimeEntry.end_time).is_not(None),
        )
        .order_by(TimeEntry.start_time)
    )
    if client_id is not None:
        stmt = stmt.where(Project.client_id == client_id)
    return list(session.exec(stmt).all())


# ==============================================================================
# Pausas
# ==============================================================================

def iniciar_pausa(session: Session, owner_id: int, entry_id: int, start_time: Optional[datetime] = None) -> TimeEntryBreak:
    entry = _registro_propio(session, owner_id, entry_id)
    if entry.end_time is not None:
        raise ValidacionError("Solo se puede pausar un timer activo.")
    if any(p.end_time is None for p in entry.breaks):
        raise ConflictoError("El registro ya tiene una pausa activa.")

    inicio = a_utc(start_time) or ahora()
    _validar_pausa_dentro(entry, inicio, None)
    pausa = TimeEntryBreak(time_entry_id=entry.id, start_time=inicio, active_entry_id=entry.id)
    session.add(pausa)
    _commit(session, "El registro ya tiene una pausa activa.")
    session.refresh(pausa)
    logger.info(f"Pausa {pausa.id} iniciada en registro {entry.id}")
    return pausa


def finalizar_pausa(session: Session, owner_id: int, entry_id: int, end_time: Optional[datetime] = None) -> TimeEntry:
    entry = _registro_propio(session, owner_id, entry_id)
    pausa = next((p for p in entry.breaks if p.end_time is None), None)
    if pausa is None:
        raise ValidacionError("El registro no tiene una pausa activa.")

    fin = a_utc(end_time) or ahora()
    _validar_pausa_dentro(entry, pausa.start_time, fin)
    pausa.end_time = fin
    pausa.active_entry_id = None
    session.add(pausa)
    recomputar(entry)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(f"Pausa {pausa.id} finalizada en registro {entry.id}; neto={entry.duration_neto}min")
    return entry


def agregar_pausa(
    session: Session,
    owner_id: int,
    entry_id: int,
    start_time: datetime,
    end_time: Optional[datetime] = None,
) -> TimeEntry:
    entry = _registro_propio(session, owner_id, entry_id)
    _no_facturado(entry, "modificar")
    start_time, end_time = a_utc(start_time), a_utc(end_time)
    _validar_pausa_dentro(entry, start_time, end_time)
    if end_time is None and any(p.end_time is None for p in entry.breaks):
        raise ConflictoError("El registro ya tiene una pausa activa.")

    pausa = TimeEntryBreak(
        start_time=start_time,
        end_time=end_time,
        active_entry_id=entry.id if end_time is None else None,
    )
    entry.breaks.append(pausa)
    recomputar(entry)
    session.add(entry)
    _commit(session, "El registro ya tiene una pausa activa.")
    session.refresh(entry)
    logger.info(f"Pausa agregada a registro {entry.id}; neto={entry.duration_neto}min")
    return entry


def actualizar_pausa(
    session: Session,
    owner_id: int,
    break_id: int,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> TimeEntry:
    pausa = _pausa_propia(session, owner_id, break_id)
    entry = pausa.time_entry
    _no_facturado(entry, "modificar")

    inicio = a_utc(start_time) or pausa.start_time
    fin = a_utc(end_time) or pausa.end_time
    _validar_pausa_dentro(entry, inicio, fin)
    pausa.start_time = inicio
    pausa.end_time = fin
    pausa.active_entry_id = entry.id if fin is None else None
    session.add(pausa)
    recomputar(entry)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(f"Pausa {break_id} actualizada; registro {entry.id} neto={entry.duration_neto}min")
    return entry


def eliminar_pausa(session: Session, owner_id: int, break_id: int) -> TimeEntry:
    pausa = _pausa_propia(session, owner_id, break_id)
    entry = pausa.time_entry
    _no_facturado(entry, "modificar")

    entry.breaks.remove(pausa)
    recomputar(entry)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(f"Pausa {break_id} eliminada; registro {entry.id} neto={entry.duration_neto}min")
    return entry
