"""
Consolidación de registros fragmentados.

Agrupa los registros cerrados de un usuario por (día de inicio, cliente) y
reemplaza cada grupo de más de un registro por un único registro maestro:
los huecos entre fragmentos se convierten en pausas y las pausas propias de
cada fragmento se conservan. La tarifa, la facturabilidad, la tarea y la
cotización USD salen del primer fragmento; la tarifa NO se vuelve a resolver.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlmodel import Session, col, select

from backend import config
from backend.modelos import Client, TimeEntry, TimeEntryBreak
from backend.utils.duraciones import calcular_duraciones
from backend.utils.registros import recomputar

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

Intervalo = Tuple[datetime, Optional[datetime]]


@dataclass
class PlanGrupo:
    dia: date
    client: Client
    fragmentos: List[TimeEntry]
    start_time: datetime
    end_time: datetime
    pausas_heredadas: List[Intervalo] = field(default_factory=list)
    pausas_sinteticas: List[Intervalo] = field(default_factory=list)

    @property
    def todas_las_pausas(self) -> List[Intervalo]:
        return sorted(self.pausas_heredadas + self.pausas_sinteticas, key=lambda p: p[0])

    @property
    def duracion_neta(self) -> int:
        pausas = [_Pausa(inicio, fin) for inicio, fin in self.todas_las_pausas]
        return calcular_duraciones(self.start_time, self.end_time, pausas)[1]

    def como_preview(self) -> Dict:
        return {
            "date": self.dia.isoformat(),
            "clientName": self.client.name,
            "originalCount": len(self.fragmentos),
            "newBreaksCount": len(self.pausas_sinteticas),
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "totalDuration": self.duracion_neta,
        }


@dataclass(frozen=True)
class _Pausa:
    start_time: datetime
    end_time: Optional[datetime]


def _umbral(gap_minutes: Optional[int]) -> timedelta:
    return timedelta(minutes=config.CONSOLIDATION_GAP_MINUTES if gap_minutes is None else gap_minutes)


def planificar_grupos(session: Session, owner_id: int, gap_minutes: Optional[int] = None) -> List[PlanGrupo]:
    """Calcula los grupos a consolidar sin modificar nada."""
    umbral = _umbral(gap_minutes)
    entries = session.exec(
        select(TimeEntry)
        .where(TimeEntry.owner_id == owner_id, col(TimeEntry.end_time).is_not(None))
        .order_by(TimeEntry.start_time, TimeEntry.id)
    ).all()

    grupos: Dict[Tuple[date, int], List[TimeEntry]] = defaultdict(list)
    for entry in entries:
        client = entry.task.project.client
        grupos[(entry.start_time.date(), client.id)].append(entry)

    planes = []
    for (dia, _), fragmentos in sorted(grupos.items(), key=lambda kv: (kv[0][0], kv[0][1])):
        if len(fragmentos) < 2:
            continue
        plan = PlanGrupo(
            dia=dia,
            client=fragmentos[0].task.project.client,
            fragmentos=fragmentos,
            start_time=fragmentos[0].start_time,
            end_time=max(f.end_time for f in fragmentos),
        )
        fin_previo = None
        for frag in fragmentos:
            plan.pausas_heredadas.extend((p.start_time, p.end_time) for p in frag.breaks)
            if fin_previo is not None and frag.start_time - fin_previo > umbral:
                plan.pausas_sinteticas.append((fin_previo, frag.start_time))
            fin_previo = frag.end_time if fin_previo is None else max(fin_previo, frag.end_time)
        planes.append(plan)
    return planes


def previsualizar_consolidacion(session: Session, owner_id: int, gap_minutes: Optional[int] = None) -> List[Dict]:
    planes = planificar_grupos(session, owner_id, gap_minutes)
    logger.info(f"Preview de consolidación para usuario {owner_id}: {len(planes)} grupos")
    return [p.como_preview() for p in planes]


def _consolidar_grupo(session: Session, owner_id: int, plan: PlanGrupo) -> TimeEntry:
    primero = plan.fragmentos[0]
    facturados = [f for f in plan.fragmentos if f.is_billed]
    if facturados and len(facturados) < len(plan.fragmentos):
        logger.warning(
            f"Grupo {plan.dia} / {plan.client.name}: se mezclan {len(facturados)} registros facturados con "
            f"{len(plan.fragmentos) - len(facturados)} sin facturar; el maestro quedará facturado."
        )

    descripciones = []
    for f in plan.fragmentos:
        if f.description and f.description not in descripciones:
            descripciones.append(f.description)

    master = TimeEntry(
        owner_id=owner_id,
        task_id=primero.task_id,
        start_time=plan.start_time,
        end_time=plan.end_time,
        description="; ".join(descripciones) or None,
        billable=primero.billable,
        rate_applied=primero.rate_applied,
        usd_exchange_rate=primero.usd_exchange_rate,
        is_billed=bool(facturados),
        invoice_id=facturados[0].invoice_id if facturados else None,
    )
    for inicio, fin in plan.todas_las_pausas:
        master.breaks.append(TimeEntryBreak(start_time=inicio, end_time=fin))
    recomputar(master)
    session.add(master)
    session.flush()

    # Un solo ítem de factura queda apuntando al maestro
    relinkeado = False
    for frag in facturados:
        for item in list(frag.invoice_items):
            if not relinkeado:
                item.time_entry = master
                relinkeado = True
            else:
                item.time_entry = None
            session.add(item)

    for frag in plan.fragmentos:
        session.delete(frag)
    return master


def ejecutar_consolidacion(session: Session, owner_id: int, gap_minutes: Optional[int] = None) -> Dict[str, int]:
    """Una transacción por grupo: si un grupo falla, los ya consolidados quedan firmes."""
    planes = planificar_grupos(session, owner_id, gap_minutes)
    resultado = {"consolidated": 0, "removed": 0, "breaksCreated": 0}

    for plan in planes:
        try:
            master = _consolidar_grupo(session, owner_id, plan)
            session.commit()
        except Exception:
            session.rollback()
            logger.error(f"Error consolidando grupo {plan.dia} / {plan.client.name}", exc_info=True)
            raise
        resultado["consolidated"] += 1
        resultado["removed"] += len(plan.fragmentos)
        resultado["breaksCreated"] += len(plan.pausas_sinteticas)
        logger.info(
            f"Grupo {plan.dia} / {plan.client.name} consolidado en registro {master.id}: "
            f"{len(plan.fragmentos)} fragmentos, {len(plan.pausas_sinteticas)} pausas nuevas, neto={master.duration_neto}min"
        )

    logger.info(f"Consolidación finalizada para usuario {owner_id}: {resultado}")
    return resultado
