import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlmodel import Session

from backend.errores import NoEncontradoError, ValidacionError
from backend.modelos import Client, Project, Task

logger = logging.getLogger(__name__)

CERO = Decimal("0")


@dataclass(frozen=True)
class JerarquiaTarifa:
    """Foto de la jerarquía tarea -> proyecto -> cliente para resolver la tarifa."""
    task_billable: bool
    project_billable: bool
    client_billable: bool
    task_rate: Optional[Decimal] = None
    project_rate: Optional[Decimal] = None
    client_default_rate: Optional[Decimal] = None
    client_id: Optional[int] = None
    client_currency: str = "USD"


@dataclass(frozen=True)
class TarifaResuelta:
    billable: bool
    rate: Decimal


def _a_decimal(valor) -> Optional[Decimal]:
    if valor is None:
        return None
    return valor if isinstance(valor, Decimal) else Decimal(str(valor))


def resolver_tarifa(jerarquia: JerarquiaTarifa) -> TarifaResuelta:
    """Cascada de tarifas: tarea > proyecto > cliente > 0.

    La facturabilidad es un AND estricto sobre los tres niveles y tiene prioridad
    sobre cualquier tarifa numérica configurada.
    """
    billable = jerarquia.task_billable and jerarquia.project_billable and jerarquia.client_billable
    if not billable:
        return TarifaResuelta(billable=False, rate=CERO)

    for candidata in (jerarquia.task_rate, jerarquia.project_rate, jerarquia.client_default_rate):
        valor = _a_decimal(candidata)
        if valor:
            return TarifaResuelta(billable=True, rate=valor)
    return TarifaResuelta(billable=True, rate=CERO)


def cargar_jerarquia(session: Session, task_id: int) -> JerarquiaTarifa:
    task = session.get(Task, task_id)
    if task is None:
        raise NoEncontradoError(f"Tarea {task_id} no encontrada.")
    project = task.project
    client = project.client
    return JerarquiaTarifa(
        task_billable=task.is_billable,
        project_billable=project.is_billable,
        client_billable=client.is_billable,
        task_rate=task.rate,
        project_rate=project.rate,
        client_default_rate=client.default_rate,
        client_id=client.id,
        client_currency=client.currency,
    )


def resolver_tarifa_para_tarea(session: Session, task_id: int) -> TarifaResuelta:
    resuelta = resolver_tarifa(cargar_jerarquia(session, task_id))
    logger.debug(f"Tarifa resuelta para tarea {task_id}: billable={resuelta.billable} rate={resuelta.rate}")
    return resuelta


# ==============================================================================
# Facturabilidad de la jerarquía
# ==============================================================================
NIVELES = ("client", "project", "task")


def actualizar_facturabilidad(session: Session, owner_id: int, nivel: str, objeto_id: int, valor: bool):
    """Cambia is_billable en un cliente, proyecto o tarea.

    Habilitar la facturabilidad bajo un padre no facturable se rechaza: el AND de
    la cascada la anularía igual y el usuario vería un flag engañoso.
    """
    if nivel not in NIVELES:
        raise ValidacionError(f"Nivel '{nivel}' inválido. Debe ser uno de: {', '.join(NIVELES)}")

    modelo = {"client": Client, "project": Project, "task": Task}[nivel]
    obj = session.get(modelo, objeto_id)
    if obj is None:
        raise NoEncontradoError(f"{nivel} {objeto_id} no encontrado.")

    client = obj if nivel == "client" else (obj.client if nivel == "project" else obj.project.client)
    if client.owner_id != owner_id:
        raise NoEncontradoError(f"{nivel} {objeto_id} no encontrado.")

    if valor:
        if nivel == "project" and not obj.client.is_billable:
            raise ValidacionError(
                f"No se puede marcar como facturable el proyecto '{obj.name}': el cliente '{obj.client.name}' no es facturable."
            )
        if nivel == "task":
            if not obj.project.is_billable:
                raise ValidacionError(
                    f"No se puede marcar como facturable la tarea '{obj.name}': el proyecto '{obj.project.name}' no es facturable."
                )
            if not obj.project.client.is_billable:
                raise ValidacionError(
                    f"No se puede marcar como facturable la tarea '{obj.name}': el cliente '{obj.project.client.name}' no es facturable."
                )

    obj.is_billable = valor
    session.add(obj)
    session.commit()
    session.refresh(obj)
    logger.info(f"Facturabilidad actualizada: {nivel} {objeto_id} -> {valor}")
    return obj
