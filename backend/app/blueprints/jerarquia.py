from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from backend.app.dependencias import a_http
from backend.database import get_db
from backend.errores import LedgerError
from backend.modelos import Task
from backend.security import obtener_usuario_actual
from backend.utils.tarifas import actualizar_facturabilidad, resolver_tarifa_para_tarea

router = APIRouter(prefix="/jerarquia", tags=["Jerarquía"])


class FacturabilidadPayload(BaseModel):
    is_billable: bool


@router.patch("/{nivel}/{objeto_id}/facturable")
def cambiar_facturabilidad(
    nivel: Literal["client", "project", "task"],
    objeto_id: int,
    payload: FacturabilidadPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    try:
        obj = actualizar_facturabilidad(db, usuario_id, nivel, objeto_id, payload.is_billable)
    except LedgerError as e:
        raise a_http(e)
    return {"nivel": nivel, "id": obj.id, "is_billable": obj.is_billable}


@router.get("/task/{task_id}/tarifa")
def tarifa_efectiva(task_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    """Tarifa que se congelaría si se detuviera ahora un timer sobre esta tarea."""
    task = db.get(Task, task_id)
    if task is None or task.project.client.owner_id != usuario_id:
        raise HTTPException(status_code=404, detail="Tarea no encontrada.")
    try:
        resuelta = resolver_tarifa_para_tarea(db, task_id)
    except LedgerError as e:
        raise a_http(e)
    return {"task_id": task_id, "billable": resuelta.billable, "rate": resuelta.rate}
