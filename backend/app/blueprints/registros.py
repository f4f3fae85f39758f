from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from backend.app.dependencias import a_http, obtener_cotizador
from backend.database import get_db
from backend.errores import LedgerError
from backend.modelos import TimeEntry
from backend.security import obtener_usuario_actual
from backend.utils import registros

router = APIRouter(prefix="/registros", tags=["Registros de tiempo"])


class IniciarTimerPayload(BaseModel):
    task_id: int
    description: Optional[str] = None


class EditarRegistroPayload(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    description: Optional[str] = None


class PausaPayload(BaseModel):
    start_time: datetime
    end_time: Optional[datetime] = Field(None, description="Vacío = pausa abierta")


class EditarPausaPayload(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


def registro_a_dict(entry: TimeEntry) -> Dict[str, Any]:
    data = entry.model_dump(exclude={"active_owner_id"})
    data["breaks"] = [p.model_dump(exclude={"active_entry_id"}) for p in entry.breaks]
    return data


@router.get("/activo")
def registro_activo(db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    entry = registros.obtener_registro_activo(db, usuario_id)
    return registro_a_dict(entry) if entry else None


@router.get("/sin-facturar", response_model=List[Dict[str, Any]])
def registros_sin_facturar(
    client_id: Optional[int] = None,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    return [registro_a_dict(e) for e in registros.listar_registros_sin_facturar(db, usuario_id, client_id)]


@router.post("/iniciar", status_code=status.HTTP_201_CREATED)
def iniciar(payload: IniciarTimerPayload, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        return registro_a_dict(registros.iniciar_timer(db, usuario_id, payload.task_id, payload.description))
    except LedgerError as e:
        raise a_http(e)


@router.post("/{entry_id}/detener")
def detener(
    entry_id: int,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
    cotizador=Depends(obtener_cotizador),
):
    try:
        return registro_a_dict(registros.detener_timer(db, usuario_id, entry_id, cotizador))
    except LedgerError as e:
        raise a_http(e)


@router.patch("/{entry_id}")
def editar(
    entry_id: int,
    payload: EditarRegistroPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    try:
        entry = registros.editar_horario(
            db, usuario_id, entry_id, payload.start_time, payload.end_time, payload.description
        )
        return registro_a_dict(entry)
    except LedgerError as e:
        raise a_http(e)


@router.post("/{entry_id}/recalcular")
def recalcular(entry_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        return registro_a_dict(registros.recalcular_registro(db, usuario_id, entry_id))
    except LedgerError as e:
        raise a_http(e)


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def eliminar(entry_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        registros.eliminar_registro(db, usuario_id, entry_id)
    except LedgerError as e:
        raise a_http(e)


# --- Pausas ---

@router.post("/{entry_id}/pausas/iniciar", status_code=status.HTTP_201_CREATED)
def iniciar_pausa(entry_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        pausa = registros.iniciar_pausa(db, usuario_id, entry_id)
        return pausa.model_dump(exclude={"active_entry_id"})
    except LedgerError as e:
        raise a_http(e)


@router.post("/{entry_id}/pausas/finalizar")
def finalizar_pausa(entry_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        return registro_a_dict(registros.finalizar_pausa(db, usuario_id, entry_id))
    except LedgerError as e:
        raise a_http(e)


@router.post("/{entry_id}/pausas", status_code=status.HTTP_201_CREATED)
def agregar_pausa(
    entry_id: int,
    payload: PausaPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    try:
        return registro_a_dict(registros.agregar_pausa(db, usuario_id, entry_id, payload.start_time, payload.end_time))
    except LedgerError as e:
        raise a_http(e)


@router.patch("/pausas/{break_id}")
def actualizar_pausa(
    break_id: int,
    payload: EditarPausaPayload,
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    try:
        return registro_a_dict(registros.actualizar_pausa(db, usuario_id, break_id, payload.start_time, payload.end_time))
    except LedgerError as e:
        raise a_http(e)


@router.delete("/pausas/{break_id}")
def eliminar_pausa(break_id: int, db: Session = Depends(get_db), usuario_id: int = Depends(obtener_usuario_actual)):
    try:
        return registro_a_dict(registros.eliminar_pausa(db, usuario_id, break_id))
    except LedgerError as e:
        raise a_http(e)
