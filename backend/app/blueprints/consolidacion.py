from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from backend.app.dependencias import a_http
from backend.database import get_db
from backend.errores import LedgerError
from backend.security import obtener_usuario_actual
from backend.utils import consolidador

router = APIRouter(prefix="/consolidacion", tags=["Consolidación"])


@router.get("/preview", response_model=List[Dict[str, Any]])
def preview(
    gap_minutes: Optional[int] = Query(None, ge=0, description="Huecos mayores a este umbral se convierten en pausas."),
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    return consolidador.previsualizar_consolidacion(db, usuario_id, gap_minutes)


@router.post("/ejecutar")
def ejecutar(
    gap_minutes: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    usuario_id: int = Depends(obtener_usuario_actual),
):
    try:
        return consolidador.ejecutar_consolidacion(db, usuario_id, gap_minutes)
    except LedgerError as e:
        raise a_http(e)
