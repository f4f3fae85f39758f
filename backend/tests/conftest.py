import os, sys, pathlib
from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

# Asegurar que el root del repo esté en sys.path para importar 'backend'
ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("API_PREFIX", "")

from backend.app.dependencias import obtener_cliente_afip, obtener_cotizador  # noqa: E402
from backend.database import create_db_and_tables, crear_engine, get_db  # noqa: E402
from backend.main import app  # noqa: E402
from backend.modelos import Client, Project, Task, TimeEntry, TimeEntryBreak  # noqa: E402
from backend.utils.afipTools import RespuestaAutorizacion  # noqa: E402
from backend.utils.cotizaciones import Cotizacion  # noqa: E402
from backend.utils.registros import recomputar  # noqa: E402

OWNER_ID = 1


class FakeCotizador:
    def __init__(self, rate="1000"):
        self.rate = Decimal(rate)
        self.llamadas = 0

    def obtener_cotizacion_usd(self):
        self.llamadas += 1
        return Cotizacion(rate=self.rate, updated_at=None, source="test")


class FakeAfip:
    """Doble del microservicio: recuerda lo que recibe y puede fallar a pedido."""
    cuit_emisor = "20123456789"

    def __init__(self, ultimo=0, error=None, error_en="autorizar"):
        self.ultimo = ultimo
        self.error = error
        self.error_en = error_en
        self.solicitudes = []

    def get_last_voucher_number(self, punto_venta, tipo):
        if self.error and self.error_en == "ultimo":
            raise self.error
        return self.ultimo

    def authorize_voucher(self, solicitud):
        self.solicitudes.append(solicitud)
        if self.error and self.error_en == "autorizar":
            raise self.error
        self.ultimo = solicitud.numero
        return RespuestaAutorizacion(
            cae=f"7512345678{solicitud.numero:04d}",
            cae_vencimiento=date(2030, 1, 10),
            raw={"resultado": "A"},
        )


@pytest.fixture
def engine():
    eng = crear_engine("sqlite:///:memory:")
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def jerarquia(session):
    client = Client(owner_id=OWNER_ID, name="Acme", tax_id="30-71234567-8", currency="USD", default_rate=Decimal("80"))
    project = Project(client=client, name="Portal", rate=Decimal("50"))
    task = Task(project=project, name="Backend", rate=Decimal("0"))
    session.add_all([client, project, task])
    session.commit()
    for obj in (client, project, task):
        session.refresh(obj)
    return SimpleNamespace(client=client, project=project, task=task)


@pytest.fixture
def nuevo_registro(session, jerarquia):
    """Crea un registro cerrado directamente en la base, con la tarifa ya congelada."""
    def _crear(inicio: datetime, fin: datetime, task=None, rate="50", usd=None, pausas=(), description=None, billable=True):
        entry = TimeEntry(
            owner_id=OWNER_ID,
            task_id=(task or jerarquia.task).id,
            start_time=inicio,
            end_time=fin,
            description=description,
            billable=billable,
            rate_applied=Decimal(rate),
            usd_exchange_rate=Decimal(usd) if usd is not None else None,
        )
        for p_inicio, p_fin in pausas:
            entry.breaks.append(TimeEntryBreak(start_time=p_inicio, end_time=p_fin))
        recomputar(entry)
        session.add(entry)
        session.commit()
        session.refresh(entry)
        return entry
    return _crear


@pytest.fixture
def cotizador():
    return FakeCotizador()


@pytest.fixture
def afip():
    return FakeAfip()


@pytest.fixture
def nuevo_afip():
    return FakeAfip


@pytest.fixture
def client(session, cotizador, afip):
    app.dependency_overrides[get_db] = lambda: session
    app.dependency_overrides[obtener_cotizador] = lambda: cotizador
    app.dependency_overrides[obtener_cliente_afip] = lambda: afip
    with TestClient(app, headers={"X-Usuario-Id": str(OWNER_ID)}) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def base_compartida(tmp_path):
    """SQLite en archivo para abrir varias sesiones concurrentes sobre los mismos datos."""
    eng = crear_engine(f"sqlite:///{tmp_path / 'compartida.db'}")
    create_db_and_tables(eng)
    with Session(eng) as s:
        client = Client(owner_id=OWNER_ID, name="Acme", currency="USD")
        task = Task(project=Project(client=client, name="Portal", rate=Decimal("50")), name="Backend")
        s.add_all([client, task])
        s.commit()
        ids = SimpleNamespace(client_id=client.id, task_id=task.id)

    def registro(inicio: datetime, fin: datetime) -> int:
        with Session(eng) as s:
            entry = TimeEntry(owner_id=OWNER_ID, task_id=ids.task_id, start_time=inicio, end_time=fin, rate_applied=Decimal("50"))
            recomputar(entry)
            s.add(entry)
            s.commit()
            return entry.id

    yield SimpleNamespace(engine=eng, client_id=ids.client_id, task_id=ids.task_id, registro=registro)
    eng.dispose()
