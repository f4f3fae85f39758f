import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from backend import config
from backend.database import create_db_and_tables, engine
from backend.app.blueprints import afip, consolidacion, facturas, jerarquia, registros

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(
    title="API Horas y Facturación",
    description="Registro de horas, consolidación, facturación y autorización fiscal (AFIP)",
    version="1.0.0"
)
# --- Configuración de CORS ---
origins = [
    # Orígenes para desarrollo local
    "http://localhost",
    "http://localhost:3000",
    "https://localhost:3000",
]


def _mount(router):
    # Si se define un prefijo global (ej /api) y el router no lo tiene ya, se compone el prefijo
    if config.API_PREFIX and not router.prefix.startswith(config.API_PREFIX):
        app.include_router(router, prefix=config.API_PREFIX)
    else:
        app.include_router(router)


_mount(registros.router)
_mount(facturas.router)
_mount(afip.router)
_mount(consolidacion.router)
_mount(jerarquia.router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Verificación Inicial ---
@app.on_event("startup")
def startup_event():
    """
    Se ejecuta una sola vez al iniciar la API: crea las tablas que falten
    (no hay migraciones) y deja registradas las rutas montadas.
    """
    logger.info("--- Evento de Inicio de la API ---")
    logger.info(f"Base de datos destino: {config.DATABASE_URL.split('@')[-1]}")
    create_db_and_tables()
    for r in app.router.routes:
        methods = ",".join(sorted(getattr(r, 'methods', None) or []))
        logger.debug(f"{methods:15} {getattr(r, 'path', '')}")


@app.get("/healthz", tags=["infra"], summary="Health check básico")
def healthz():
    """Estado básico del servicio para monitoreo / load balancers.

    - status: siempre 'ok' si entra al handler
    - database: true/false según un SELECT 1
    - afip_configurado: hay CUIT y certificado en el entorno
    """
    db_ok = False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.error(f"Health check: la base de datos no responde: {e}")

    return {
        "status": "ok",
        "version": app.version,
        "database": db_ok,
        "afip_configurado": bool(config.AFIP_CUIT and config.AFIP_CERT_B64 and config.AFIP_KEY_B64),
    }
