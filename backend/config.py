import logging
import os
from dotenv import load_dotenv, find_dotenv
from pathlib import Path

logger = logging.getLogger(__name__)

# --- Carga de .env ---
# 1) DOTENV_PATH explícito, 2) find_dotenv(), 3) .env en la raíz del repo
dotenv_path = os.getenv('DOTENV_PATH')
if dotenv_path and Path(dotenv_path).exists():
    load_dotenv(dotenv_path=dotenv_path)
    logger.debug(f"CFG: Cargando .env desde DOTENV_PATH: '{dotenv_path}'")
else:
    found = find_dotenv(usecwd=True)
    if found:
        load_dotenv(found)
        dotenv_path = found
        logger.debug(f"CFG: find_dotenv() encontró: '{dotenv_path}'")
    else:
        candidate = Path(__file__).resolve().parents[1] / '.env'
        if candidate.exists():
            load_dotenv(dotenv_path=str(candidate))
            dotenv_path = str(candidate)
            logger.debug(f"CFG: Cargando .env desde candidato relativo: '{dotenv_path}'")
        else:
            dotenv_path = None
# --- Fin Carga .env ---


def _parse_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "t", "yes", "y", "on")


def _get(val: str, default: str | None = None) -> str | None:
    v = os.getenv(val)
    if v is None:
        return default
    v = v.strip()
    return v or default


# ===================== BASE DE DATOS =====================
DB_HOST = _get("DB_HOST")
DB_USER = _get("DB_USER")
DB_PASSWORD = _get("DB_PASSWORD")
DB_NAME = _get("DB_NAME")
DB_PORT = _get("DB_PORT", "3306")

if DB_HOST and DB_USER and DB_NAME:
    # Si DB_PASSWORD es None o vacío, la URL no debe tener ":None@"
    pwd_part = f":{DB_PASSWORD}" if DB_PASSWORD else ""
    DATABASE_URL = f"mysql+pymysql://{DB_USER}{pwd_part}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
elif _get("SQLITE_DB_PATH"):
    DATABASE_URL = f"sqlite:///{_get('SQLITE_DB_PATH')}"
else:
    # Fallback para que no rompan las importaciones si no hay DB configurada
    DATABASE_URL = "sqlite:///:memory:"

DB_ECHO = _parse_bool(os.getenv("DB_ECHO"), False)

# ===================== COTIZACIONES =====================
EXCHANGE_RATE_URL: str = _get("EXCHANGE_RATE_URL", "https://dolarapi.com/v1/dolares/oficial")
EXCHANGE_RATE_HISTORY_URL: str = _get(
    "EXCHANGE_RATE_HISTORY_URL", "https://api.argentinadatos.com/v1/cotizaciones/dolares/oficial"
)
EXCHANGE_RATE_FALLBACK: str = _get("EXCHANGE_RATE_FALLBACK", "1050")
EXCHANGE_RATE_TIMEOUT = float(_get("EXCHANGE_RATE_TIMEOUT", "10"))

# ===================== FACTURADOR (AFIP) =====================
# URL del microservicio de facturación
FACTURACION_API_URL: str = _get("FACTURACION_API_URL", "http://localhost:8002/afipws/facturador")
AFIP_CUIT: str | None = _get("AFIP_CUIT")
# Certificado y clave en Base64 (compatibles con entornos serverless)
AFIP_CERT_B64: str | None = _get("AFIP_CERT_B64")
AFIP_KEY_B64: str | None = _get("AFIP_KEY_B64")
AFIP_PRODUCTION = _parse_bool(os.getenv("AFIP_PRODUCTION"), False)
AFIP_TIMEOUT = float(_get("AFIP_TIMEOUT", "40"))

# En producción se usa punto de venta 3
PUNTO_VENTA = int(_get("PUNTO_VENTA", "3"))
# 11 = Factura C
AFIP_CBTE_TIPO_DEFAULT = int(_get("AFIP_CBTE_TIPO_DEFAULT", "11"))

# ===================== NUMERACIÓN DE FACTURAS =====================
INVOICE_PREFIX_LEGAL: str = _get("INVOICE_PREFIX_LEGAL", "INV")
INVOICE_PREFIX_INTERNAL: str = _get("INVOICE_PREFIX_INTERNAL", "INT")
INVOICE_PREFIX_CREDIT_NOTE: str = _get("INVOICE_PREFIX_CREDIT_NOTE", "NC")
INVOICE_NUMBER_MAX_ATTEMPTS = int(_get("INVOICE_NUMBER_MAX_ATTEMPTS", "3"))

# ===================== CONSOLIDACIÓN =====================
CONSOLIDATION_GAP_MINUTES = int(_get("CONSOLIDATION_GAP_MINUTES", "1"))

# ===================== API =====================
API_PREFIX = _get('API_PREFIX', '')

if AFIP_CERT_B64 or AFIP_KEY_B64:
    logger.debug(f"CFG: credenciales AFIP presentes en entorno (cuit={AFIP_CUIT}, produccion={AFIP_PRODUCTION})")
logger.debug(f"CFG: Configuración cargada. DATABASE_URL destino: {DATABASE_URL.split('@')[-1]}")
