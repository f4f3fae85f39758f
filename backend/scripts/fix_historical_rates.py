import os
import sys
import logging
import argparse

# Añadir el directorio raíz al path para importar módulos del backend
current_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(os.path.dirname(current_dir))
sys.path.insert(0, project_root)

from backend.database import SessionLocal
from backend.utils.cotizaciones import ProveedorCotizaciones, backfill_cotizaciones_historicas

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - [COTIZACIONES] - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Completa usd_exchange_rate en registros cerrados usando la cotización histórica del día."
    )
    parser.add_argument("--dry-run", action="store_true", help="Calcula los cambios sin guardarlos.")
    parser.add_argument("--owner-id", type=int, default=None, help="Limita el proceso a un usuario.")
    args = parser.parse_args(argv)

    proveedor = ProveedorCotizaciones()
    try:
        historial = proveedor.obtener_historial_cotizaciones()
    except Exception as e:
        logger.error(f"No se pudo descargar el historial de cotizaciones: {e}")
        return 1
    logger.info(f"Historial descargado: {len(historial)} días con cotización.")

    db = SessionLocal()
    try:
        resultado = backfill_cotizaciones_historicas(db, historial, owner_id=args.owner_id, dry_run=args.dry_run)
    finally:
        db.close()

    modo = "SIMULACIÓN" if args.dry_run else "APLICADO"
    logger.info(
        f"[{modo}] Procesados: {resultado['procesados']} | Actualizados: {resultado['actualizados']} | "
        f"Sin cotización: {resultado['sin_cotizacion']}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
