from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from backend.errores import ValidacionError
from backend.modelos import EstrategiaMoneda

CERO = Decimal("0")
MONEDA_LOCAL = "ARS"


def centavos(valor: Decimal) -> Decimal:
    return Decimal(valor).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def horas(minutos: int) -> Decimal:
    return (Decimal(minutos) / Decimal(60)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def calcular_monto(billable: bool, minutos_netos: int, tarifa: Optional[Decimal]) -> Decimal:
    """amount = billable ? (neto/60) * tarifa : 0, en la moneda nativa del registro."""
    if not billable or not tarifa:
        return centavos(CERO)
    return centavos(Decimal(minutos_netos) / Decimal(60) * Decimal(tarifa))


def aplicar_monto(entry) -> None:
    """Recalcula amount desde duration_neto y el rate_applied congelado. Nunca re-resuelve la tarifa."""
    entry.amount = calcular_monto(entry.billable, entry.duration_neto, entry.rate_applied)


# ==============================================================================
# Proyección de moneda al momento de facturar
# ==============================================================================

@dataclass(frozen=True)
class LineaFactura:
    time_entry_id: Optional[int]
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal
    usd_exchange_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class Totales:
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def factor_conversion(
    moneda_nativa: str,
    moneda_destino: str,
    estrategia: EstrategiaMoneda,
    linea: LineaFactura,
    cotizacion_actual: Optional[Decimal],
) -> Decimal:
    nativa = moneda_nativa.upper()
    destino = moneda_destino.upper()
    if nativa == destino:
        return Decimal("1")
    if destino != MONEDA_LOCAL:
        raise ValidacionError(f"Conversión de {nativa} a {destino} no soportada.")

    if estrategia == EstrategiaMoneda.CURRENT:
        if not cotizacion_actual:
            raise ValidacionError("La estrategia CURRENT requiere una cotización vigente.")
        return Decimal(cotizacion_actual)

    if estrategia == EstrategiaMoneda.HISTORICAL:
        if not linea.usd_exchange_rate:
            raise ValidacionError(
                f"El registro {linea.time_entry_id} no tiene cotización histórica guardada; no se puede pesificar con HISTORICAL."
            )
        return Decimal(linea.usd_exchange_rate)

    raise ValidacionError(f"Estrategia de moneda desconocida: {estrategia}")


def proyectar_lineas(
    lineas: Sequence[LineaFactura],
    moneda_nativa: str,
    moneda_destino: str,
    estrategia: EstrategiaMoneda,
    cotizacion_actual: Optional[Decimal] = None,
) -> List[LineaFactura]:
    """Convierte cada línea a la moneda de la factura.

    - destino == nativa: sin conversión
    - ARS + CURRENT: una única cotización actual para todas las líneas
    - ARS + HISTORICAL: cada línea con su propia cotización guardada al detener el timer
    """
    proyectadas = []
    for linea in lineas:
        factor = factor_conversion(moneda_nativa, moneda_destino, estrategia, linea, cotizacion_actual)
        proyectadas.append(replace(
            linea,
            rate=(linea.rate * factor).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
            amount=centavos(linea.amount * factor),
        ))
    return proyectadas


def calcular_totales(lineas: Sequence[LineaFactura], tax_rate) -> Totales:
    tasa = Decimal(str(tax_rate or 0))
    subtotal = centavos(sum((l.amount for l in lineas), CERO))
    tax_amount = centavos(subtotal * tasa / Decimal(100))
    return Totales(
        subtotal=subtotal,
        tax_rate=tasa,
        tax_amount=tax_amount,
        total_amount=centavos(subtotal + tax_amount),
    )
