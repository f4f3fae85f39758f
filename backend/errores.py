"""Excepciones de dominio del motor de horas y facturación.

Los servicios las lanzan; los blueprints las traducen a HTTPException.
"""


class LedgerError(Exception):
    """Raíz de los errores de dominio."""


class ValidacionError(LedgerError):
    """Precondición rechazada antes de cualquier mutación."""


class NoEncontradoError(LedgerError):
    pass


class ConflictoError(LedgerError):
    """Violación de invariante o conflicto de estado (timer activo, CAE presente, etc.)."""


class NumeracionAgotadaError(LedgerError):
    """Se agotaron los reintentos al asignar un número de factura único."""


class FiscalError(LedgerError):
    """Falla de la autoridad fiscal (AFIP/ARCA)."""


class FiscalAuthError(FiscalError):
    """Falla de autenticación / identidad frente a la autoridad (certificado, token, CUIT)."""


class FiscalRequestError(FiscalError):
    """Falla genérica de la solicitud a la autoridad."""
