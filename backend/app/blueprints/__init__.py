from . import registros, facturas, afip, consolidacion, jerarquia

__all__ = ["registros", "facturas", "afip", "consolidacion", "jerarquia"]
