"""
Módulo de Facturas - Facturas360

Gestión de las facturas de proveedores recibidas por el flujo de ingreso:

VALOR REAL A PAGAR:
- Base sin IVA: total_sin_iva, o total_a_pagar - factura_iva si no existe
- Retención: porcentaje de monto_retencion sobre la base (solo si tiene_retencion)
- Pronto pago: porcentaje_pronto_pago sobre la misma base
- valor_real_a_pagar = total real - retención - pronto pago
- El total real descuenta las notas de crédito aplicadas (campo notas)
- Una nota de crédito vinculada siempre vale 0

CLASIFICACIÓN:
- mercancia / gasto: desde el diálogo de clasificación
- sistematizada: conserva la clasificación anterior en clasificacion_original
- nota_credito: asignada al aplicar una nota de crédito

PAGOS PRÓXIMOS:
- Facturas sin pagar por fecha de vencimiento con urgencia
  vencida / urgente / proximo / normal

NÚMERO DE SERIE:
- Sugerido a partir del patrón de las últimas series del proveedor
- Validado de nuevo al guardar la clasificación (409 si ya existe)

BACKFILL:
- Facturas antiguas sin valor_real_a_pagar se completan por lotes
  (endpoint de administrador, tarea Celery o scripts/backfill_valor_real.py)
"""

from .models import Factura, Clasificacion, EstadoMercancia, EstadoNotaCredito
from .calculator import (
    calculate_base_amount, calculate_withholding_amount, calculate_early_payment_discount,
    calculate_real_payable_amount, calculate_effective_total, calculate_stored_real_payable,
    calculate_valores
)
from .serie_suggestion import SerieSuggestionService
from .service import FacturaService
from .router import facturas_router

__all__ = [
    # Models
    "Factura", "Clasificacion", "EstadoMercancia", "EstadoNotaCredito",

    # Calculator
    "calculate_base_amount", "calculate_withholding_amount", "calculate_early_payment_discount",
    "calculate_real_payable_amount", "calculate_effective_total", "calculate_stored_real_payable",
    "calculate_valores",

    # Services
    "SerieSuggestionService", "FacturaService",

    # Router
    "facturas_router"
]
