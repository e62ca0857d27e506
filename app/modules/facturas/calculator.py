"""
Cálculo de valores derivados de una factura

Funciones puras (sin I/O) usadas por los endpoints, por las escrituras que
persisten valor_real_a_pagar y por el backfill.

Reglas:
- Base sin IVA: total_sin_iva si existe, si no total_a_pagar - factura_iva.
- monto_retencion y porcentaje_pronto_pago son porcentajes (0-100).
- Retención y pronto pago se calculan ambos sobre la MISMA base y se restan
  por separado del total nominal (el descuento no se aplica sobre el valor
  ya retenido). Se reproduce así el comportamiento existente del negocio; no
  es una recomendación contable.
- Urgencia de pago por días al vencimiento: vencida, urgente, proximo, normal.

Las funciones aceptan un modelo ORM, un esquema Pydantic o un diccionario y
nunca lanzan excepciones: campos ausentes o no numéricos cuentan como vacíos.
"""

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from app.core.config import settings
from app.modules.facturas.models import EstadoNotaCredito
from app.modules.facturas.notas import (
    AppliedCreditNotes, CreditNoteLink, DiscountedTotal, decode_notas, to_decimal
)
from app.modules.facturas.schemas import FacturaValores, UrgenciaPago

CERO = Decimal("0")
CIEN = Decimal("100")
CENTAVOS = Decimal("0.01")

# Campos que intervienen en los cálculos
VALUE_FIELDS = (
    "total_a_pagar",
    "total_sin_iva",
    "factura_iva",
    "tiene_retencion",
    "monto_retencion",
    "porcentaje_pronto_pago",
    "clasificacion",
    "notas",
    "estado_nota_credito",
)


def _campo(factura: Any, nombre: str) -> Any:
    if isinstance(factura, Mapping):
        return factura.get(nombre)
    return getattr(factura, nombre, None)


def _decimal(factura: Any, nombre: str) -> Optional[Decimal]:
    return to_decimal(_campo(factura, nombre))


def _es_verdadero(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "si", "sí")
    return bool(value)


def _total_a_pagar(factura: Any) -> Decimal:
    return _decimal(factura, "total_a_pagar") or CERO


def _snapshot(factura: Any, **overrides) -> Dict[str, Any]:
    data = {nombre: _campo(factura, nombre) for nombre in VALUE_FIELDS}
    data.update(overrides)
    return data


def calculate_base_amount(factura: Any) -> Decimal:
    """
    Valor antes de IVA sobre el que se calculan retención y pronto pago.
    """
    total_sin_iva = _decimal(factura, "total_sin_iva")
    if total_sin_iva is not None:
        return total_sin_iva
    return _total_a_pagar(factura) - (_decimal(factura, "factura_iva") or CERO)


def calculate_withholding_amount(factura: Any) -> Decimal:
    """
    Monto de la retención: base * (monto_retencion / 100).
    Retorna 0 si monto_retencion no existe o es 0.
    """
    tasa = _decimal(factura, "monto_retencion")
    if not tasa:
        return CERO
    return calculate_base_amount(factura) * (tasa / CIEN)


def calculate_early_payment_discount(factura: Any) -> Decimal:
    """Descuento por pronto pago: base * (porcentaje_pronto_pago / 100)."""
    porcentaje = _decimal(factura, "porcentaje_pronto_pago")
    if porcentaje is None or porcentaje <= 0:
        return CERO
    return calculate_base_amount(factura) * (porcentaje / CIEN)


def calculate_real_payable_amount(factura: Any, *, include_early_payment: bool = True) -> Decimal:
    """
    Valor real a pagar: total_a_pagar menos retención (si tiene_retencion y
    hay porcentaje) menos descuento por pronto pago (si > 0).

    Args:
        factura: factura o snapshot de sus valores
        include_early_payment: False cuando el pago se hizo sin tomar el pronto pago
    """
    valor = _total_a_pagar(factura)

    if _es_verdadero(_campo(factura, "tiene_retencion")) and _decimal(factura, "monto_retencion"):
        valor -= calculate_withholding_amount(factura)

    if include_early_payment:
        valor -= calculate_early_payment_discount(factura)

    return valor


def is_linked_credit_note(factura: Any) -> bool:
    """True si la factura es una nota de crédito cuyo efecto ya está en otra factura."""
    if _campo(factura, "estado_nota_credito") in (EstadoNotaCredito.APLICADA.value, EstadoNotaCredito.ANULADA.value):
        return True
    notas = decode_notas(_campo(factura, "notas"), _campo(factura, "clasificacion"))
    return isinstance(notas, CreditNoteLink)


def calculate_effective_total(factura: Any) -> Decimal:
    """
    Total de la factura considerando notas de crédito.

    - Nota de crédito aplicada/anulada o vinculada a una factura original: 0
    - Factura con notas_credito: total_a_pagar - suma de valor_descuento
    - Factura con total_con_descuentos: ese valor
    - En otro caso: total_a_pagar
    """
    if is_linked_credit_note(factura):
        return CERO

    total = _total_a_pagar(factura)
    notas = decode_notas(_campo(factura, "notas"), _campo(factura, "clasificacion"))

    if isinstance(notas, AppliedCreditNotes):
        return total - notas.total_descuentos
    if isinstance(notas, DiscountedTotal):
        return notas.total_con_descuentos
    return total


def round_currency(valor: Decimal) -> Decimal:
    """Redondear a 2 decimales usando ROUND_HALF_UP (redondeo comercial)."""
    return valor.quantize(CENTAVOS, rounding=ROUND_HALF_UP)


def calculate_stored_real_payable(factura: Any, *, include_early_payment: bool = True) -> Decimal:
    """
    Valor que se persiste en valor_real_a_pagar.

    Las notas de crédito vinculadas valen 0; para el resto se calcula el valor
    real a pagar sobre el total efectivo (después de notas de crédito).
    """
    if is_linked_credit_note(factura):
        return round_currency(CERO)

    snapshot = _snapshot(factura, total_a_pagar=calculate_effective_total(factura))
    return round_currency(
        calculate_real_payable_amount(snapshot, include_early_payment=include_early_payment)
    )


def calculate_valores(factura: Any) -> FacturaValores:
    """Agrupa los valores calculados de una factura para las respuestas de la API."""
    total_real = calculate_effective_total(factura)
    snapshot = _snapshot(factura, total_a_pagar=total_real)
    vinculada = is_linked_credit_note(factura)

    return FacturaValores(
        base_sin_iva=round_currency(calculate_base_amount(snapshot)),
        retencion=round_currency(calculate_withholding_amount(snapshot)),
        descuento_pronto_pago=round_currency(calculate_early_payment_discount(snapshot)),
        total_real=round_currency(total_real),
        valor_real_a_pagar=calculate_stored_real_payable(factura),
        es_nota_credito_vinculada=vinculada,
    )


def days_until_due(fecha_vencimiento: Optional[date], hoy: date) -> Optional[int]:
    """Días calendario hasta el vencimiento; negativo si ya venció."""
    if fecha_vencimiento is None:
        return None
    if isinstance(fecha_vencimiento, datetime):
        fecha_vencimiento = fecha_vencimiento.date()
    return (fecha_vencimiento - hoy).days


def classify_urgency(dias: int) -> UrgenciaPago:
    """
    Nivel de urgencia de un pago pendiente:
    vencida (< 0), urgente (<= PAGOS_URGENTE_DIAS), proximo
    (<= PAGOS_PROXIMO_DIAS) o normal.
    """
    if dias < 0:
        return UrgenciaPago.VENCIDA
    if dias <= settings.PAGOS_URGENTE_DIAS:
        return UrgenciaPago.URGENTE
    if dias <= settings.PAGOS_PROXIMO_DIAS:
        return UrgenciaPago.PROXIMO
    return UrgenciaPago.NORMAL
