"""
Decodificación del campo `notas` de las facturas

`notas` es texto libre que, cuando contiene JSON, describe la relación de la
factura con notas de crédito. Se decodifica una sola vez a uno de estos tipos:

- CreditNoteLink: la factura ES una nota de crédito aplicada a otra factura
  (`{"tipo": "nota_credito", "factura_original_id": ...}`)
- AppliedCreditNotes: la factura original lista las notas de crédito que la
  descuentan (`{"notas_credito": [{"valor_descuento": ...}, ...]}`)
- DiscountedTotal: solo se conoce el total ya descontado
  (`{"total_con_descuentos": ...}`)
- None: vacío, texto plano, JSON inválido o sin claves reconocidas

Decodificar nunca lanza excepciones.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union
import json
import logging

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)

TIPO_NOTA_CREDITO = "nota_credito"


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convertir un valor numérico (int, float, str, Decimal) a Decimal.
    Retorna None si el valor está ausente o no es numérico.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


# Campos descriptivos: llegan como texto, número (fechas en epoch ms) u otro
# tipo según quién escribió el JSON. No intervienen en el cálculo.
_TEXT_FIELDS = (
    "tipo", "factura_id", "numero_factura", "factura_original_id",
    "numero_factura_original", "emisor_original", "fecha_aplicacion",
)


class _NotasModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value, info):
        if info.field_name in _TEXT_FIELDS and value is not None and not isinstance(value, str):
            return str(value)
        return value


class AppliedCreditNote(_NotasModel):
    """Una nota de crédito aplicada, tal como se guarda en la factura original."""
    factura_id: Optional[str] = None
    numero_factura: Optional[str] = None
    valor_descuento: Decimal = Decimal("0")
    fecha_aplicacion: Optional[str] = None

    @field_validator("valor_descuento", mode="before")
    @classmethod
    def _valor(cls, value):
        return to_decimal(value) or Decimal("0")


class CreditNoteLink(_NotasModel):
    tipo: str = TIPO_NOTA_CREDITO
    factura_original_id: str
    numero_factura_original: Optional[str] = None
    emisor_original: Optional[str] = None
    valor_descuento: Optional[Decimal] = None
    total_original_factura: Optional[Decimal] = None
    fecha_aplicacion: Optional[str] = None

    @field_validator("valor_descuento", "total_original_factura", mode="before")
    @classmethod
    def _decimales(cls, value):
        return to_decimal(value)


class AppliedCreditNotes(_NotasModel):
    notas_credito: List[AppliedCreditNote]
    total_con_descuentos: Optional[Decimal] = None
    total_original: Optional[Decimal] = None

    @field_validator("total_con_descuentos", "total_original", mode="before")
    @classmethod
    def _decimales(cls, value):
        return to_decimal(value)

    @property
    def total_descuentos(self) -> Decimal:
        return sum((nc.valor_descuento for nc in self.notas_credito), Decimal("0"))


class DiscountedTotal(_NotasModel):
    total_con_descuentos: Decimal
    total_original: Optional[Decimal] = None

    @field_validator("total_con_descuentos", "total_original", mode="before")
    @classmethod
    def _decimales(cls, value):
        return to_decimal(value)


NotasData = Union[CreditNoteLink, AppliedCreditNotes, DiscountedTotal, None]


def load_notas_dict(raw: Optional[str]) -> Dict[str, Any]:
    """
    Parsear `notas` a diccionario. Texto vacío, JSON inválido o JSON que no
    es un objeto retornan un diccionario vacío.
    """
    if not raw or not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        return {}
    return data if isinstance(data, dict) else {}


def decode_notas(raw: Optional[str], clasificacion: Optional[str] = None) -> NotasData:
    """
    Decodificar `notas` al tipo que describe su contenido.

    Una nota de crédito se reconoce por `tipo == "nota_credito"` o, en
    registros antiguos sin `tipo`, por la clasificación de la propia factura.
    `factura_aplicada_id` es el nombre antiguo de `factura_original_id`.
    """
    data = load_notas_dict(raw)
    if not data:
        return None

    try:
        original_id = data.get("factura_original_id") or data.get("factura_aplicada_id")
        es_nota_credito = data.get("tipo") == TIPO_NOTA_CREDITO or clasificacion == TIPO_NOTA_CREDITO
        if original_id and es_nota_credito:
            return CreditNoteLink.model_validate(
                {**data, "tipo": TIPO_NOTA_CREDITO, "factura_original_id": original_id}
            )

        notas_credito = data.get("notas_credito")
        if isinstance(notas_credito, list) and notas_credito:
            items = [nc for nc in notas_credito if isinstance(nc, dict)]
            if items:
                return AppliedCreditNotes.model_validate({**data, "notas_credito": items})

        if to_decimal(data.get("total_con_descuentos")) is not None:
            return DiscountedTotal.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Notas con estructura no reconocida: {e}")

    return None


def _json_default(value: Any):
    if isinstance(value, Decimal):
        # Se guardan como números JSON, igual que los escribe el frontend
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_notas(data: Dict[str, Any]) -> str:
    """Serializar el diccionario de notas a JSON (Decimal como número)."""
    return json.dumps(data, default=_json_default, ensure_ascii=False)
