"""
Esquemas Pydantic para el módulo de Facturas

Define la validación de datos de entrada y salida:
- Facturas: listado, detalle y valores calculados
- Ingreso manual y edición de facturas
- Clasificación: mercancía / gasto con retención y pronto pago
- Pagos: pago individual o múltiple
- Notas de crédito: vinculación con la factura original
- Webhook: ingreso de facturas desde n8n
- Sugerencia de número de serie y estadísticas del dashboard
- Pagos próximos por fecha de vencimiento
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime
from enum import Enum

from app.common.validators import validate_emisor_nit


# ===== ENUMS =====

class ClasificacionInput(str, Enum):
    """Clasificaciones que se pueden asignar desde el diálogo de clasificación"""
    MERCANCIA = "mercancia"
    GASTO = "gasto"


class ClasificacionFiltro(str, Enum):
    SIN_CLASIFICAR = "sin_clasificar"
    MERCANCIA = "mercancia"
    GASTO = "gasto"
    SISTEMATIZADA = "sistematizada"
    NOTA_CREDITO = "nota_credito"


class EstadoPagoFiltro(str, Enum):
    PENDIENTE = "pendiente"
    PAGADA = "pagada"


class MetodoPago(str, Enum):
    PAGO_BANCO = "Pago Banco"
    PAGO_TOBIAS = "Pago Tobías"
    CAJA = "Caja"


class UrgenciaPago(str, Enum):
    """Urgencia de una factura pendiente según su fecha de vencimiento"""
    VENCIDA = "vencida"
    URGENTE = "urgente"
    PROXIMO = "proximo"
    NORMAL = "normal"


# ===== VALORES CALCULADOS =====

class FacturaValores(BaseModel):
    """Valores derivados de una factura (no persistidos, salvo valor_real_a_pagar)"""
    base_sin_iva: Decimal
    retencion: Decimal
    descuento_pronto_pago: Decimal
    total_real: Decimal = Field(..., description="Total después de notas de crédito")
    valor_real_a_pagar: Decimal = Field(..., description="Total real menos retención y pronto pago")
    es_nota_credito_vinculada: bool = False


# ===== FACTURA SCHEMAS =====

class FacturaOut(BaseModel):
    id: UUID
    numero_factura: str
    emisor_nombre: str
    emisor_nit: str
    numero_serie: Optional[str] = None
    factura_cufe: Optional[str] = None
    total_a_pagar: Decimal
    total_sin_iva: Optional[Decimal] = None
    factura_iva: Optional[Decimal] = None
    factura_iva_porcentaje: Optional[Decimal] = None
    tiene_retencion: Optional[bool] = None
    monto_retencion: Optional[Decimal] = None
    porcentaje_pronto_pago: Optional[Decimal] = None
    valor_real_a_pagar: Optional[Decimal] = None
    clasificacion: Optional[str] = None
    clasificacion_original: Optional[str] = None
    descripcion: Optional[str] = None
    notas: Optional[str] = None
    estado_mercancia: Optional[str] = None
    estado_nota_credito: Optional[str] = None
    metodo_pago: Optional[str] = None
    uso_pronto_pago: Optional[bool] = None
    monto_pagado: Optional[Decimal] = None
    fecha_pago: Optional[datetime] = None
    fecha_emision: Optional[date] = None
    fecha_vencimiento: Optional[date] = None
    pdf_file_path: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FacturaDetail(FacturaOut):
    valores: FacturaValores


class FacturaList(BaseModel):
    items: List[FacturaDetail]
    total: int
    limit: int
    offset: int


class FacturaClassify(BaseModel):
    clasificacion: ClasificacionInput
    descripcion: Optional[str] = Field(None, max_length=2000)
    tiene_retencion: bool = False
    monto_retencion: Optional[Decimal] = Field(None, ge=0, le=100, description="Porcentaje de retención")
    porcentaje_pronto_pago: Optional[Decimal] = Field(None, ge=0, le=100, description="Porcentaje de descuento por pronto pago")
    numero_serie: Optional[str] = Field(None, max_length=100)

    @field_validator('numero_serie')
    @classmethod
    def strip_serie(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None


class FacturaCreate(BaseModel):
    """Factura ingresada manualmente (sin pasar por el webhook)"""
    numero_factura: str = Field(..., min_length=1, max_length=100)
    emisor_nombre: str = Field(..., min_length=1, max_length=255)
    emisor_nit: str = Field(..., min_length=1, max_length=50)
    total_a_pagar: Decimal = Field(..., gt=0)
    total_sin_iva: Optional[Decimal] = Field(None, ge=0)
    factura_iva: Optional[Decimal] = Field(None, ge=0)
    factura_iva_porcentaje: Optional[Decimal] = Field(None, ge=0, le=100)
    fecha_emision: date
    fecha_vencimiento: Optional[date] = None
    descripcion: Optional[str] = Field(None, max_length=2000)
    numero_serie: Optional[str] = Field(None, max_length=100)
    clasificacion: Optional[ClasificacionInput] = None
    tiene_retencion: bool = False
    monto_retencion: Optional[Decimal] = Field(None, ge=0, le=100, description="Porcentaje de retención")
    porcentaje_pronto_pago: Optional[Decimal] = Field(None, ge=0, le=100)

    # Factura que ya llega pagada
    pagada: bool = False
    metodo_pago: Optional[MetodoPago] = None
    fecha_pago: Optional[date] = None
    uso_pronto_pago: bool = False

    @field_validator('numero_factura', 'emisor_nombre')
    @classmethod
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('El campo es obligatorio')
        return v

    @field_validator('emisor_nit')
    @classmethod
    def validate_nit(cls, v):
        if not validate_emisor_nit(v):
            raise ValueError('emisor_nit debe ser un NIT o documento válido')
        return v.strip()

    @field_validator('numero_serie', 'descripcion')
    @classmethod
    def strip_optional(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode='after')
    def validate_pago(self):
        if self.pagada and self.metodo_pago is None:
            raise ValueError('metodo_pago es obligatorio para una factura pagada')
        if self.fecha_vencimiento and self.fecha_vencimiento < self.fecha_emision:
            raise ValueError('fecha_vencimiento no puede ser anterior a fecha_emision')
        return self


class FacturaUpdate(BaseModel):
    """
    Edición parcial de una factura: solo se modifican los campos enviados.
    Los campos numéricos opcionales se pueden limpiar enviando null.
    """
    numero_factura: Optional[str] = Field(None, min_length=1, max_length=100)
    emisor_nombre: Optional[str] = Field(None, min_length=1, max_length=255)
    emisor_nit: Optional[str] = Field(None, min_length=1, max_length=50)
    total_a_pagar: Optional[Decimal] = Field(None, gt=0)
    total_sin_iva: Optional[Decimal] = Field(None, ge=0)
    factura_iva: Optional[Decimal] = Field(None, ge=0)
    factura_iva_porcentaje: Optional[Decimal] = Field(None, ge=0, le=100)
    fecha_emision: Optional[date] = None
    fecha_vencimiento: Optional[date] = None
    descripcion: Optional[str] = Field(None, max_length=2000)
    numero_serie: Optional[str] = Field(None, max_length=100)
    tiene_retencion: Optional[bool] = None
    monto_retencion: Optional[Decimal] = Field(None, ge=0, le=100)
    porcentaje_pronto_pago: Optional[Decimal] = Field(None, ge=0, le=100)

    @field_validator('emisor_nit')
    @classmethod
    def validate_nit(cls, v):
        if v is not None and not validate_emisor_nit(v):
            raise ValueError('emisor_nit debe ser un NIT o documento válido')
        return v.strip() if v else v

    @field_validator('numero_serie', 'descripcion')
    @classmethod
    def strip_optional(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode='after')
    def validate_required_fields(self):
        for name in ('numero_factura', 'emisor_nombre', 'emisor_nit', 'total_a_pagar', 'tiene_retencion'):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f'{name} no puede ser null')
        return self


class PaymentCreate(BaseModel):
    factura_ids: List[UUID] = Field(..., min_length=1, description="Facturas a pagar")
    metodo_pago: MetodoPago
    fecha_pago: Optional[date] = Field(None, description="Por defecto, hoy")
    pronto_pago_ids: List[UUID] = Field(default_factory=list, description="Facturas en las que se tomó el pronto pago")

    @model_validator(mode='after')
    def validate_pronto_pago(self):
        if len(set(self.factura_ids)) != len(self.factura_ids):
            raise ValueError('factura_ids no puede tener facturas repetidas')
        extras = set(self.pronto_pago_ids) - set(self.factura_ids)
        if extras:
            raise ValueError('pronto_pago_ids debe ser un subconjunto de factura_ids')
        return self


class PaymentResult(BaseModel):
    facturas: List[FacturaDetail]
    total_pagado: Decimal


class NotaCreditoApply(BaseModel):
    factura_original_id: UUID = Field(..., description="Factura a la que se aplica la nota de crédito")
    valor_descuento: Decimal = Field(..., gt=0, description="Valor de la nota de crédito")


class NotaCreditoResult(BaseModel):
    nota_credito: FacturaDetail
    factura_original: FacturaDetail


class FacturaWebhookIn(BaseModel):
    numero_factura: str = Field(..., min_length=1, max_length=100)
    emisor_nombre: str = Field(..., min_length=1, max_length=255)
    emisor_nit: str = Field(..., min_length=1, max_length=50)
    total_a_pagar: Decimal
    notas: Optional[str] = None
    nombre_carpeta_factura: Optional[str] = None
    factura_cufe: Optional[str] = None
    pdf_file_path: Optional[str] = None

    @field_validator('emisor_nit')
    @classmethod
    def validate_nit(cls, v):
        if not validate_emisor_nit(v):
            raise ValueError('emisor_nit debe ser un NIT o documento válido')
        return v.strip()


class PdfUrlOut(BaseModel):
    url: str
    expires_in: int


# ===== NÚMERO DE SERIE =====

class SeriePatternOut(BaseModel):
    prefix: str
    numeric_part: int
    suffix: str
    pattern_type: str
    full_pattern: str
    width: int

    class Config:
        from_attributes = True


class SerieSuggestionOut(BaseModel):
    emisor_nit: str
    sugerencia: Optional[str] = None
    ultimas_series: List[str] = []
    patron: Optional[SeriePatternOut] = None


# ===== ESTADÍSTICAS =====

class StatsBucket(BaseModel):
    cantidad: int = 0
    total: Decimal = Decimal("0")


class FacturaStats(BaseModel):
    total_facturas: int
    sin_clasificar: StatsBucket
    mercancia_pendiente: StatsBucket
    mercancia_pagada: StatsBucket
    gastos_pendientes: StatsBucket
    gastos_pagados: StatsBucket
    sistematizadas: StatsBucket
    notas_credito: StatsBucket


# ===== PAGOS PRÓXIMOS =====

class PagoProximo(FacturaDetail):
    dias_para_vencer: int = Field(..., description="Negativo si ya venció")
    urgencia: UrgenciaPago


class PagosProximosOut(BaseModel):
    """
    Facturas sin pagar ordenadas por fecha de vencimiento. Los totales
    usan el valor real a pagar de cada factura.
    """
    fecha_referencia: date
    items: List[PagoProximo]
    sin_fecha_vencimiento: List[FacturaDetail] = []
    vencidas: StatsBucket
    urgentes: StatsBucket
    proximas: StatsBucket
    al_dia: StatsBucket
    sin_fecha: StatsBucket


# ===== BACKFILL =====

class BackfillReportOut(BaseModel):
    total_encontradas: int
    actualizadas: int
    lotes_completados: int
    lote_fallido: Optional[int] = None
    ids_fallidos: List[UUID] = []
    ids_pendientes: List[UUID] = []
    error: Optional[str] = None


class BackfillStatusOut(BaseModel):
    total_facturas: int
    sin_valor_real: int
    numeros_pendientes: List[str] = []
