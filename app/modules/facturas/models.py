"""
Modelos SQLAlchemy para el módulo de Facturas

Una sola tabla `facturas` concentra las facturas de proveedor recibidas por
webhook (n8n) o ingresadas manualmente. Se clasifican como mercancía o gasto,
se marcan como pagadas, se vinculan con notas de crédito y finalmente se
marcan como sistematizadas.

El campo `notas` es texto con JSON estructurado; ver `notas.py`.
"""

from app.database.database import Base
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Numeric, Date, Text
from sqlalchemy.dialects.postgresql import UUID
from app.common.mixins import UUIDPrimaryKeyMixin, TimestampMixin
import enum


# ===== ENUMS =====

class Clasificacion(str, enum.Enum):
    """Clasificación de la factura"""
    MERCANCIA = "mercancia"
    GASTO = "gasto"
    SISTEMATIZADA = "sistematizada"     # Ya registrada en el sistema contable
    NOTA_CREDITO = "nota_credito"


class EstadoMercancia(str, enum.Enum):
    """Estado de pago de la factura"""
    PENDIENTE = "pendiente"
    PAGADA = "pagada"


class EstadoNotaCredito(str, enum.Enum):
    """Estado de una nota de crédito"""
    PENDIENTE = "pendiente"
    APLICADA = "aplicada"
    ANULADA = "anulada"


# ===== MODELOS =====

class Factura(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    Factura de proveedor

    Los campos monto_retencion y porcentaje_pronto_pago son PORCENTAJES (0-100),
    no montos. valor_real_a_pagar es derivado y se recalcula en cada escritura
    que modifica sus entradas.
    """
    __tablename__ = "facturas"

    # Identificación
    numero_factura = Column(String(100), nullable=False, index=True)
    emisor_nombre = Column(String(255), nullable=False, index=True)
    emisor_nit = Column(String(50), nullable=False, index=True)
    numero_serie = Column(String(100), nullable=True, index=True)
    factura_cufe = Column(String(255), nullable=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=True)

    # Valores
    total_a_pagar = Column(Numeric(15, 2), nullable=False, default=0)
    total_sin_iva = Column(Numeric(15, 2), nullable=True)
    factura_iva = Column(Numeric(15, 2), nullable=True)
    factura_iva_porcentaje = Column(Numeric(5, 2), nullable=True)
    tiene_retencion = Column(Boolean, nullable=True, default=False)
    monto_retencion = Column(Numeric(5, 2), nullable=True)  # porcentaje
    porcentaje_pronto_pago = Column(Numeric(5, 2), nullable=True)
    valor_real_a_pagar = Column(Numeric(15, 2), nullable=True)

    # Clasificación y estados
    clasificacion = Column(String(30), nullable=True, index=True)
    clasificacion_original = Column(String(30), nullable=True)
    descripcion = Column(Text, nullable=True)
    notas = Column(Text, nullable=True)  # JSON
    estado_mercancia = Column(String(30), nullable=True, index=True)
    estado_nota_credito = Column(String(30), nullable=True)

    # Pago
    metodo_pago = Column(String(50), nullable=True)
    uso_pronto_pago = Column(Boolean, nullable=True)
    monto_pagado = Column(Numeric(15, 2), nullable=True)
    fecha_pago = Column(DateTime(timezone=True), nullable=True)

    # Fechas de la factura
    fecha_emision = Column(Date, nullable=True)
    fecha_vencimiento = Column(Date, nullable=True)

    # Archivos
    nombre_carpeta_factura = Column(String(255), nullable=True)
    pdf_file_path = Column(String(500), nullable=True)

    def __repr__(self):
        return f"<Factura {self.numero_factura} ({self.emisor_nit})>"
