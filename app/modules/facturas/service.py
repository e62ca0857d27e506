"""
Servicios de negocio para el módulo de Facturas

Implementa las rutas de escritura y lectura sobre la tabla facturas:
- Listado, búsqueda y detalle con valores calculados
- Ingreso manual y edición de facturas
- Clasificación (mercancía / gasto) con validación del número de serie
- Marcado como sistematizada
- Pagos individuales y múltiples
- Aplicación de notas de crédito
- Estadísticas del dashboard y pagos próximos
- Ingreso de facturas desde el webhook

Toda escritura que cambia una entrada del cálculo vuelve a persistir
valor_real_a_pagar.
"""

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID
from datetime import date, datetime, time, timezone
import logging

from app.core.config import settings
from app.modules.facturas.calculator import (
    calculate_effective_total, calculate_stored_real_payable, calculate_valores, classify_urgency,
    days_until_due, is_linked_credit_note
)
from app.modules.facturas.models import Clasificacion, EstadoMercancia, EstadoNotaCredito, Factura
from app.modules.facturas.notas import TIPO_NOTA_CREDITO, encode_notas, load_notas_dict
from app.modules.facturas.schemas import (
    ClasificacionFiltro, ClasificacionInput, EstadoPagoFiltro,
    FacturaClassify, FacturaCreate, FacturaDetail, FacturaList, FacturaOut, FacturaStats, FacturaUpdate,
    FacturaWebhookIn, NotaCreditoApply, NotaCreditoResult, PagoProximo, PagosProximosOut,
    PaymentCreate, PaymentResult, StatsBucket, UrgenciaPago
)

logger = logging.getLogger(__name__)


def to_detail(factura: Factura) -> FacturaDetail:
    """Convertir una factura a su esquema de salida con valores calculados."""
    data = FacturaOut.model_validate(factura).model_dump()
    return FacturaDetail(**data, valores=calculate_valores(factura))


def refresh_valor_real(factura: Factura) -> None:
    """Recalcular y asignar valor_real_a_pagar tras cambiar sus entradas."""
    factura.valor_real_a_pagar = calculate_stored_real_payable(factura)


class FacturaService:
    """Servicio para gestión de facturas"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_or_404(self, factura_id: UUID) -> Factura:
        factura = await self.db.get(Factura, factura_id)
        if not factura:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Factura no encontrada"
            )
        return factura

    async def _ensure_serie_available(self, numero_serie: str, factura_id: Optional[UUID] = None) -> None:
        """El número de serie no puede estar usado por otra factura."""
        query = select(Factura.numero_factura).where(Factura.numero_serie == numero_serie)
        if factura_id is not None:
            query = query.where(Factura.id != factura_id)
        result = await self.db.execute(query.limit(1))
        existing = result.first()
        if existing:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"El número de serie '{numero_serie}' ya está asignado a la factura {existing[0]}"
            )

    async def list_facturas(
        self,
        limit: int = 20,
        offset: int = 0,
        clasificacion: Optional[ClasificacionFiltro] = None,
        estado: Optional[EstadoPagoFiltro] = None,
        emisor_nit: Optional[str] = None,
        search: Optional[str] = None
    ) -> FacturaList:
        """Listar facturas con filtros y búsqueda, de la más reciente a la más antigua"""
        query = select(Factura)

        if clasificacion == ClasificacionFiltro.SIN_CLASIFICAR:
            query = query.where(Factura.clasificacion.is_(None))
        elif clasificacion:
            query = query.where(Factura.clasificacion == clasificacion.value)

        if estado == EstadoPagoFiltro.PAGADA:
            query = query.where(Factura.estado_mercancia == EstadoMercancia.PAGADA.value)
        elif estado == EstadoPagoFiltro.PENDIENTE:
            query = query.where(or_(
                Factura.estado_mercancia.is_(None),
                Factura.estado_mercancia != EstadoMercancia.PAGADA.value
            ))

        if emisor_nit:
            query = query.where(Factura.emisor_nit == emisor_nit)

        if search and search.strip():
            term = f"%{search.strip()}%"
            query = query.where(or_(
                Factura.numero_factura.ilike(term),
                Factura.emisor_nombre.ilike(term),
                Factura.emisor_nit.ilike(term),
                Factura.numero_serie.ilike(term)
            ))

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Factura.created_at.desc()).offset(offset).limit(limit)
        )
        facturas = result.scalars().all()

        return FacturaList(
            items=[to_detail(f) for f in facturas],
            total=total or 0,
            limit=limit,
            offset=offset
        )

    async def get_factura(self, factura_id: UUID) -> FacturaDetail:
        return to_detail(await self._get_or_404(factura_id))

    async def get_pdf_key(self, factura_id: UUID) -> str:
        """Ruta del PDF de la factura dentro del bucket"""
        factura = await self._get_or_404(factura_id)
        if not factura.pdf_file_path:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="La factura no tiene PDF asociado"
            )
        return factura.pdf_file_path

    async def create_factura(self, data: FacturaCreate, user_id: Optional[UUID] = None) -> FacturaDetail:
        """
        Registrar una factura ingresada manualmente.

        La carpeta y el CUFE se generan con el prefijo manual porque la
        factura no viene del flujo de ingreso.
        """
        try:
            if data.numero_serie:
                await self._ensure_serie_available(data.numero_serie)

            marca = int(datetime.now(timezone.utc).timestamp() * 1000)
            factura = Factura(
                numero_factura=data.numero_factura,
                emisor_nombre=data.emisor_nombre,
                emisor_nit=data.emisor_nit,
                total_a_pagar=data.total_a_pagar,
                total_sin_iva=data.total_sin_iva,
                factura_iva=data.factura_iva or None,
                factura_iva_porcentaje=data.factura_iva_porcentaje or None,
                fecha_emision=data.fecha_emision,
                fecha_vencimiento=data.fecha_vencimiento,
                descripcion=data.descripcion,
                numero_serie=data.numero_serie,
                clasificacion=data.clasificacion.value if data.clasificacion else None,
                tiene_retencion=data.tiene_retencion,
                monto_retencion=data.monto_retencion if data.tiene_retencion and data.monto_retencion else Decimal("0"),
                porcentaje_pronto_pago=data.porcentaje_pronto_pago or None,
                nombre_carpeta_factura=f"manual_{data.numero_factura}_{marca}",
                factura_cufe=f"MANUAL-{data.numero_factura}-{marca}",
                user_id=user_id,
            )

            if data.pagada:
                factura.estado_mercancia = EstadoMercancia.PAGADA.value
                factura.metodo_pago = data.metodo_pago.value
                factura.fecha_pago = datetime.combine(data.fecha_pago or date.today(), time.min, tzinfo=timezone.utc)
                factura.uso_pronto_pago = data.uso_pronto_pago
                factura.monto_pagado = calculate_stored_real_payable(
                    factura, include_early_payment=data.uso_pronto_pago
                )
            elif data.clasificacion:
                factura.estado_mercancia = EstadoMercancia.PENDIENTE.value
            refresh_valor_real(factura)

            self.db.add(factura)
            await self.db.commit()
            await self.db.refresh(factura)
            logger.info(f"Factura manual {factura.numero_factura} de {factura.emisor_nit} registrada")
            return to_detail(factura)

        except HTTPException:
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error creating manual factura: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error registrando la factura: {str(e)}"
            )

    async def update_factura(self, factura_id: UUID, data: FacturaUpdate) -> FacturaDetail:
        """
        Editar los datos de una factura.

        Solo cambian los campos enviados; valor_real_a_pagar se recalcula
        siempre con los valores resultantes.
        """
        try:
            factura = await self._get_or_404(factura_id)
            changes = data.model_dump(exclude_unset=True)

            numero_serie = changes.get("numero_serie")
            if numero_serie and numero_serie != factura.numero_serie:
                await self._ensure_serie_available(numero_serie, factura.id)

            for field, value in changes.items():
                setattr(factura, field, value)
            if "tiene_retencion" in changes and not factura.tiene_retencion:
                factura.monto_retencion = Decimal("0")
            refresh_valor_real(factura)

            await self.db.commit()
            await self.db.refresh(factura)
            logger.info(f"Factura {factura.numero_factura} actualizada: {', '.join(changes)}")
            return to_detail(factura)

        except HTTPException:
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error updating factura {factura_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error actualizando la factura: {str(e)}"
            )

    async def classify_factura(self, factura_id: UUID, data: FacturaClassify) -> FacturaDetail:
        """
        Clasificar una factura como mercancía o gasto.

        El número de serie (solo mercancía) se valida contra las demás
        facturas en el momento de guardar.
        """
        try:
            factura = await self._get_or_404(factura_id)

            if is_linked_credit_note(factura):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Una nota de crédito aplicada no se puede reclasificar"
                )

            if data.clasificacion == ClasificacionInput.MERCANCIA and data.numero_serie:
                await self._ensure_serie_available(data.numero_serie, factura.id)
                factura.numero_serie = data.numero_serie

            factura.clasificacion = data.clasificacion.value
            factura.descripcion = data.descripcion or None
            factura.tiene_retencion = data.tiene_retencion
            factura.monto_retencion = data.monto_retencion if data.tiene_retencion and data.monto_retencion else Decimal("0")
            factura.porcentaje_pronto_pago = (
                data.porcentaje_pronto_pago if data.porcentaje_pronto_pago and data.porcentaje_pronto_pago > 0 else None
            )
            if not factura.estado_mercancia:
                factura.estado_mercancia = EstadoMercancia.PENDIENTE.value
            refresh_valor_real(factura)

            await self.db.commit()
            await self.db.refresh(factura)
            logger.info(f"Factura {factura.numero_factura} clasificada como {factura.clasificacion}")
            return to_detail(factura)

        except HTTPException:
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error classifying factura {factura_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error clasificando la factura: {str(e)}"
            )

    async def mark_sistematizada(self, factura_id: UUID) -> FacturaDetail:
        """Marcar como sistematizada conservando la clasificación anterior"""
        try:
            factura = await self._get_or_404(factura_id)

            if factura.clasificacion == Clasificacion.SISTEMATIZADA.value:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="La factura ya está sistematizada"
                )

            factura.clasificacion_original = factura.clasificacion
            factura.clasificacion = Clasificacion.SISTEMATIZADA.value

            await self.db.commit()
            await self.db.refresh(factura)
            return to_detail(factura)

        except HTTPException:
            raise
        except Exception as e:
            await self.db.rollback()
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error marcando la factura como sistematizada: {str(e)}"
            )

    async def register_payment(self, data: PaymentCreate) -> PaymentResult:
        """
        Registrar el pago de una o varias facturas.

        monto_pagado es el valor real a pagar; el descuento por pronto pago
        solo se descuenta en las facturas listadas en pronto_pago_ids.
        """
        try:
            result = await self.db.execute(select(Factura).where(Factura.id.in_(data.factura_ids)))
            facturas: Dict[UUID, Factura] = {f.id: f for f in result.scalars().all()}

            missing = [str(fid) for fid in data.factura_ids if fid not in facturas]
            if missing:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail=f"Facturas no encontradas: {', '.join(missing)}"
                )

            for factura in facturas.values():
                if is_linked_credit_note(factura):
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail=f"La factura {factura.numero_factura} es una nota de crédito aplicada"
                    )
                if factura.estado_mercancia == EstadoMercancia.PAGADA.value:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail=f"La factura {factura.numero_factura} ya está pagada"
                    )

            fecha_pago = datetime.combine(data.fecha_pago or date.today(), time.min, tzinfo=timezone.utc)
            pronto_pago = set(data.pronto_pago_ids)
            total_pagado = Decimal("0")

            for fid in data.factura_ids:
                factura = facturas[fid]
                uso_pronto_pago = fid in pronto_pago
                factura.estado_mercancia = EstadoMercancia.PAGADA.value
                factura.metodo_pago = data.metodo_pago.value
                factura.fecha_pago = fecha_pago
                factura.uso_pronto_pago = uso_pronto_pago
                factura.monto_pagado = calculate_stored_real_payable(
                    factura, include_early_payment=uso_pronto_pago
                )
                total_pagado += factura.monto_pagado

            await self.db.commit()
            logger.info(f"Pago registrado: {len(facturas)} facturas por {total_pagado}")

            return PaymentResult(
                facturas=[to_detail(facturas[fid]) for fid in data.factura_ids],
                total_pagado=total_pagado
            )

        except HTTPException:
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error registering payment: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error registrando el pago: {str(e)}"
            )

    async def apply_credit_note(self, nota_id: UUID, data: NotaCreditoApply) -> NotaCreditoResult:
        """
        Vincular una nota de crédito con la factura original.

        La nota queda con valor real 0 y la factura original suma la nota a
        su lista notas_credito, reduciendo su total.
        """
        try:
            if nota_id == data.factura_original_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Una nota de crédito no se puede aplicar a sí misma"
                )

            nota = await self._get_or_404(nota_id)
            original = await self._get_or_404(data.factura_original_id)

            if is_linked_credit_note(nota):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="La nota de crédito ya está aplicada a otra factura"
                )
            if is_linked_credit_note(original) or original.clasificacion == Clasificacion.NOTA_CREDITO.value:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="La factura original no puede ser una nota de crédito"
                )
            if data.valor_descuento > nota.total_a_pagar:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="El valor de la nota de crédito no puede ser mayor al total de la factura"
                )

            fecha_aplicacion = datetime.now(timezone.utc).isoformat()

            nota.clasificacion_original = nota.clasificacion
            nota.clasificacion = Clasificacion.NOTA_CREDITO.value
            nota.estado_nota_credito = EstadoNotaCredito.APLICADA.value
            nota.notas = encode_notas({
                "tipo": TIPO_NOTA_CREDITO,
                "factura_original_id": str(original.id),
                "numero_factura_original": original.numero_factura,
                "emisor_original": original.emisor_nombre,
                "valor_descuento": data.valor_descuento,
                "total_original_factura": original.total_a_pagar,
                "fecha_aplicacion": fecha_aplicacion,
            })

            notas_original = load_notas_dict(original.notas)
            if original.notas and not notas_original:
                # Texto libre previo: se conserva dentro del JSON
                notas_original = {"observaciones": original.notas}
            notas_original.setdefault("notas_credito", []).append({
                "factura_id": str(nota.id),
                "numero_factura": nota.numero_factura,
                "valor_descuento": data.valor_descuento,
                "fecha_aplicacion": fecha_aplicacion,
            })
            notas_original["total_original"] = original.total_a_pagar
            original.notas = encode_notas(notas_original)

            notas_original["total_con_descuentos"] = calculate_effective_total(original)
            original.notas = encode_notas(notas_original)

            refresh_valor_real(nota)
            refresh_valor_real(original)

            await self.db.commit()
            await self.db.refresh(nota)
            await self.db.refresh(original)
            logger.info(
                f"Nota de crédito {nota.numero_factura} aplicada a {original.numero_factura} "
                f"por {data.valor_descuento}"
            )

            return NotaCreditoResult(nota_credito=to_detail(nota), factura_original=to_detail(original))

        except HTTPException:
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error applying credit note {nota_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error procesando la nota de crédito: {str(e)}"
            )

    async def get_stats(self) -> FacturaStats:
        """Totales por sección del dashboard, usando el total real de cada factura"""
        result = await self.db.execute(select(Factura))
        facturas: List[Factura] = list(result.scalars().all())

        buckets = {name: StatsBucket() for name in (
            "sin_clasificar", "mercancia_pendiente", "mercancia_pagada",
            "gastos_pendientes", "gastos_pagados", "sistematizadas", "notas_credito"
        )}

        for factura in facturas:
            pagada = factura.estado_mercancia == EstadoMercancia.PAGADA.value
            clasificacion = factura.clasificacion

            if clasificacion is None:
                name = "sin_clasificar"
            elif clasificacion == Clasificacion.MERCANCIA.value:
                name = "mercancia_pagada" if pagada else "mercancia_pendiente"
            elif clasificacion == Clasificacion.GASTO.value:
                name = "gastos_pagados" if pagada else "gastos_pendientes"
            elif clasificacion == Clasificacion.SISTEMATIZADA.value:
                name = "sistematizadas"
            elif clasificacion == Clasificacion.NOTA_CREDITO.value:
                name = "notas_credito"
            else:
                continue

            bucket = buckets[name]
            bucket.cantidad += 1
            bucket.total += calculate_effective_total(factura)

        return FacturaStats(total_facturas=len(facturas), **buckets)

    async def list_pagos_proximos(self, hoy: Optional[date] = None, dias: Optional[int] = None) -> PagosProximosOut:
        """
        Facturas sin pagar ordenadas por fecha de vencimiento, con su
        urgencia. Con `dias` solo se listan las que vencen dentro de ese
        plazo (las vencidas siempre se incluyen).
        """
        hoy = hoy or date.today()
        result = await self.db.execute(
            select(Factura)
            .where(
                or_(Factura.estado_mercancia.is_(None), Factura.estado_mercancia != EstadoMercancia.PAGADA.value),
                or_(Factura.clasificacion.is_(None), Factura.clasificacion != Clasificacion.NOTA_CREDITO.value)
            )
            .order_by(Factura.fecha_vencimiento.asc().nulls_last(), Factura.created_at)
        )

        items: List[PagoProximo] = []
        sin_fecha: List[FacturaDetail] = []
        buckets = {urgencia: StatsBucket() for urgencia in UrgenciaPago}
        bucket_sin_fecha = StatsBucket()

        for factura in result.scalars().all():
            if is_linked_credit_note(factura):
                continue
            detail = to_detail(factura)
            dias_para_vencer = days_until_due(factura.fecha_vencimiento, hoy)

            if dias_para_vencer is None:
                sin_fecha.append(detail)
                bucket_sin_fecha.cantidad += 1
                bucket_sin_fecha.total += detail.valores.valor_real_a_pagar
                continue
            if dias is not None and dias_para_vencer > dias:
                continue

            urgencia = classify_urgency(dias_para_vencer)
            items.append(PagoProximo(
                **detail.model_dump(), dias_para_vencer=dias_para_vencer, urgencia=urgencia
            ))
            buckets[urgencia].cantidad += 1
            buckets[urgencia].total += detail.valores.valor_real_a_pagar

        items.sort(key=lambda p: p.dias_para_vencer)

        return PagosProximosOut(
            fecha_referencia=hoy,
            items=items,
            sin_fecha_vencimiento=sin_fecha,
            vencidas=buckets[UrgenciaPago.VENCIDA],
            urgentes=buckets[UrgenciaPago.URGENTE],
            proximas=buckets[UrgenciaPago.PROXIMO],
            al_dia=buckets[UrgenciaPago.NORMAL],
            sin_fecha=bucket_sin_fecha,
        )

    async def create_from_webhook(self, data: FacturaWebhookIn) -> FacturaDetail:
        """Registrar una factura recibida desde el flujo de ingreso (n8n)"""
        try:
            factura = Factura(
                numero_factura=data.numero_factura,
                emisor_nombre=data.emisor_nombre,
                emisor_nit=data.emisor_nit,
                total_a_pagar=data.total_a_pagar,
                notas=data.notas or None,
                nombre_carpeta_factura=data.nombre_carpeta_factura or None,
                factura_cufe=data.factura_cufe or None,
                pdf_file_path=data.pdf_file_path or None,
                user_id=UUID(settings.WEBHOOK_DEFAULT_USER_ID) if settings.WEBHOOK_DEFAULT_USER_ID else None,
            )
            refresh_valor_real(factura)

            self.db.add(factura)
            await self.db.commit()
            await self.db.refresh(factura)
            logger.info(f"Factura {factura.numero_factura} de {factura.emisor_nit} registrada por webhook")
            return to_detail(factura)

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error inserting factura from webhook: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error registrando la factura: {str(e)}"
            )
