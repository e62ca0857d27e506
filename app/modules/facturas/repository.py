"""
Acceso de solo lectura a los números de serie de las facturas

`SerieRepository` es el contrato que consume la sugerencia de números de
serie; la implementación con SQLAlchemy recibe la sesión por petición.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.facturas.models import Factura

logger = logging.getLogger(__name__)


class SerieRepository(ABC):
    """Puerto de lectura de números de serie."""

    @abstractmethod
    async def list_series(self, emisor_nit: Optional[str], limit: int) -> List[str]:
        """
        Últimos números de serie (no nulos, no vacíos), del más reciente al
        más antiguo. Si emisor_nit es None se consideran todos los emisores.
        """

    @abstractmethod
    async def serie_exists(self, numero_serie: str) -> bool:
        """Indica si algún registro ya usa ese número de serie."""


class SQLAlchemySerieRepository(SerieRepository):
    """
    Implementación sobre la tabla facturas. Los errores de consulta se
    registran y se degradan a lista vacía / False: una sugerencia faltante no
    bloquea la clasificación.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_series(self, emisor_nit: Optional[str], limit: int) -> List[str]:
        query = select(Factura.numero_serie).where(
            Factura.numero_serie.is_not(None),
            func.trim(Factura.numero_serie) != ""
        )
        if emisor_nit is not None:
            query = query.where(Factura.emisor_nit == emisor_nit)
        query = query.order_by(Factura.created_at.desc()).limit(limit)

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching series (emisor={emisor_nit}): {e}")
            return []

        return [serie for (serie,) in result.all() if serie]

    async def serie_exists(self, numero_serie: str) -> bool:
        query = select(Factura.id).where(Factura.numero_serie == numero_serie).limit(1)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Error checking serie existence ({numero_serie}): {e}")
            return False
        return result.first() is not None
