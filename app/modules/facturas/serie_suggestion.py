"""
Sugerencia del siguiente número de serie de un proveedor

Estrategias, en orden:
1. Patrón más común en las últimas series del proveedor
2. Si el proveedor no tiene historial (o todas las candidatas ya existen),
   número más alto entre las últimas series de todos los proveedores
3. Patrón más común entre todos los proveedores
4. Valor por defecto ("001")

Solo lee del almacenamiento. La sugerencia no garantiza unicidad: quien
guarda la clasificación vuelve a validar el número de serie.
"""

from typing import List, Optional
import logging

from app.core.config import settings
from app.modules.facturas.repository import SerieRepository
from app.modules.facturas.schemas import SeriePatternOut, SerieSuggestionOut
from app.modules.facturas.serie_patterns import (
    SeriePattern, detect_common_pattern, find_highest_pattern, generate_next_serie
)

logger = logging.getLogger(__name__)


def _or_default(value, default):
    # 0 es un valor válido (p. ej. desactivar los intentos del proveedor)
    return default if value is None else value


class SerieSuggestionService:
    """Servicio de sugerencia de números de serie"""

    def __init__(
        self,
        repository: SerieRepository,
        *,
        supplier_history_limit: Optional[int] = None,
        global_history_limit: Optional[int] = None,
        supplier_max_attempts: Optional[int] = None,
        global_max_attempts: Optional[int] = None,
        default_serie: Optional[str] = None
    ):
        self.repository = repository
        self.supplier_history_limit = _or_default(supplier_history_limit, settings.SERIE_SUPPLIER_HISTORY_LIMIT)
        self.global_history_limit = _or_default(global_history_limit, settings.SERIE_GLOBAL_HISTORY_LIMIT)
        self.supplier_max_attempts = _or_default(supplier_max_attempts, settings.SERIE_SUPPLIER_MAX_ATTEMPTS)
        self.global_max_attempts = _or_default(global_max_attempts, settings.SERIE_GLOBAL_MAX_ATTEMPTS)
        self.default_serie = _or_default(default_serie, settings.SERIE_DEFAULT)

    async def get_last_series(self, emisor_nit: str) -> List[str]:
        """Últimas series del proveedor, de la más reciente a la más antigua."""
        return await self.repository.list_series(emisor_nit, self.supplier_history_limit)

    async def _first_available(self, pattern: SeriePattern, max_attempts: int) -> Optional[str]:
        """
        Primera serie libre generada a partir del patrón, probando hasta
        max_attempts incrementos. None si todas existen.
        """
        for increment in range(1, max_attempts + 1):
            candidate = generate_next_serie(pattern, increment)
            if not await self.repository.serie_exists(candidate):
                return candidate
            logger.debug(f"Serie {candidate} already exists, trying next")
        return None

    async def _suggest_for_emisor(self, emisor_nit: str) -> Optional[str]:
        last_series = await self.get_last_series(emisor_nit)
        if not last_series:
            return None

        pattern = detect_common_pattern(last_series)
        if pattern is None:
            return None

        suggestion = await self._first_available(pattern, self.supplier_max_attempts)
        if suggestion is None:
            logger.info(
                f"All {self.supplier_max_attempts} candidates from pattern "
                f"'{pattern.full_pattern}' exist for emisor {emisor_nit}"
            )
        return suggestion

    async def _suggest_global(self) -> str:
        all_series = await self.repository.list_series(None, self.global_history_limit)
        if not all_series:
            return self.default_serie

        highest = find_highest_pattern(all_series)
        if highest is not None:
            if highest.is_pure_numeric:
                # Serie puramente numérica: "59" -> "60"
                return generate_next_serie(highest)
            suggestion = await self._first_available(highest, self.global_max_attempts)
            if suggestion:
                return suggestion

        common = detect_common_pattern(all_series)
        if common is not None:
            suggestion = await self._first_available(common, self.global_max_attempts)
            if suggestion:
                return suggestion

        return self.default_serie

    async def suggest_next_serie(self, emisor_nit: str) -> Optional[str]:
        """
        Sugiere el siguiente número de serie para un emisor.

        Returns:
            La serie sugerida, o None si ocurrió un error inesperado (el
            usuario la escribe manualmente).
        """
        try:
            suggestion = await self._suggest_for_emisor(emisor_nit)
            if suggestion:
                return suggestion
            return await self._suggest_global()
        except Exception as e:
            logger.error(f"Error suggesting serie for emisor {emisor_nit}: {e}", exc_info=True)
            return None

    async def get_pattern_info(self, emisor_nit: str) -> SerieSuggestionOut:
        """Historial, patrón detectado y sugerencia para mostrar en la UI."""
        try:
            last_series = await self.get_last_series(emisor_nit)
        except Exception as e:
            logger.error(f"Error fetching series for emisor {emisor_nit}: {e}")
            last_series = []

        pattern = detect_common_pattern(last_series)
        return SerieSuggestionOut(
            emisor_nit=emisor_nit,
            sugerencia=await self.suggest_next_serie(emisor_nit),
            ultimas_series=last_series,
            patron=SeriePatternOut.model_validate(pattern) if pattern else None,
        )
