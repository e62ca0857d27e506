"""
Análisis de patrones de números de serie

Un número de serie se separa en prefijo + parte numérica + sufijo tomando el
último bloque de dígitos del texto:

    "FAC-0059"  -> ("FAC-", 59, "")   complex
    "A12B"      -> ("A", 12, "B")     alphanumeric
    "59"        -> ("", 59, "")       numeric
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import re

# Último bloque de dígitos ASCII del texto
ULTIMO_BLOQUE_NUMERICO = re.compile(r"([0-9]+)(?!.*[0-9])", re.DOTALL)

PATTERN_NUMERIC = "numeric"
PATTERN_ALPHANUMERIC = "alphanumeric"
PATTERN_COMPLEX = "complex"


@dataclass(frozen=True)
class SeriePattern:
    prefix: str
    numeric_part: int
    suffix: str
    pattern_type: str
    full_pattern: str
    width: int = 1  # cantidad de dígitos del bloque numérico original

    @property
    def key(self) -> Tuple[str, str]:
        return (self.prefix, self.suffix)

    @property
    def is_pure_numeric(self) -> bool:
        return not self.prefix and not self.suffix


def analyze_pattern(serie: Optional[str]) -> SeriePattern:
    """
    Analiza un número de serie y extrae su patrón.

    Sin texto: parte numérica 0. Sin dígitos: todo el texto es prefijo y la
    parte numérica es 1.
    """
    if not serie:
        return SeriePattern("", 0, "", PATTERN_NUMERIC, serie or "", 1)

    match = ULTIMO_BLOQUE_NUMERICO.search(serie)
    if not match:
        return SeriePattern(serie, 1, "", PATTERN_ALPHANUMERIC, serie, 1)

    digits = match.group(1)
    prefix = serie[:match.start(1)]
    suffix = serie[match.end(1):]

    pattern_type = PATTERN_NUMERIC
    if prefix or suffix:
        es_complejo = (
            "-" in prefix or "-" in suffix
            or len(prefix) > 3 or len(suffix) > 3
        )
        pattern_type = PATTERN_COMPLEX if es_complejo else PATTERN_ALPHANUMERIC

    return SeriePattern(prefix, int(digits), suffix, pattern_type, serie, len(digits))


def _highest(patterns: Iterable[SeriePattern]) -> Optional[SeriePattern]:
    # Comparación estricta: ante empate gana el primero visto
    best = None
    for pattern in patterns:
        if best is None or pattern.numeric_part > best.numeric_part:
            best = pattern
    return best


def detect_common_pattern(series: List[str]) -> Optional[SeriePattern]:
    """
    Detecta el patrón más común (mismo prefijo y sufijo) y retorna el de
    número más alto dentro de ese grupo. Ante grupos con la misma
    frecuencia, gana el que contiene el número más alto.
    """
    if not series:
        return None

    groups: Dict[Tuple[str, str], List[SeriePattern]] = {}
    for serie in series:
        pattern = analyze_pattern(serie)
        groups.setdefault(pattern.key, []).append(pattern)

    best_group: List[SeriePattern] = []
    best_top: Optional[SeriePattern] = None
    for group in groups.values():
        top = _highest(group)
        if len(group) > len(best_group) or (
            len(group) == len(best_group) and top.numeric_part > best_top.numeric_part
        ):
            best_group, best_top = group, top

    return best_top


def find_highest_pattern(series: List[str]) -> Optional[SeriePattern]:
    """Patrón con la parte numérica más alta entre todas las series."""
    return _highest(analyze_pattern(serie) for serie in series)


def generate_next_serie(pattern: SeriePattern, increment: int = 1) -> str:
    """
    Genera el siguiente número de serie conservando prefijo, sufijo y el
    relleno con ceros del número original ("FAC-009" -> "FAC-010").
    """
    next_number = pattern.numeric_part + increment
    return f"{pattern.prefix}{str(next_number).zfill(pattern.width)}{pattern.suffix}"
