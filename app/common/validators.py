"""
Validadores específicos para Colombia
"""
import re
from typing import Optional


NIT_MULTIPLICADORES = [3, 7, 13, 17, 19, 23, 29, 37, 41, 43, 47, 53, 59, 67, 71]


def clean_nit(nit: str) -> str:
    """Elimina puntos y espacios de un NIT (conserva el guion del DV)."""
    return re.sub(r'[\.\s]', '', nit or '')


def calculate_nit_dv(numero_base: str) -> Optional[int]:
    """
    Calcula el dígito de verificación (DV) de un NIT según el algoritmo DIAN.
    Retorna None si la entrada no es numérica.
    """
    cleaned = clean_nit(numero_base)
    if not cleaned.isdigit():
        return None

    suma = 0
    for i, digito in enumerate(reversed(cleaned)):
        if i < len(NIT_MULTIPLICADORES):
            suma += int(digito) * NIT_MULTIPLICADORES[i]

    resto = suma % 11
    return resto if resto < 2 else 11 - resto


def validate_colombia_nit(nit: str) -> bool:
    """
    Valida NIT colombiano con dígito de verificación.
    Formatos: XXXXXXXXX-X o XXXXXXXXXX (DV al final)
    """
    cleaned = clean_nit(nit).replace('-', '')

    if not cleaned.isdigit():
        return False

    # 8 a 10 dígitos base + DV
    if not 9 <= len(cleaned) <= 11:
        return False

    return calculate_nit_dv(cleaned[:-1]) == int(cleaned[-1])


def validate_emisor_nit(nit: str) -> bool:
    """
    Acepta el NIT del emisor tal como llega de la DIAN/n8n:
    base sin DV, base con guion y DV, o cédula (persona natural, 6-10 dígitos).
    """
    cleaned = clean_nit(nit)
    if '-' in cleaned:
        return validate_colombia_nit(cleaned)
    return cleaned.isdigit() and 6 <= len(cleaned) <= 10
