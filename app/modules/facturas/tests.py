"""
Tests para el módulo de Facturas

Cubren:
- Cálculo de base, retención, pronto pago y valor real a pagar
- Decodificación del campo notas y notas de crédito
- Análisis de patrones y sugerencia de números de serie
- Escrituras del servicio (clasificación, pagos, notas de crédito, webhook)
- Backfill por lotes y la tarea Celery
- Endpoints HTTP con dependencias reemplazadas

No se usa base de datos: las sesiones son dobles en memoria.
"""

import asyncio
import json
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool
from uuid import uuid4
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from app.main import app
from app.core.config import settings
from app.common.validators import calculate_nit_dv, validate_emisor_nit
from app.database.database import Base, get_db
from app.modules.auth.dependencies import get_auth_context
from app.modules.auth.models import Profile, UserRole
from app.modules.auth.schemas import AuthContext
from app.modules.facturas import tasks
from app.modules.facturas.backfill import BackfillError, run_backfill, verify_backfill
from app.modules.facturas.calculator import (
    calculate_base_amount, calculate_early_payment_discount, calculate_effective_total,
    calculate_real_payable_amount, calculate_stored_real_payable, calculate_valores,
    calculate_withholding_amount, classify_urgency, days_until_due, is_linked_credit_note
)
from app.modules.facturas.models import Factura
from app.modules.facturas.notas import (
    AppliedCreditNotes, CreditNoteLink, DiscountedTotal, decode_notas, encode_notas
)
from app.modules.facturas.repository import SerieRepository
from app.modules.facturas.router import get_factura_service, get_serie_repository
from app.modules.facturas.schemas import (
    ClasificacionInput, FacturaClassify, FacturaCreate, FacturaUpdate, FacturaWebhookIn, MetodoPago,
    NotaCreditoApply, PaymentCreate, UrgenciaPago
)
from app.modules.facturas.serie_patterns import (
    PATTERN_ALPHANUMERIC, PATTERN_COMPLEX, PATTERN_NUMERIC,
    analyze_pattern, detect_common_pattern, find_highest_pattern, generate_next_serie
)
from app.modules.facturas.serie_suggestion import SerieSuggestionService
from app.modules.facturas.service import FacturaService
from app.modules.files.service import get_pdf_storage


client = TestClient(app)


# ===== DOBLES DE PRUEBA =====

class InMemorySerieRepository(SerieRepository):
    """Series guardadas como (emisor_nit, serie), de la más reciente a la más antigua"""

    def __init__(self, entries=None, fail: bool = False):
        self.entries = list(entries or [])
        self.fail = fail
        self.list_calls = []

    async def list_series(self, emisor_nit: Optional[str], limit: int) -> List[str]:
        self.list_calls.append((emisor_nit, limit))
        if self.fail:
            raise RuntimeError("base de datos no disponible")
        series = [s for nit, s in self.entries if emisor_nit is None or nit == emisor_nit]
        return series[:limit]

    async def serie_exists(self, numero_serie: str) -> bool:
        return any(s == numero_serie for _, s in self.entries)


class FakeResult:
    def __init__(self, rows):
        self.rows = list(rows)

    def scalars(self):
        return self

    def all(self):
        return list(self.rows)

    def first(self):
        return self.rows[0] if self.rows else None


class FakeAsyncSession:
    """
    Sesión asíncrona mínima: `get` busca por id y cada `execute` consume el
    siguiente resultado preparado en `results`.
    """

    def __init__(self, *facturas, results=None, count: int = 0):
        self.facturas = {f.id: f for f in facturas}
        self.results = list(results or [])
        self.count = count
        self.added = []
        self.executed = 0
        self.commits = 0
        self.rollbacks = 0

    async def get(self, model, ident):
        return self.facturas.get(ident)

    async def execute(self, query):
        self.executed += 1
        return FakeResult(self.results.pop(0) if self.results else [])

    async def scalar(self, query):
        return self.count

    def add(self, obj):
        if obj.id is None:
            obj.id = uuid4()
        self.added.append(obj)
        self.facturas[obj.id] = obj

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def refresh(self, obj):
        pass


class FakeSyncSession:
    """Sesión síncrona para el backfill; puede fallar en el commit número N"""

    def __init__(self, facturas, fail_on_commit: Optional[int] = None):
        self.facturas = list(facturas)
        self.fail_on_commit = fail_on_commit
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def execute(self, query):
        return FakeResult([f for f in self.facturas if f.valor_real_a_pagar is None])

    def scalar(self, query):
        return len(self.facturas)

    def commit(self):
        self.commits += 1
        if self.commits == self.fail_on_commit:
            raise RuntimeError("conexión perdida")

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


class FakePDFStorage:
    def get_presigned_download_url(self, key: str) -> str:
        return f"http://localhost:9000/{settings.MINIO_PDF_BUCKET}/{key}?X-Amz-Signature=abc"


def make_factura(**overrides) -> Factura:
    data = {
        "id": uuid4(),
        "numero_factura": "FE-1001",
        "emisor_nombre": "Distribuidora Andina S.A.S.",
        "emisor_nit": "860034313",
        "total_a_pagar": Decimal("10000"),
        "created_at": datetime.now(timezone.utc),
    }
    data.update(overrides)
    return Factura(**data)


def run(coro):
    return asyncio.run(coro)


# ===== FIXTURES =====

@pytest.fixture
def user_context():
    return AuthContext(user_id=uuid4(), email="contabilidad@example.com", roles=["user"])


@pytest.fixture
def admin_context():
    return AuthContext(user_id=uuid4(), email="admin@example.com", roles=["admin"])


@pytest.fixture
def as_user(user_context):
    app.dependency_overrides[get_auth_context] = lambda: user_context
    return user_context


@pytest.fixture
def as_admin(admin_context):
    app.dependency_overrides[get_auth_context] = lambda: admin_context
    return admin_context


def use_session(session: FakeAsyncSession):
    app.dependency_overrides[get_factura_service] = lambda: FacturaService(session)


# ===== TESTS DE CÁLCULOS =====

class TestCalculator:
    """Tests de los cálculos de valores de una factura"""

    def test_base_uses_total_sin_iva(self):
        """La base es total_sin_iva cuando existe"""
        assert calculate_base_amount({"total_a_pagar": 11900, "total_sin_iva": 10000}) == Decimal("10000")

    def test_base_falls_back_to_total_minus_iva(self):
        """Sin total_sin_iva la base es total - IVA"""
        assert calculate_base_amount({"total_a_pagar": 11900, "factura_iva": 1900}) == Decimal("10000")
        assert calculate_base_amount({"total_a_pagar": 11900}) == Decimal("11900")

    def test_withholding_zero_when_rate_missing_or_zero(self):
        """Sin porcentaje de retención (o 0) la retención es 0"""
        assert calculate_withholding_amount({"total_a_pagar": 10000, "tiene_retencion": True}) == 0
        assert calculate_withholding_amount(
            {"total_a_pagar": 10000, "tiene_retencion": True, "monto_retencion": 0}
        ) == 0

    def test_withholding_and_discount_share_the_same_base(self):
        """Retención y pronto pago se calculan sobre la misma base"""
        factura = {
            "total_a_pagar": 11900,
            "total_sin_iva": 10000,
            "tiene_retencion": True,
            "monto_retencion": "2.5",
            "porcentaje_pronto_pago": 1,
        }
        assert calculate_withholding_amount(factura) == Decimal("250")
        assert calculate_early_payment_discount(factura) == Decimal("100")
        assert calculate_real_payable_amount(factura) == Decimal("11550")

    def test_retention_ignored_without_flag(self):
        """Con tiene_retencion en False no se descuenta la retención"""
        factura = {"total_a_pagar": 10000, "tiene_retencion": False, "monto_retencion": 5}
        assert calculate_real_payable_amount(factura) == Decimal("10000")

    def test_real_payable_without_early_payment(self):
        """El pago sin pronto pago no descuenta el porcentaje"""
        factura = {"total_a_pagar": 10000, "porcentaje_pronto_pago": 2}
        assert calculate_real_payable_amount(factura) == Decimal("9800")
        assert calculate_real_payable_amount(factura, include_early_payment=False) == Decimal("10000")

    def test_real_payable_never_exceeds_total(self):
        """El valor real nunca supera el total y es igual sin deducciones"""
        casos = [
            {"total_a_pagar": 5000},
            {"total_a_pagar": 5000, "tiene_retencion": True, "monto_retencion": 4},
            {"total_a_pagar": 5000, "porcentaje_pronto_pago": 3},
            {"total_a_pagar": 5000, "total_sin_iva": 4200, "tiene_retencion": True,
             "monto_retencion": 11, "porcentaje_pronto_pago": "1.5"},
        ]
        for factura in casos:
            assert calculate_real_payable_amount(factura) <= Decimal("5000")
        assert calculate_real_payable_amount(casos[0]) == Decimal("5000")

    def test_non_numeric_values_count_as_empty(self):
        """Valores no numéricos no rompen el cálculo"""
        factura = {"total_a_pagar": "abc", "tiene_retencion": "true", "monto_retencion": "n/a"}
        assert calculate_real_payable_amount(factura) == Decimal("0")

    def test_linked_credit_note_is_zero(self):
        """Una nota de crédito vinculada vale 0"""
        factura = {
            "total_a_pagar": 5000,
            "clasificacion": "nota_credito",
            "notas": json.dumps({"tipo": "nota_credito", "factura_original_id": str(uuid4())}),
        }
        assert is_linked_credit_note(factura)
        assert calculate_effective_total(factura) == 0
        assert calculate_stored_real_payable(factura) == Decimal("0.00")

    def test_applied_credit_note_state_is_zero(self):
        """estado_nota_credito aplicada o anulada también vale 0"""
        for estado in ("aplicada", "anulada"):
            factura = {"total_a_pagar": 5000, "estado_nota_credito": estado}
            assert calculate_stored_real_payable(factura) == Decimal("0.00")

    def test_applied_credit_notes_reduce_total(self):
        """Notas de crédito de 1000 y 500 sobre 10000 dejan 8500"""
        factura = {
            "total_a_pagar": 10000,
            "notas": json.dumps({"notas_credito": [
                {"factura_id": str(uuid4()), "valor_descuento": 1000},
                {"factura_id": str(uuid4()), "valor_descuento": "500"},
            ]}),
        }
        assert calculate_effective_total(factura) == Decimal("8500")
        assert calculate_stored_real_payable(factura) == Decimal("8500.00")

    def test_discounted_total_is_used(self):
        """Solo total_con_descuentos: se usa ese valor"""
        factura = {"total_a_pagar": 10000, "notas": json.dumps({"total_con_descuentos": 7200})}
        assert calculate_effective_total(factura) == Decimal("7200")

    def test_malformed_notas_fall_back_to_total(self):
        """Texto libre o JSON inválido en notas no afecta el total"""
        for notas in ("Pagar antes del viernes", "{roto", "[1, 2]", ""):
            assert calculate_effective_total({"total_a_pagar": 10000, "notas": notas}) == Decimal("10000")

    def test_stored_value_is_rounded_half_up(self):
        """El valor persistido se redondea a centavos"""
        factura = {"total_a_pagar": 100, "total_sin_iva": "33.333", "tiene_retencion": True, "monto_retencion": 10}
        assert calculate_stored_real_payable(factura) == Decimal("96.67")

    def test_recalculation_is_idempotent(self):
        """Recalcular con el valor ya persistido da el mismo resultado"""
        factura = make_factura(
            total_a_pagar=Decimal("11900"), total_sin_iva=Decimal("10000"),
            tiene_retencion=True, monto_retencion=Decimal("4"), porcentaje_pronto_pago=Decimal("2")
        )
        primero = calculate_stored_real_payable(factura)
        factura.valor_real_a_pagar = primero
        assert calculate_stored_real_payable(factura) == primero == Decimal("11300.00")

    def test_valores_for_orm_object(self):
        """calculate_valores acepta el modelo ORM"""
        factura = make_factura(total_a_pagar=Decimal("11900"), factura_iva=Decimal("1900"),
                               porcentaje_pronto_pago=Decimal("2"))
        valores = calculate_valores(factura)
        assert valores.base_sin_iva == Decimal("10000.00")
        assert valores.descuento_pronto_pago == Decimal("200.00")
        assert valores.valor_real_a_pagar == Decimal("11700.00")
        assert valores.es_nota_credito_vinculada is False

    def test_numeric_fecha_aplicacion_keeps_link(self):
        """Una fecha guardada como número no impide reconocer la nota vinculada"""
        factura = {
            "total_a_pagar": 5000,
            "notas": json.dumps({
                "tipo": "nota_credito", "factura_original_id": "X", "fecha_aplicacion": 1700000000000
            }),
        }
        assert is_linked_credit_note(factura)
        assert calculate_effective_total(factura) == 0
        assert calculate_stored_real_payable(factura) == Decimal("0.00")

    def test_numeric_fecha_aplicacion_in_applied_list(self):
        """Notas aplicadas con fecha numérica siguen descontando del total"""
        factura = {
            "total_a_pagar": 10000,
            "notas": json.dumps({"notas_credito": [
                {"valor_descuento": 1000, "fecha_aplicacion": 1700000000000},
                {"valor_descuento": 500},
            ]}),
        }
        assert calculate_effective_total(factura) == Decimal("8500")

    def test_days_until_due(self):
        hoy = date(2026, 3, 10)
        assert days_until_due(date(2026, 3, 8), hoy) == -2
        assert days_until_due(date(2026, 3, 10), hoy) == 0
        assert days_until_due(datetime(2026, 3, 17, 15, 30, tzinfo=timezone.utc), hoy) == 7
        assert days_until_due(None, hoy) is None

    def test_urgency_levels(self):
        """vencida < 0, urgente hasta 3 días, próximo hasta 7, luego normal"""
        casos = {
            -1: UrgenciaPago.VENCIDA,
            0: UrgenciaPago.URGENTE,
            3: UrgenciaPago.URGENTE,
            4: UrgenciaPago.PROXIMO,
            7: UrgenciaPago.PROXIMO,
            8: UrgenciaPago.NORMAL,
        }
        for dias, urgencia in casos.items():
            assert classify_urgency(dias) == urgencia


# ===== TESTS DE NOTAS =====

class TestNotas:
    """Tests de la decodificación del campo notas"""

    def test_empty_and_plain_text(self):
        assert decode_notas(None) is None
        assert decode_notas("   ") is None
        assert decode_notas("factura con copia física") is None

    def test_credit_note_link(self):
        """Nota de crédito con tipo explícito"""
        original_id = str(uuid4())
        notas = decode_notas(json.dumps({
            "tipo": "nota_credito", "factura_original_id": original_id, "valor_descuento": "1000"
        }))
        assert isinstance(notas, CreditNoteLink)
        assert notas.factura_original_id == original_id
        assert notas.valor_descuento == Decimal("1000")

    def test_legacy_link_recognized_by_clasificacion(self):
        """Registros antiguos: factura_aplicada_id sin tipo y clasificación nota_credito"""
        raw = json.dumps({"factura_aplicada_id": 42})
        notas = decode_notas(raw, "nota_credito")
        assert isinstance(notas, CreditNoteLink)
        assert notas.factura_original_id == "42"
        assert decode_notas(raw, "mercancia") is None

    def test_applied_list_takes_precedence(self):
        """La lista de notas aplicadas prevalece sobre total_con_descuentos"""
        notas = decode_notas(json.dumps({
            "notas_credito": [{"valor_descuento": 300}], "total_con_descuentos": 9999
        }))
        assert isinstance(notas, AppliedCreditNotes)
        assert notas.total_descuentos == Decimal("300")

    def test_discounted_total(self):
        notas = decode_notas(json.dumps({"total_con_descuentos": "7200.50"}))
        assert isinstance(notas, DiscountedTotal)
        assert notas.total_con_descuentos == Decimal("7200.50")

    def test_metadata_of_unexpected_type(self):
        """Fechas numéricas u otros tipos en campos descriptivos no invalidan las notas"""
        link = decode_notas(json.dumps({
            "tipo": "nota_credito", "factura_original_id": "X",
            "fecha_aplicacion": 1700000000000, "emisor_original": {"nombre": "Lácteos"},
        }))
        assert isinstance(link, CreditNoteLink)
        assert link.fecha_aplicacion == "1700000000000"

        aplicadas = decode_notas(json.dumps({"notas_credito": [
            {"valor_descuento": 1000, "fecha_aplicacion": 1700000000000, "numero_factura": 77},
            {"valor_descuento": 500, "fecha_aplicacion": None},
        ]}))
        assert isinstance(aplicadas, AppliedCreditNotes)
        assert aplicadas.total_descuentos == Decimal("1500")
        assert aplicadas.notas_credito[0].numero_factura == "77"

    def test_encode_decimals_as_numbers(self):
        data = json.loads(encode_notas({"valor": Decimal("1000"), "total": Decimal("10.5"), "emisor": "Tobías"}))
        assert data == {"valor": 1000, "total": 10.5, "emisor": "Tobías"}


# ===== TESTS DE VALIDACIONES NIT =====

class TestNitValidation:
    """Tests del NIT del emisor"""

    def test_calculate_nit_dv(self):
        assert calculate_nit_dv("860034313") == 7
        assert calculate_nit_dv("abc") is None

    def test_validate_emisor_nit(self):
        assert validate_emisor_nit("860034313")
        assert validate_emisor_nit("860.034.313-7")
        assert validate_emisor_nit("1020304050")
        assert not validate_emisor_nit("860034313-1")
        assert not validate_emisor_nit("12345")
        assert not validate_emisor_nit("NIT860034313")


# ===== TESTS DE PATRONES DE SERIE =====

class TestSeriePatterns:
    """Tests del análisis de números de serie"""

    def test_analyze_complex_pattern(self):
        pattern = analyze_pattern("FAC-0059")
        assert (pattern.prefix, pattern.numeric_part, pattern.suffix) == ("FAC-", 59, "")
        assert pattern.pattern_type == PATTERN_COMPLEX
        assert pattern.width == 4

    def test_analyze_numeric_pattern(self):
        pattern = analyze_pattern("59")
        assert (pattern.prefix, pattern.numeric_part, pattern.suffix) == ("", 59, "")
        assert pattern.pattern_type == PATTERN_NUMERIC

    def test_analyze_alphanumeric_pattern(self):
        pattern = analyze_pattern("A12B")
        assert (pattern.prefix, pattern.numeric_part, pattern.suffix) == ("A", 12, "B")
        assert pattern.pattern_type == PATTERN_ALPHANUMERIC

    def test_analyze_without_digits(self):
        """Sin dígitos todo es prefijo y el número es 1"""
        pattern = analyze_pattern("ABC")
        assert (pattern.prefix, pattern.numeric_part) == ("ABC", 1)
        assert analyze_pattern("").numeric_part == 0

    def test_generate_keeps_padding(self):
        assert generate_next_serie(analyze_pattern("FAC-009")) == "FAC-010"
        assert generate_next_serie(analyze_pattern("FAC-001"), 3) == "FAC-004"
        assert generate_next_serie(analyze_pattern("99")) == "100"

    def test_common_pattern_is_most_frequent(self):
        pattern = detect_common_pattern(["FAC-001", "FAC-003", "X-9", "FAC-002"])
        assert pattern.full_pattern == "FAC-003"

    def test_common_pattern_tie_prefers_highest(self):
        assert detect_common_pattern(["A-5", "B-9"]).full_pattern == "B-9"
        assert detect_common_pattern([]) is None

    def test_highest_pattern(self):
        assert find_highest_pattern(["FAC-001", "70", "B-9"]).full_pattern == "70"


# ===== TESTS DE SUGERENCIA DE SERIE =====

class TestSerieSuggestion:
    """Tests del servicio de sugerencia de números de serie"""

    def test_supplier_pattern(self):
        """FAC-001, FAC-002, FAC-003 del proveedor sugieren FAC-004"""
        repo = InMemorySerieRepository([("860034313", "FAC-003"), ("860034313", "FAC-002"), ("860034313", "FAC-001")])
        service = SerieSuggestionService(repo)
        assert run(service.suggest_next_serie("860034313")) == "FAC-004"
        assert repo.list_calls[0] == ("860034313", settings.SERIE_SUPPLIER_HISTORY_LIMIT)

    def test_skips_existing_series(self):
        """Si la candidata ya existe se prueba la siguiente"""
        repo = InMemorySerieRepository([
            ("900555111", "FAC-004"),
            ("860034313", "FAC-003"), ("860034313", "FAC-002"),
        ])
        assert run(SerieSuggestionService(repo).suggest_next_serie("860034313")) == "FAC-005"

    def test_global_numeric_fallback(self):
        """Proveedor sin historial y series globales 58, 59: sugiere 60"""
        repo = InMemorySerieRepository([("900555111", "59"), ("800111222", "58")])
        assert run(SerieSuggestionService(repo).suggest_next_serie("860034313")) == "60"

    def test_default_when_no_history(self):
        repo = InMemorySerieRepository([])
        assert run(SerieSuggestionService(repo).suggest_next_serie("860034313")) == "001"

    def test_exhausted_supplier_falls_back_to_global(self):
        """Al agotar los intentos del proveedor se usa la estrategia global"""
        repo = InMemorySerieRepository([
            ("900555111", "FAC-005"), ("900555111", "FAC-004"),
            ("860034313", "FAC-003"), ("860034313", "FAC-002"), ("860034313", "FAC-001"),
        ])
        service = SerieSuggestionService(repo, supplier_max_attempts=2)
        assert run(service.suggest_next_serie("860034313")) == "FAC-006"
        assert repo.list_calls[-1] == (None, settings.SERIE_GLOBAL_HISTORY_LIMIT)

    def test_global_common_pattern_after_highest_exhausted(self):
        """Si el patrón más alto global se agota se usa el patrón global más común"""
        repo = InMemorySerieRepository([
            ("800111222", "A-3"), ("800111222", "A-2"), ("900555111", "B-10"),
            ("800111222", "A-1"), ("700999888", "B-11"),
        ])
        service = SerieSuggestionService(repo, global_history_limit=4, global_max_attempts=1)
        assert run(service.suggest_next_serie("860034313")) == "A-4"

    def test_default_when_every_strategy_is_exhausted(self):
        """Con historial pero sin candidatas libres se sugiere el valor por defecto"""
        repo = InMemorySerieRepository([("800111222", "A-1"), ("700999888", "A-2")])
        service = SerieSuggestionService(repo, global_history_limit=1, global_max_attempts=1)
        assert run(service.suggest_next_serie("860034313")) == "001"

    def test_zero_supplier_attempts_goes_global(self):
        """0 intentos para el proveedor es un valor válido, no el valor por defecto"""
        repo = InMemorySerieRepository([
            ("860034313", "FAC-003"), ("860034313", "FAC-002"), ("900555111", "Z-50"),
        ])
        service = SerieSuggestionService(repo, supplier_max_attempts=0)
        assert service.supplier_max_attempts == 0
        assert run(service.suggest_next_serie("860034313")) == "Z-51"

    def test_repository_error_returns_none(self):
        """Un error al consultar no se propaga: no hay sugerencia"""
        service = SerieSuggestionService(InMemorySerieRepository(fail=True))
        assert run(service.suggest_next_serie("860034313")) is None

        info = run(service.get_pattern_info("860034313"))
        assert info.sugerencia is None
        assert info.ultimas_series == []
        assert info.patron is None

    def test_pattern_info(self):
        repo = InMemorySerieRepository([("860034313", "FAC-0010"), ("860034313", "FAC-0009")])
        info = run(SerieSuggestionService(repo).get_pattern_info("860034313"))
        assert info.sugerencia == "FAC-0011"
        assert info.ultimas_series == ["FAC-0010", "FAC-0009"]
        assert info.patron.prefix == "FAC-"
        assert info.patron.numeric_part == 10


# ===== TESTS DEL SERVICIO =====

class TestFacturaService:
    """Tests de las escrituras sobre facturas"""

    def test_classify_mercancia_with_serie(self):
        """La clasificación guarda la serie y recalcula el valor real"""
        factura = make_factura(total_a_pagar=Decimal("11900"), total_sin_iva=Decimal("10000"))
        session = FakeAsyncSession(factura, results=[[]])
        data = FacturaClassify(
            clasificacion=ClasificacionInput.MERCANCIA, tiene_retencion=True,
            monto_retencion=Decimal("5"), porcentaje_pronto_pago=Decimal("2"), numero_serie=" FAC-010 "
        )

        detail = run(FacturaService(session).classify_factura(factura.id, data))

        assert detail.clasificacion == "mercancia"
        assert detail.numero_serie == "FAC-010"
        assert detail.estado_mercancia == "pendiente"
        assert factura.valor_real_a_pagar == Decimal("11200.00")
        assert session.commits == 1

    def test_classify_duplicate_serie_conflict(self):
        """Una serie usada por otra factura responde 409"""
        factura = make_factura()
        session = FakeAsyncSession(factura, results=[[("FE-0777",)]])
        data = FacturaClassify(clasificacion=ClasificacionInput.MERCANCIA, numero_serie="FAC-010")

        with pytest.raises(HTTPException) as exc:
            run(FacturaService(session).classify_factura(factura.id, data))

        assert exc.value.status_code == 409
        assert factura.numero_serie is None
        assert session.commits == 0

    def test_classify_gasto_without_retention(self):
        """Gasto: no valida serie, retención 0 y pronto pago 0 queda vacío"""
        factura = make_factura()
        session = FakeAsyncSession(factura)
        data = FacturaClassify(
            clasificacion=ClasificacionInput.GASTO, tiene_retencion=False,
            monto_retencion=Decimal("4"), porcentaje_pronto_pago=Decimal("0"), numero_serie="FAC-010"
        )

        run(FacturaService(session).classify_factura(factura.id, data))

        assert session.executed == 0
        assert factura.numero_serie is None
        assert factura.monto_retencion == Decimal("0")
        assert factura.porcentaje_pronto_pago is None
        assert factura.valor_real_a_pagar == Decimal("10000.00")

    def test_classify_not_found(self):
        with pytest.raises(HTTPException) as exc:
            run(FacturaService(FakeAsyncSession()).classify_factura(
                uuid4(), FacturaClassify(clasificacion=ClasificacionInput.GASTO)
            ))
        assert exc.value.status_code == 404

    def test_mark_sistematizada_keeps_original(self):
        factura = make_factura(clasificacion="gasto")
        detail = run(FacturaService(FakeAsyncSession(factura)).mark_sistematizada(factura.id))
        assert detail.clasificacion == "sistematizada"
        assert detail.clasificacion_original == "gasto"

    def test_register_payment_with_early_payment(self):
        """El pronto pago solo se descuenta en las facturas indicadas"""
        con_descuento = make_factura(numero_factura="FE-1", porcentaje_pronto_pago=Decimal("2"))
        sin_descuento = make_factura(numero_factura="FE-2", porcentaje_pronto_pago=Decimal("2"))
        session = FakeAsyncSession(results=[[con_descuento, sin_descuento]])
        data = PaymentCreate(
            factura_ids=[con_descuento.id, sin_descuento.id],
            metodo_pago=MetodoPago.CAJA,
            fecha_pago=date(2026, 3, 15),
            pronto_pago_ids=[con_descuento.id],
        )

        result = run(FacturaService(session).register_payment(data))

        assert result.total_pagado == Decimal("19800.00")
        assert con_descuento.monto_pagado == Decimal("9800.00")
        assert con_descuento.uso_pronto_pago is True
        assert sin_descuento.monto_pagado == Decimal("10000.00")
        assert sin_descuento.uso_pronto_pago is False
        assert con_descuento.estado_mercancia == "pagada"
        assert con_descuento.metodo_pago == "Caja"
        assert con_descuento.fecha_pago.date() == date(2026, 3, 15)

    def test_register_payment_missing_factura(self):
        factura = make_factura()
        session = FakeAsyncSession(results=[[factura]])
        data = PaymentCreate(factura_ids=[factura.id, uuid4()], metodo_pago=MetodoPago.PAGO_BANCO)

        with pytest.raises(HTTPException) as exc:
            run(FacturaService(session).register_payment(data))
        assert exc.value.status_code == 404

    def test_register_payment_already_paid(self):
        factura = make_factura(estado_mercancia="pagada")
        session = FakeAsyncSession(results=[[factura]])
        data = PaymentCreate(factura_ids=[factura.id], metodo_pago=MetodoPago.PAGO_TOBIAS)

        with pytest.raises(HTTPException) as exc:
            run(FacturaService(session).register_payment(data))
        assert exc.value.status_code == 400

    def test_payment_rejects_repeated_facturas(self):
        """Una factura repetida en el pago se rechaza en vez de sumarse dos veces"""
        factura_id = uuid4()
        with pytest.raises(ValidationError):
            PaymentCreate(factura_ids=[factura_id, factura_id], metodo_pago=MetodoPago.CAJA)

    def test_create_manual_factura(self):
        """La factura manual valida la serie, genera CUFE manual y calcula el valor real"""
        session = FakeAsyncSession(results=[[]])
        user_id = uuid4()
        data = FacturaCreate(
            numero_factura=" FM-10 ", emisor_nombre="Ferretería El Tornillo", emisor_nit="860034313",
            total_a_pagar=Decimal("11900"), factura_iva=Decimal("1900"), factura_iva_porcentaje=Decimal("19"),
            fecha_emision=date(2026, 3, 1), fecha_vencimiento=date(2026, 3, 31),
            numero_serie="FAC-020", clasificacion=ClasificacionInput.MERCANCIA,
            porcentaje_pronto_pago=Decimal("2"),
        )

        detail = run(FacturaService(session).create_factura(data, user_id=user_id))

        factura = session.added[0]
        assert session.executed == 1
        assert session.commits == 1
        assert detail.numero_factura == "FM-10"
        assert factura.factura_cufe.startswith("MANUAL-FM-10-")
        assert factura.nombre_carpeta_factura.startswith("manual_FM-10_")
        assert factura.user_id == user_id
        assert factura.estado_mercancia == "pendiente"
        assert detail.fecha_vencimiento == date(2026, 3, 31)
        assert detail.valor_real_a_pagar == Decimal("11700.00")

    def test_create_manual_factura_already_paid(self):
        session = FakeAsyncSession()
        data = FacturaCreate(
            numero_factura="FM-11", emisor_nombre="Aseo Total", emisor_nit="860034313",
            total_a_pagar=Decimal("10000"), fecha_emision=date(2026, 3, 1),
            porcentaje_pronto_pago=Decimal("2"), pagada=True, metodo_pago=MetodoPago.CAJA,
            fecha_pago=date(2026, 3, 5), uso_pronto_pago=True,
        )

        run(FacturaService(session).create_factura(data))

        factura = session.added[0]
        assert session.executed == 0
        assert factura.estado_mercancia == "pagada"
        assert factura.metodo_pago == "Caja"
        assert factura.monto_pagado == Decimal("9800.00")
        assert factura.fecha_pago.date() == date(2026, 3, 5)

    def test_create_manual_factura_duplicate_serie(self):
        session = FakeAsyncSession(results=[[("FE-0777",)]])
        data = FacturaCreate(
            numero_factura="FM-12", emisor_nombre="Aseo Total", emisor_nit="860034313",
            total_a_pagar=Decimal("10000"), fecha_emision=date(2026, 3, 1), numero_serie="FAC-010",
        )

        with pytest.raises(HTTPException) as exc:
            run(FacturaService(session).create_factura(data))

        assert exc.value.status_code == 409
        assert session.added == []

    def test_manual_factura_validations(self):
        base = {
            "numero_factura": "FM-13", "emisor_nombre": "Aseo Total", "emisor_nit": "860034313",
            "total_a_pagar": 10000, "fecha_emision": "2026-03-10",
        }
        with pytest.raises(ValidationError):
            FacturaCreate(**base, pagada=True)
        with pytest.raises(ValidationError):
            FacturaCreate(**base, fecha_vencimiento="2026-03-01")
        with pytest.raises(ValidationError):
            FacturaCreate(**{**base, "total_a_pagar": 0})

    def test_update_recomputes_valor_real(self):
        """Editar total_sin_iva y fechas recalcula valor_real_a_pagar"""
        factura = make_factura(total_a_pagar=Decimal("11900"), porcentaje_pronto_pago=Decimal("2"))
        session = FakeAsyncSession(factura)
        data = FacturaUpdate(
            total_sin_iva=Decimal("9000"), fecha_emision=date(2026, 3, 1), fecha_vencimiento=date(2026, 4, 30)
        )

        detail = run(FacturaService(session).update_factura(factura.id, data))

        assert session.executed == 0
        assert factura.valor_real_a_pagar == Decimal("11720.00")
        assert detail.fecha_vencimiento == date(2026, 4, 30)
        assert detail.numero_factura == "FE-1001"

    def test_update_factura_iva_changes_base(self):
        """Sin total_sin_iva, editar el IVA cambia la base del pronto pago"""
        factura = make_factura(total_a_pagar=Decimal("11900"), porcentaje_pronto_pago=Decimal("2"))
        run(FacturaService(FakeAsyncSession(factura)).update_factura(
            factura.id, FacturaUpdate(factura_iva=Decimal("1900"))
        ))
        assert factura.valor_real_a_pagar == Decimal("11700.00")

    def test_update_clears_optional_field(self):
        factura = make_factura(total_a_pagar=Decimal("11900"), total_sin_iva=Decimal("5000"),
                               porcentaje_pronto_pago=Decimal("2"))
        run(FacturaService(FakeAsyncSession(factura)).update_factura(
            factura.id, FacturaUpdate.model_validate({"total_sin_iva": None})
        ))
        assert factura.total_sin_iva is None
        assert factura.valor_real_a_pagar == Decimal("11662.00")

    def test_update_serie_conflict(self):
        factura = make_factura(numero_serie="FAC-009")
        session = FakeAsyncSession(factura, results=[[("FE-0777",)]])

        with pytest.raises(HTTPException) as exc:
            run(FacturaService(session).update_factura(factura.id, FacturaUpdate(numero_serie="FAC-010")))

        assert exc.value.status_code == 409
        assert factura.numero_serie == "FAC-009"
        assert session.commits == 0

    def test_update_rejects_null_required_fields(self):
        with pytest.raises(ValidationError):
            FacturaUpdate.model_validate({"total_a_pagar": None})

    def test_pagos_proximos_by_due_date(self):
        """Las facturas sin pagar se ordenan por vencimiento con su urgencia"""
        hoy = date(2026, 3, 10)
        normal = make_factura(numero_factura="FE-4", fecha_vencimiento=date(2026, 4, 30))
        vencida = make_factura(numero_factura="FE-1", fecha_vencimiento=date(2026, 3, 8),
                               porcentaje_pronto_pago=Decimal("2"))
        proxima = make_factura(numero_factura="FE-3", fecha_vencimiento=date(2026, 3, 17))
        urgente = make_factura(numero_factura="FE-2", fecha_vencimiento=date(2026, 3, 12))
        sin_fecha = make_factura(numero_factura="FE-5")
        nota = make_factura(
            numero_factura="NC-1", fecha_vencimiento=date(2026, 3, 11),
            notas=json.dumps({"tipo": "nota_credito", "factura_original_id": str(uuid4())})
        )
        session = FakeAsyncSession(results=[[normal, vencida, nota, proxima, sin_fecha, urgente]])

        result = run(FacturaService(session).list_pagos_proximos(hoy=hoy))

        assert [p.numero_factura for p in result.items] == ["FE-1", "FE-2", "FE-3", "FE-4"]
        assert [p.dias_para_vencer for p in result.items] == [-2, 2, 7, 51]
        assert [p.urgencia for p in result.items] == [
            UrgenciaPago.VENCIDA, UrgenciaPago.URGENTE, UrgenciaPago.PROXIMO, UrgenciaPago.NORMAL
        ]
        assert result.vencidas.cantidad == 1
        assert result.vencidas.total == Decimal("9800.00")
        assert result.al_dia.total == Decimal("10000.00")
        assert result.sin_fecha.cantidad == 1
        assert [f.numero_factura for f in result.sin_fecha_vencimiento] == ["FE-5"]
        assert result.fecha_referencia == hoy

    def test_pagos_proximos_within_days(self):
        """Con un plazo en días las vencidas se mantienen y las lejanas se omiten"""
        hoy = date(2026, 3, 10)
        facturas = [
            make_factura(numero_factura="FE-1", fecha_vencimiento=date(2026, 2, 1)),
            make_factura(numero_factura="FE-2", fecha_vencimiento=date(2026, 3, 15)),
            make_factura(numero_factura="FE-3", fecha_vencimiento=date(2026, 3, 25)),
        ]
        result = run(FacturaService(FakeAsyncSession(results=[facturas])).list_pagos_proximos(hoy=hoy, dias=7))

        assert [p.numero_factura for p in result.items] == ["FE-1", "FE-2"]
        assert result.al_dia.cantidad == 0

    def test_apply_credit_notes(self):
        """Dos notas de crédito de 1000 y 500 dejan la factura en 8500"""
        original = make_factura(numero_factura="FE-100", total_a_pagar=Decimal("10000"))
        nota_1 = make_factura(numero_factura="NC-1", total_a_pagar=Decimal("1000"))
        nota_2 = make_factura(numero_factura="NC-2", total_a_pagar=Decimal("500"), clasificacion="gasto")
        service = FacturaService(FakeAsyncSession(original, nota_1, nota_2))

        run(service.apply_credit_note(nota_1.id, NotaCreditoApply(
            factura_original_id=original.id, valor_descuento=Decimal("1000")
        )))
        result = run(service.apply_credit_note(nota_2.id, NotaCreditoApply(
            factura_original_id=original.id, valor_descuento=Decimal("500")
        )))

        assert result.factura_original.valores.total_real == Decimal("8500.00")
        assert original.valor_real_a_pagar == Decimal("8500.00")
        assert nota_2.valor_real_a_pagar == Decimal("0.00")
        assert nota_2.clasificacion == "nota_credito"
        assert nota_2.clasificacion_original == "gasto"
        assert nota_2.estado_nota_credito == "aplicada"

        notas_original = json.loads(original.notas)
        assert [nc["numero_factura"] for nc in notas_original["notas_credito"]] == ["NC-1", "NC-2"]
        assert notas_original["total_con_descuentos"] == 8500
        assert notas_original["total_original"] == 10000

        link = decode_notas(nota_1.notas, nota_1.clasificacion)
        assert isinstance(link, CreditNoteLink)
        assert link.factura_original_id == str(original.id)
        assert link.numero_factura_original == "FE-100"

    def test_apply_credit_note_keeps_plain_text_notes(self):
        original = make_factura(notas="Entrega parcial")
        nota = make_factura(total_a_pagar=Decimal("300"))
        run(FacturaService(FakeAsyncSession(original, nota)).apply_credit_note(
            nota.id, NotaCreditoApply(factura_original_id=original.id, valor_descuento=Decimal("300"))
        ))
        assert json.loads(original.notas)["observaciones"] == "Entrega parcial"

    def test_apply_credit_note_validations(self):
        original = make_factura()
        nota = make_factura(total_a_pagar=Decimal("1000"))
        service = FacturaService(FakeAsyncSession(original, nota))

        with pytest.raises(HTTPException) as exc:
            run(service.apply_credit_note(nota.id, NotaCreditoApply(
                factura_original_id=original.id, valor_descuento=Decimal("1000.01")
            )))
        assert exc.value.status_code == 400

        with pytest.raises(HTTPException) as exc:
            run(service.apply_credit_note(nota.id, NotaCreditoApply(
                factura_original_id=nota.id, valor_descuento=Decimal("10")
            )))
        assert exc.value.status_code == 400

    def test_stats_buckets(self):
        facturas = [
            make_factura(),
            make_factura(clasificacion="mercancia", estado_mercancia="pendiente"),
            make_factura(clasificacion="mercancia", estado_mercancia="pagada"),
            make_factura(clasificacion="gasto", estado_mercancia="pendiente", total_a_pagar=Decimal("2500")),
            make_factura(clasificacion="sistematizada"),
            make_factura(clasificacion="nota_credito", estado_nota_credito="aplicada"),
        ]
        stats = run(FacturaService(FakeAsyncSession(results=[facturas])).get_stats())

        assert stats.total_facturas == 6
        assert stats.sin_clasificar.cantidad == 1
        assert stats.mercancia_pendiente.cantidad == 1
        assert stats.mercancia_pagada.cantidad == 1
        assert stats.gastos_pendientes.total == Decimal("2500")
        assert stats.gastos_pagados.cantidad == 0
        assert stats.sistematizadas.cantidad == 1
        assert stats.notas_credito.total == 0

    def test_create_from_webhook(self):
        session = FakeAsyncSession()
        data = FacturaWebhookIn(
            numero_factura="FE-2002", emisor_nombre="Lácteos del Valle", emisor_nit="860034313-7",
            total_a_pagar=Decimal("45000"), pdf_file_path="2026/03/FE-2002.pdf"
        )

        detail = run(FacturaService(session).create_from_webhook(data))

        assert len(session.added) == 1
        assert detail.valor_real_a_pagar == Decimal("45000.00")
        assert detail.pdf_file_path == "2026/03/FE-2002.pdf"


# ===== TESTS DE BACKFILL =====

class TestBackfill:
    """Tests del backfill de valor_real_a_pagar"""

    def test_backfill_in_batches(self):
        facturas = [make_factura(porcentaje_pronto_pago=Decimal("1")) for _ in range(5)]
        session = FakeSyncSession(facturas)

        report = run_backfill(session, batch_size=2)

        assert report.total_encontradas == 5
        assert report.actualizadas == 5
        assert report.lotes_completados == 3
        assert session.commits == 3
        assert all(f.valor_real_a_pagar == Decimal("9900.00") for f in facturas)

    def test_failed_batch_keeps_previous(self):
        """Si falla el segundo lote, el primero queda guardado"""
        facturas = [make_factura() for _ in range(5)]
        session = FakeSyncSession(facturas, fail_on_commit=2)

        with pytest.raises(BackfillError) as exc:
            run_backfill(session, batch_size=2)

        report = exc.value.report
        assert report.actualizadas == 2
        assert report.lotes_completados == 1
        assert report.lote_fallido == 2
        assert report.ids_fallidos == [facturas[2].id, facturas[3].id]
        assert report.ids_pendientes == [facturas[4].id]
        assert "conexión perdida" in report.error
        assert session.rollbacks == 1

    def test_failed_batch_with_lost_connection(self):
        """
        Con una sesión real (expire_on_commit) y la conexión caída, el reporte
        se arma sin volver a consultar la base
        """
        engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
        Base.metadata.create_all(engine, tables=[Profile.__table__, UserRole.__table__, Factura.__table__])
        inicio = datetime(2026, 1, 1, tzinfo=timezone.utc)
        facturas = [make_factura(created_at=inicio + timedelta(minutes=i)) for i in range(5)]
        ids = [f.id for f in facturas]
        with Session(engine) as setup:
            setup.add_all(facturas)
            setup.commit()

        conexion = {"caida": False, "commits": 0}

        @event.listens_for(engine, "before_cursor_execute")
        def rechazar_consultas(conn, cursor, statement, parameters, context, executemany):
            if conexion["caida"]:
                raise OperationalError(statement, parameters, Exception("server closed the connection unexpectedly"))

        session = Session(engine)

        @event.listens_for(session, "before_commit")
        def cortar_en_segundo_commit(sess):
            conexion["commits"] += 1
            if conexion["commits"] == 2:
                conexion["caida"] = True
                raise OperationalError("COMMIT", {}, Exception("server closed the connection unexpectedly"))

        try:
            with pytest.raises(BackfillError) as exc:
                run_backfill(session, batch_size=2)
        finally:
            session.close()

        report = exc.value.report
        assert report.lote_fallido == 2
        assert report.actualizadas == 2
        assert report.ids_fallidos == ids[2:4]
        assert report.ids_pendientes == [ids[4]]
        assert "server closed the connection" in report.error

        conexion["caida"] = False
        with Session(engine) as check:
            status = verify_backfill(check)
        assert status.total_facturas == 5
        assert status.sin_valor_real == 3
        engine.dispose()

    def test_celery_task_returns_report(self, monkeypatch):
        session = FakeSyncSession([make_factura(), make_factura()])
        monkeypatch.setattr(tasks, "SessionLocal", lambda: session)

        result = tasks.backfill_valor_real.apply(kwargs={"batch_size": 10}).get()

        assert result["actualizadas"] == 2
        assert result["error"] is None
        assert session.closed


# ===== TESTS DE API ENDPOINTS =====

class TestFacturaAPI:
    """Tests de endpoints API"""

    def test_health(self):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_requires_authentication(self):
        use_session(FakeAsyncSession())
        response = client.get("/facturas/")
        assert response.status_code in (401, 403)

    def test_list_facturas(self, as_user):
        facturas = [make_factura(), make_factura(numero_factura="FE-1002")]
        use_session(FakeAsyncSession(results=[facturas], count=2))

        response = client.get("/facturas/", params={"clasificacion": "sin_clasificar", "search": "FE"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["limit"] == settings.DEFAULT_PAGE_SIZE
        assert len(data["items"]) == 2
        assert "valores" in data["items"][0]

    def test_get_factura_with_valores(self, as_user):
        factura = make_factura(porcentaje_pronto_pago=Decimal("2"))
        use_session(FakeAsyncSession(factura))

        response = client.get(f"/facturas/{factura.id}")

        assert response.status_code == 200
        assert Decimal(str(response.json()["valores"]["valor_real_a_pagar"])) == Decimal("9800")

        response = client.get(f"/facturas/{factura.id}/valores")
        assert response.status_code == 200
        assert Decimal(str(response.json()["descuento_pronto_pago"])) == Decimal("200")

    def test_get_factura_not_found(self, as_user):
        use_session(FakeAsyncSession())
        response = client.get(f"/facturas/{uuid4()}")
        assert response.status_code == 404

    def test_serie_sugerida(self, as_user):
        repo = InMemorySerieRepository([("860034313", "FAC-003"), ("860034313", "FAC-002")])
        app.dependency_overrides[get_serie_repository] = lambda: repo

        response = client.get("/facturas/serie-sugerida/860034313")

        assert response.status_code == 200
        data = response.json()
        assert data["sugerencia"] == "FAC-004"
        assert data["ultimas_series"] == ["FAC-003", "FAC-002"]
        assert data["patron"]["prefix"] == "FAC-"

    def test_classify_conflict(self, as_user):
        factura = make_factura()
        use_session(FakeAsyncSession(factura, results=[[("FE-0777",)]]))

        response = client.patch(
            f"/facturas/{factura.id}/clasificacion",
            json={"clasificacion": "mercancia", "numero_serie": "FAC-010"}
        )

        assert response.status_code == 409

    def test_payment_early_payment_must_be_subset(self, as_user):
        use_session(FakeAsyncSession())
        response = client.post("/facturas/pagos", json={
            "factura_ids": [str(uuid4())],
            "metodo_pago": "Caja",
            "pronto_pago_ids": [str(uuid4())],
        })
        assert response.status_code == 422

    def test_payment_repeated_facturas(self, as_user):
        use_session(FakeAsyncSession())
        factura_id = str(uuid4())
        response = client.post("/facturas/pagos", json={
            "factura_ids": [factura_id, factura_id],
            "metodo_pago": "Pago Banco",
        })
        assert response.status_code == 422

    def test_create_factura(self, as_user):
        session = FakeAsyncSession()
        use_session(session)

        response = client.post("/facturas/", json={
            "numero_factura": "FM-20", "emisor_nombre": "Aseo Total", "emisor_nit": "860034313",
            "total_a_pagar": 11900, "factura_iva": 1900, "fecha_emision": "2026-03-01",
            "fecha_vencimiento": "2026-03-31", "clasificacion": "gasto",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["numero_factura"] == "FM-20"
        assert data["clasificacion"] == "gasto"
        assert Decimal(str(data["valores"]["base_sin_iva"])) == Decimal("10000")
        assert session.added[0].user_id == as_user.user_id

    def test_create_factura_invalid(self, as_user):
        use_session(FakeAsyncSession())
        response = client.post("/facturas/", json={
            "numero_factura": "FM-21", "emisor_nombre": "Aseo Total", "emisor_nit": "860034313",
            "total_a_pagar": 0, "fecha_emision": "2026-03-01",
        })
        assert response.status_code == 422

    def test_update_factura(self, as_user):
        factura = make_factura(total_a_pagar=Decimal("11900"), porcentaje_pronto_pago=Decimal("2"))
        use_session(FakeAsyncSession(factura))

        response = client.patch(f"/facturas/{factura.id}", json={
            "total_sin_iva": 9000, "fecha_vencimiento": "2026-04-30"
        })

        assert response.status_code == 200
        data = response.json()
        assert data["fecha_vencimiento"] == "2026-04-30"
        assert Decimal(str(data["valor_real_a_pagar"])) == Decimal("11720")

    def test_update_factura_not_found(self, as_user):
        use_session(FakeAsyncSession())
        response = client.patch(f"/facturas/{uuid4()}", json={"descripcion": "Ajuste"})
        assert response.status_code == 404

    def test_pagos_proximos(self, as_user):
        hoy = date.today()
        facturas = [
            make_factura(numero_factura="FE-2", fecha_vencimiento=hoy + timedelta(days=30)),
            make_factura(numero_factura="FE-1", fecha_vencimiento=hoy - timedelta(days=1)),
        ]
        use_session(FakeAsyncSession(results=[facturas]))

        response = client.get("/facturas/pagos-proximos")

        assert response.status_code == 200
        data = response.json()
        assert [item["numero_factura"] for item in data["items"]] == ["FE-1", "FE-2"]
        assert [item["urgencia"] for item in data["items"]] == ["vencida", "normal"]
        assert data["items"][0]["dias_para_vencer"] == -1
        assert data["vencidas"]["cantidad"] == 1

    def test_pdf_url(self, as_user):
        factura = make_factura(pdf_file_path="2026/03/FE-1001.pdf")
        use_session(FakeAsyncSession(factura))
        app.dependency_overrides[get_pdf_storage] = lambda: FakePDFStorage()

        response = client.get(f"/facturas/{factura.id}/pdf-url")

        assert response.status_code == 200
        data = response.json()
        assert "FE-1001.pdf" in data["url"]
        assert data["expires_in"] == settings.PDF_URL_EXPIRE_SECONDS

    def test_pdf_url_without_pdf(self, as_user):
        factura = make_factura()
        use_session(FakeAsyncSession(factura))
        app.dependency_overrides[get_pdf_storage] = lambda: FakePDFStorage()

        response = client.get(f"/facturas/{factura.id}/pdf-url")
        assert response.status_code == 404

    def test_webhook_requires_token(self):
        use_session(FakeAsyncSession())
        payload = {
            "numero_factura": "FE-3003", "emisor_nombre": "Aseo Total",
            "emisor_nit": "860034313", "total_a_pagar": 12000
        }

        response = client.post("/facturas/webhook", json=payload)
        assert response.status_code == 401

        response = client.post("/facturas/webhook", json=payload,
                               headers={"X-Webhook-Token": settings.WEBHOOK_TOKEN})
        assert response.status_code == 201
        assert response.json()["numero_factura"] == "FE-3003"

    def test_webhook_invalid_nit(self):
        use_session(FakeAsyncSession())
        response = client.post(
            "/facturas/webhook",
            json={"numero_factura": "FE-1", "emisor_nombre": "X", "emisor_nit": "860034313-1", "total_a_pagar": 1},
            headers={"X-Webhook-Token": settings.WEBHOOK_TOKEN}
        )
        assert response.status_code == 422

    def test_backfill_requires_admin(self, as_user):
        response = client.post("/facturas/backfill-valor-real")
        assert response.status_code == 403

    def test_backfill_endpoint(self, as_admin):
        session = FakeSyncSession([make_factura(), make_factura(), make_factura()])

        def fake_get_db():
            yield session

        app.dependency_overrides[get_db] = fake_get_db

        response = client.post("/facturas/backfill-valor-real", params={"batch_size": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["actualizadas"] == 3
        assert data["lotes_completados"] == 2
