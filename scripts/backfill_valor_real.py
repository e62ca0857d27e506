"""
Backfill script: persist valor_real_a_pagar for invoices that don't have it.

Processes the facturas table in batches; each batch is committed on its own,
so a failure keeps the batches already saved. Re-running only picks up what
is still pending.

Run inside the API container to use 'postgres' host and project PYTHONPATH:
    docker compose exec api python scripts/backfill_valor_real.py --batch-size 100

Check what is pending without writing anything:
    docker compose exec api python scripts/backfill_valor_real.py --verify
"""

# Add project root (/code) to sys.path so `app.*` imports work even if CWD changes
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse

from app.database.database import SessionLocal
from app.core.config import settings
from app.modules.facturas.backfill import BackfillError, run_backfill, verify_backfill


def print_status(db):
    status = verify_backfill(db)
    print(f"Facturas: {status.total_facturas}")
    print(f"Sin valor_real_a_pagar: {status.sin_valor_real}")
    if status.numeros_pendientes:
        print("Ejemplos pendientes: " + ", ".join(status.numeros_pendientes))


def main():
    parser = argparse.ArgumentParser(description="Backfill de valor_real_a_pagar")
    parser.add_argument("--batch-size", type=int, default=settings.BACKFILL_BATCH_SIZE)
    parser.add_argument("--verify", action="store_true", help="Solo mostrar las facturas pendientes")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        if args.verify:
            print_status(db)
            return 0

        try:
            report = run_backfill(db, args.batch_size)
        except BackfillError as e:
            report = e.report
            print(f"❌ Lote {report.lote_fallido} falló: {report.error}")
            print(f"   Guardadas antes del fallo: {report.actualizadas}/{report.total_encontradas}")
            print(f"   Pendientes: {len(report.ids_fallidos) + len(report.ids_pendientes)}")
            return 1

        print(f"✅ {report.actualizadas}/{report.total_encontradas} facturas actualizadas "
              f"en {report.lotes_completados} lotes")
        print_status(db)
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
