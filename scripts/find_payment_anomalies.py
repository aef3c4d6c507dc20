"""
Print booking/payment anomalies, optionally repairing unprojected completions.

Usage:
    python scripts/find_payment_anomalies.py [--repair]
    python scripts/find_payment_anomalies.py --resolve PAY-...   (after manual review)
"""
import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from app.database import close_db, get_db_context
from app.services.reconciliation_service import UNPROJECTED_COMPLETION, ReconciliationService


async def resolve(payment_id: str):
    async with get_db_context() as db:
        payment = await ReconciliationService(db).mark_reconciled(payment_id)
        print(f"{payment.payment_id} marked reconciled at {payment.reconciled_at}")

    await close_db()


async def main(repair: bool):
    async with get_db_context() as db:
        service = ReconciliationService(db)
        anomalies = await service.find_payment_anomalies()

        if not anomalies:
            print("No anomalies found.")
        for anomaly in anomalies:
            print(f"[{anomaly.kind}] payment={anomaly.payment_id} booking={anomaly.booking_id} "
                  f"payment_status={anomaly.payment_status} "
                  f"booking_payment_status={anomaly.booking_payment_status}"
                  + (f" refund={anomaly.refund_id}" if anomaly.refund_id else ""))

            if repair and anomaly.kind == UNPROJECTED_COMPLETION:
                booking = await service.repair_projection(anomaly.payment_id)
                print(f"  repaired -> {booking.booking_number} is now {booking.payment_status}")

    await close_db()


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    if "--resolve" in sys.argv:
        asyncio.run(resolve(sys.argv[sys.argv.index("--resolve") + 1]))
    else:
        asyncio.run(main("--repair" in sys.argv))
