import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import inspect
from app.database import engine

EXPECTED_TABLES = {"bookings", "booking_timeline", "payments", "payment_refunds"}


async def check_tables():
    async with engine.begin() as conn:
        print("Checking tables...")
        tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        print(f"Found tables: {sorted(tables)}")

        missing = EXPECTED_TABLES - tables
        if missing:
            print(f"Missing tables: {sorted(missing)}")

        if "payments" in tables:
            indexes = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_indexes("payments")
            )
            names = [ix["name"] for ix in indexes]
            print(f"payments indexes: {names}")
            if "uq_payments_active_booking" not in names:
                print("WARNING: one-active-payment index is missing")

    await engine.dispose()

if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    asyncio.run(check_tables())
