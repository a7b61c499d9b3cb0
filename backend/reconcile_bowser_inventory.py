#!/usr/bin/env python3
"""
Compare every bowser balance with the closing stock of its latest ledger row.

Usage: python reconcile_bowser_inventory.py [--execute]

With --execute, a mismatched balance is reset to the ledger closing stock and
an ADJUSTMENT row is written so the ledger stays continuous.
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
import os
from dotenv import load_dotenv
from pathlib import Path

from inventory_service import InventoryService

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ.get('MONGO_URI', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'fuel_logistics')]

TOLERANCE = 0.001


async def find_discrepancies(database) -> list:
    discrepancies = []
    inventories = await database.bowser_inventories.find({}, {"_id": 0}).to_list(None)
    for inv in inventories:
        last = await database.bowser_ledger.find(
            {"vehicleNo": inv["vehicleNo"]}, {"_id": 0}
        ).sort("timeStamp", -1).limit(1).to_list(1)
        if not last:
            continue
        balance = float(inv.get("balanceLiters", 0))
        ledger_closing = float(last[0].get("clStock", 0))
        if abs(balance - ledger_closing) > TOLERANCE:
            discrepancies.append({
                "vehicleNo": inv["vehicleNo"],
                "balanceLiters": balance,
                "ledgerClosing": ledger_closing,
                "difference": round(balance - ledger_closing, 3)
            })
    return discrepancies


async def reconcile(dry_run=True):
    print("=" * 80)
    print("RECONCILE: Bowser balances vs ledger")
    print("=" * 80)
    if dry_run:
        print("⚠️  DRY RUN MODE - No changes will be made")
    print()

    discrepancies = await find_discrepancies(db)
    if not discrepancies:
        print("✓ All bowser balances match their ledger")
        return discrepancies

    service = InventoryService(db)
    for d in discrepancies:
        print(f"   {d['vehicleNo']}: balance {d['balanceLiters']} L, "
              f"ledger {d['ledgerClosing']} L (diff {d['difference']})")
        if not dry_run:
            await service.adjust(d["vehicleNo"], -d["difference"], "RECONCILE")
            print(f"   ✓ Adjusted {d['vehicleNo']} to {d['ledgerClosing']} L")

    print()
    print(f"Vehicles out of balance: {len(discrepancies)}")
    if dry_run:
        print("⚠️  This was a dry run. Run with --execute to apply changes.")
    return discrepancies


async def main():
    import argparse
    parser = argparse.ArgumentParser(description='Reconcile bowser balances with the ledger')
    parser.add_argument('--execute', action='store_true', help='Apply adjustments (default is dry run)')
    args = parser.parse_args()

    try:
        await reconcile(dry_run=not args.execute)
    except Exception as e:
        print(f"❌ ERROR: {str(e)}")
        import traceback
        traceback.print_exc()
    finally:
        client.close()

if __name__ == "__main__":
    asyncio.run(main())
