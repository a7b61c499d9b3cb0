#!/usr/bin/env python3
"""
Backfill script for trips created before capacity tracking and fleet rows existed.

- Fills a missing trip orderId from its first delivery plan
- Mints a tripNo for trips that have none
- Recomputes plannedQty from the trip's delivery plans
- Creates the fleet row for every vehicle that lacks one
- Marks fleets carrying an ASSIGNED/ACTIVE trip with openTripId

Usage: python backfill_trips.py [--execute]
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
import os
from dotenv import load_dotenv
from pathlib import Path

from fleet_service import FleetService
from numbering_service import NumberingService

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ.get('MONGO_URI', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'fuel_logistics')]


async def plan_trip_fix(database, trip: dict) -> dict:
    """Field changes a legacy trip needs; empty when it is already consistent"""
    plans = await database.delivery_plans.find({"tripId": trip["id"]}, {"_id": 0}).to_list(1000)
    changes = {}
    if not trip.get("orderId") and plans:
        changes["orderId"] = plans[0]["orderId"]
    planned = sum(float(p.get("requiredQty") or 0) for p in plans)
    if float(trip.get("plannedQty") or 0) != planned:
        changes["plannedQty"] = planned
    return changes


async def backfill_trips(dry_run=True):
    print("=" * 80)
    print("BACKFILL: Trip orderId / tripNo / plannedQty and fleet rows")
    print("=" * 80)
    if dry_run:
        print("⚠️  DRY RUN MODE - No changes will be made")
    else:
        print("✓ LIVE MODE - Changes will be applied")
    print()

    numbering = NumberingService(db)
    results = {"trips": 0, "trip_fixes": 0, "trip_numbers": 0, "fleets_created": 0, "fleets_claimed": 0}

    print("1. Processing trips...")
    trips = await db.trips.find({}, {"_id": 0}).to_list(None)
    results["trips"] = len(trips)
    for trip in trips:
        changes = await plan_trip_fix(db, trip)
        if not trip.get("tripNo"):
            if dry_run:
                print(f"   [DRY RUN] Would mint tripNo for trip {trip['id']}")
            else:
                changes["tripNo"] = await numbering.next_trip_no(None, trip.get("depotCd", ""))
            results["trip_numbers"] += 1
        if not changes:
            continue
        results["trip_fixes"] += 1
        label = trip.get("tripNo") or trip["id"]
        if dry_run:
            print(f"   [DRY RUN] Would update trip {label}: {changes}")
        else:
            await db.trips.update_one({"id": trip["id"]}, {"$set": changes})
            print(f"   ✓ Updated trip {label}: {changes}")
    print()

    print("2. Syncing fleet rows from vehicles...")
    if dry_run:
        vehicles = await db.vehicles.find({}, {"_id": 0, "id": 1, "vehicleNo": 1}).to_list(None)
        for vehicle in vehicles:
            if not await db.fleets.find_one({"vehicleId": vehicle["id"]}, {"_id": 0, "id": 1}):
                results["fleets_created"] += 1
                print(f"   [DRY RUN] Would create fleet row for {vehicle.get('vehicleNo')}")
    else:
        summary = await FleetService(db).sync_from_vehicles()
        results["fleets_created"] = summary["created"]
        print(f"   ✓ Created {summary['created']} fleet rows for {summary['count']} vehicles")
    print()

    print("3. Marking fleets that carry an open trip...")
    open_trips = await db.trips.find(
        {"status": {"$in": ["ASSIGNED", "ACTIVE"]}, "fleetId": {"$ne": None}}, {"_id": 0, "id": 1, "fleetId": 1, "tripNo": 1}
    ).to_list(None)
    for trip in open_trips:
        fleet = await db.fleets.find_one({"id": trip["fleetId"], "openTripId": None}, {"_id": 0, "id": 1})
        if not fleet:
            continue
        results["fleets_claimed"] += 1
        if dry_run:
            print(f"   [DRY RUN] Would mark fleet {trip['fleetId']} busy with trip {trip.get('tripNo')}")
        else:
            await db.fleets.update_one({"id": trip["fleetId"], "openTripId": None}, {"$set": {"openTripId": trip["id"]}})
            print(f"   ✓ Fleet {trip['fleetId']} marked busy with trip {trip.get('tripNo')}")
    print()

    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print(f"Trips scanned: {results['trips']}")
    print(f"Trips updated: {results['trip_fixes']}")
    print(f"Trip numbers minted: {results['trip_numbers']}")
    print(f"Fleet rows created: {results['fleets_created']}")
    print(f"Fleets marked busy: {results['fleets_claimed']}")

    if dry_run:
        print()
        print("⚠️  This was a dry run. Run with --execute to apply changes.")
    return results


async def main():
    import argparse
    parser = argparse.ArgumentParser(description='Backfill legacy trips and fleet rows')
    parser.add_argument('--execute', action='store_true', help='Apply changes (default is dry run)')
    args = parser.parse_args()

    try:
        await backfill_trips(dry_run=not args.execute)
    except Exception as e:
        print(f"❌ ERROR: {str(e)}")
        import traceback
        traceback.print_exc()
    finally:
        client.close()

if __name__ == "__main__":
    asyncio.run(main())
