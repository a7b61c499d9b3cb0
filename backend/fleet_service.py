"""
Fleet Service - vehicle/driver pairing and fleet allocation to orders
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from errors import Conflict, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

OPEN_TRIP_STATUSES = ["ASSIGNED", "ACTIVE"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FleetService:
    def __init__(self, db):
        self.db = db

    async def ensure_shell(self, vehicle: dict) -> bool:
        """Create the fleet row for a vehicle if it is missing; True when created"""
        result = await self.db.fleets.update_one(
            {"vehicleId": vehicle["id"]},
            {"$setOnInsert": {
                "id": str(uuid.uuid4()),
                "driverId": None,
                "openTripId": None,
                "depotCd": vehicle.get("depotCd"),
                "gpsYesNo": bool(vehicle.get("gpsYesNo")),
                "createdAt": _now()
            }},
            upsert=True
        )
        return result.upserted_id is not None

    async def sync_from_vehicles(self) -> Dict:
        vehicles = await self.db.vehicles.find({}, {"_id": 0}).to_list(10000)
        created = 0
        for vehicle in vehicles:
            if await self.ensure_shell(vehicle):
                created += 1
        logger.info(f"Fleet sync: {len(vehicles)} vehicles, {created} new fleet rows")
        return {"ok": True, "count": len(vehicles), "created": created}

    async def list(self, q: str = "", depot_cd: str = "", gps: str = "",
                   scope_depot: Optional[str] = None) -> List[dict]:
        query: Dict = {}
        if depot_cd:
            query["depotCd"] = depot_cd
        if scope_depot:
            query["depotCd"] = scope_depot
        if gps == "yes":
            query["gpsYesNo"] = True
        elif gps == "no":
            query["gpsYesNo"] = False

        fleets = await self.db.fleets.find(query, {"_id": 0}).to_list(1000)
        vehicle_ids = [f["vehicleId"] for f in fleets if f.get("vehicleId")]
        driver_ids = [f["driverId"] for f in fleets if f.get("driverId")]
        vehicles = {v["id"]: v for v in await self.db.vehicles.find({"id": {"$in": vehicle_ids}}, {"_id": 0}).to_list(1000)}
        drivers = {d["id"]: d for d in await self.db.drivers.find({"id": {"$in": driver_ids}}, {"_id": 0}).to_list(1000)}
        open_trips = await self.db.trips.find(
            {"fleetId": {"$in": [f["id"] for f in fleets]}, "status": {"$in": OPEN_TRIP_STATUSES}},
            {"_id": 0, "fleetId": 1}
        ).to_list(1000)
        busy = {t["fleetId"] for t in open_trips} | {f["id"] for f in fleets if f.get("openTripId")}

        result = []
        needle = (q or "").strip().lower()
        for fleet in fleets:
            vehicle = vehicles.get(fleet.get("vehicleId")) or {}
            driver = drivers.get(fleet.get("driverId")) or {}
            if needle:
                haystack = [vehicle.get("vehicleNo"), vehicle.get("brand"), vehicle.get("model"),
                            vehicle.get("depotCd"), driver.get("driverName")]
                if not any(needle in str(h or "").lower() for h in haystack):
                    continue
            result.append({**fleet, "vehicle": vehicle or None, "driver": driver or None,
                           "isAllocated": fleet["id"] in busy})
        return result

    async def assign_driver(self, vehicle_id: str, driver_id: str, assigned_by: Optional[str] = None) -> dict:
        if not vehicle_id or not driver_id:
            raise ValidationFailed("vehicleId and driverId are required")
        vehicle = await self.db.vehicles.find_one({"id": vehicle_id}, {"_id": 0})
        if not vehicle:
            raise NotFound("Vehicle")
        driver = await self.db.drivers.find_one({"id": driver_id}, {"_id": 0})
        if not driver:
            raise NotFound("Driver")

        paired = await self.db.fleets.find_one(
            {"driverId": driver_id, "vehicleId": {"$ne": vehicle_id}}, {"_id": 0}
        )
        if paired:
            raise Conflict("Driver is already paired with another vehicle", error_code="DRIVER_PAIRED")

        await self.ensure_shell(vehicle)
        fleet = await self.db.fleets.find_one_and_update(
            {"vehicleId": vehicle_id},
            {"$set": {
                "driverId": driver_id,
                "depotCd": vehicle.get("depotCd"),
                "gpsYesNo": bool(vehicle.get("gpsYesNo")),
                "assignedAt": _now(),
                "assignedBy": assigned_by or "system"
            }},
            return_document=True
        )
        fleet.pop("_id", None)
        logger.info(f"Driver {driver.get('driverName')} paired with {vehicle.get('vehicleNo')}")
        return {**fleet, "vehicle": vehicle, "driver": driver}

    async def release_driver(self, vehicle_id: str) -> dict:
        if not vehicle_id:
            raise ValidationFailed("vehicleId is required", field="vehicleId")
        fleet = await self.db.fleets.find_one({"vehicleId": vehicle_id}, {"_id": 0})
        if not fleet:
            raise NotFound("Fleet")
        if await self.db.trips.find_one({"fleetId": fleet["id"], "status": {"$in": OPEN_TRIP_STATUSES}}, {"_id": 0, "id": 1}):
            raise Conflict("Fleet has an open trip", error_code="FLEET_BUSY")
        released = await self.db.fleets.find_one_and_update(
            {"vehicleId": vehicle_id, "openTripId": None},
            {"$set": {"driverId": None}, "$unset": {"assignedAt": "", "assignedBy": ""}},
            return_document=True
        )
        if released is None:
            raise Conflict("Fleet has an open trip", error_code="FLEET_BUSY")
        released.pop("_id", None)
        return released

    async def allocate_to_order(self, fleet_id: str, order_id: str) -> dict:
        if not order_id:
            raise ValidationFailed("orderId is required", field="orderId")
        fleet = await self.db.fleets.find_one({"id": fleet_id}, {"_id": 0})
        if not fleet:
            raise NotFound("Fleet")
        order = await self.db.orders.find_one({"id": order_id}, {"_id": 0})
        if not order:
            raise NotFound("Order")
        if order.get("fleetId") and order["fleetId"] != fleet_id:
            raise Conflict("This order is allocated to a different fleet", error_code="FLEET_MISMATCH")

        vehicle = await self.db.vehicles.find_one({"id": fleet.get("vehicleId")}, {"_id": 0}) or {}
        updated = await self.db.orders.find_one_and_update(
            {"id": order_id},
            {"$set": {
                "fleetId": fleet_id,
                "vehicleNo": vehicle.get("vehicleNo", ""),
                "driverId": fleet.get("driverId"),
                "allocatedAt": _now(),
                "updatedAt": _now()
            }},
            return_document=True
        )
        updated.pop("_id", None)
        return updated

    async def release_from_order(self, fleet_id: str, order_id: str) -> dict:
        if not order_id:
            raise ValidationFailed("orderId is required", field="orderId")
        order = await self.db.orders.find_one({"id": order_id}, {"_id": 0})
        if not order:
            raise NotFound("Order")
        if order.get("fleetId") and order["fleetId"] != fleet_id:
            raise Conflict("This order is not allocated to the specified fleet", error_code="FLEET_MISMATCH")
        updated = await self.db.orders.find_one_and_update(
            {"id": order_id},
            {"$set": {"fleetId": None, "vehicleNo": "", "driverId": None, "updatedAt": _now()}},
            return_document=True
        )
        updated.pop("_id", None)
        return updated
