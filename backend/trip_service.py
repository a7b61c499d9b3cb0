"""
Trip Service - trip assignment, capacity reservation and the trip lifecycle

    ASSIGNED --(login)--> ACTIVE --(logout)--> COMPLETED

Status transitions, order claims and capacity reservations are each one
conditional update; later steps that fail undo the earlier ones.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from errors import (
    CapacityExceeded,
    Conflict,
    Forbidden,
    NotFound,
    ValidationFailed,
)
from inventory_service import InventoryService, trip_vehicle_no
from invoice_service import InvoiceService
from numbering_service import NumberingService
import notification_service

logger = logging.getLogger(__name__)

TRIP_ASSIGNED = "ASSIGNED"
TRIP_ACTIVE = "ACTIVE"
TRIP_COMPLETED = "COMPLETED"
OPEN_TRIP_STATUSES = [TRIP_ASSIGNED, TRIP_ACTIVE]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _positive(value) -> Optional[float]:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def resolve_capacity(explicit, vehicle: Optional[dict]) -> float:
    """Explicit capacity, then the vehicle's calibrated capacity, then its nominal capacity"""
    vehicle = vehicle or {}
    for candidate in (explicit, vehicle.get("calibratedCapacity"), vehicle.get("capacity")):
        capacity = _positive(candidate)
        if capacity is not None:
            return capacity
    raise ValidationFailed("Vehicle capacity is not configured", field="capacity")


def order_quantity(order: dict) -> float:
    return sum(float(item.get("quantity") or 0) for item in order.get("items") or [])


class TripService:
    def __init__(self, db):
        self.db = db
        self.numbering = NumberingService(db)
        self.inventory = InventoryService(db)

    # ==================== CLAIMS ====================

    async def _claim_order(self, order_id: str, trip: dict) -> dict:
        snap = trip["snapshot"]
        claimed = await self.db.orders.find_one_and_update(
            {"id": order_id, "orderStatus": "PENDING"},
            {"$set": {
                "orderStatus": "ASSIGNED",
                "allocatedAt": _now(),
                "tripId": trip["id"],
                "fleetId": trip["fleetId"],
                "vehicleNo": snap["vehicleNo"],
                "driverId": snap["driverId"],
                "updatedAt": _now()
            }},
            return_document=True
        )
        if claimed is None:
            raise Conflict("Order is no longer pending", error_code="ORDER_NOT_PENDING")
        return claimed

    async def _release_order(self, order_id: str, trip_id: str):
        await self.db.orders.update_one(
            {"id": order_id, "tripId": trip_id},
            {
                "$set": {"orderStatus": "PENDING", "updatedAt": _now()},
                "$unset": {"tripId": "", "fleetId": "", "vehicleNo": "", "driverId": "", "allocatedAt": ""}
            }
        )

    async def _claim_fleet(self, fleet_id: str, trip: dict):
        claimed = await self.db.fleets.find_one_and_update(
            {"id": fleet_id, "openTripId": None},
            {"$set": {"openTripId": trip["id"], "updatedAt": _now()}},
            return_document=True
        )
        if claimed is None:
            raise Conflict("Fleet already has an open trip", error_code="FLEET_BUSY")

    async def _release_fleet(self, fleet_id: Optional[str], trip_id: str):
        await self.db.fleets.update_one(
            {"id": fleet_id, "openTripId": trip_id},
            {"$set": {"openTripId": None, "updatedAt": _now()}}
        )

    async def _seed_plan(self, trip: dict, order: dict, qty: float) -> dict:
        """DeliveryPlan row plus the placeholder Delivery filled in at drop-off"""
        now = _now()
        plan = {
            "id": str(uuid.uuid4()),
            "tripId": trip["id"],
            "orderId": order["id"],
            "customerId": order.get("customerId"),
            "shipTo": order.get("shipToAddress"),
            "requiredQty": qty,
            "createdAt": now
        }
        await self.db.delivery_plans.insert_one(plan)
        await self.db.deliveries.insert_one({
            "id": str(uuid.uuid4()),
            "tripId": trip["id"],
            "orderId": order["id"],
            "customerId": order.get("customerId"),
            "shipTo": order.get("shipToAddress"),
            "qty": 0,
            "rate": 0,
            "dcNo": None,
            "createdAt": now
        })
        plan.pop("_id", None)
        return plan

    # ==================== ASSIGNMENT ====================

    async def assign_trip(self, data: dict, user: Optional[dict] = None) -> Dict:
        fleet_id = data.get("fleetId")
        order_id = data.get("orderId")
        if not fleet_id or not order_id:
            raise ValidationFailed("fleetId and orderId are required")

        fleet = await self.db.fleets.find_one({"id": fleet_id}, {"_id": 0})
        if not fleet:
            raise NotFound("Fleet")
        if not fleet.get("driverId"):
            raise ValidationFailed("Fleet has no driver assigned", field="fleetId")
        vehicle = await self.db.vehicles.find_one({"id": fleet.get("vehicleId")}, {"_id": 0})
        if not vehicle:
            raise NotFound("Vehicle")

        open_trip = await self.db.trips.find_one(
            {"fleetId": fleet_id, "status": {"$in": OPEN_TRIP_STATUSES}}, {"_id": 0, "tripNo": 1}
        )
        if open_trip:
            raise Conflict(f"Fleet already has open trip {open_trip.get('tripNo')}", error_code="FLEET_BUSY")

        order = await self.db.orders.find_one({"id": order_id}, {"_id": 0})
        if not order:
            raise NotFound("Order")
        if order.get("orderStatus") != "PENDING":
            raise ValidationFailed("Order is not pending", field="orderId")

        capacity = resolve_capacity(data.get("capacity"), vehicle)
        qty = order_quantity(order)
        if qty > capacity:
            raise CapacityExceeded(qty, capacity)

        trip_no = await self.numbering.next_trip_no(data.get("tripNo"), vehicle.get("depotCd", ""))
        if await self.db.trips.find_one({"tripNo": trip_no}, {"_id": 0, "id": 1}):
            raise Conflict(f"Trip number {trip_no} already exists", error_code="DUPLICATE_TRIP_NO")

        snapshot = {
            "driverId": fleet["driverId"],
            "vehicleId": vehicle["id"],
            "vehicleNo": vehicle["vehicleNo"],
            "depotCd": vehicle.get("depotCd"),
            "gpsYesNo": vehicle.get("gpsYesNo", False),
            "capacity": capacity
        }
        now = _now()
        trip = {
            "id": str(uuid.uuid4()),
            "tripNo": trip_no,
            "orderId": order_id,
            "fleetId": fleet_id,
            "snapshot": snapshot,
            "vehicleNo": vehicle["vehicleNo"],
            "driverId": fleet["driverId"],
            "depotCd": vehicle.get("depotCd"),
            "capacity": capacity,
            "plannedQty": qty,
            "status": TRIP_ASSIGNED,
            "routeId": data.get("routeId") or vehicle.get("routeId"),
            "remarks": data.get("remarks"),
            "createdBy": (user or {}).get("userId"),
            "createdAt": now,
            "updatedAt": now
        }

        await self._claim_fleet(fleet_id, trip)
        try:
            await self._claim_order(order_id, trip)
        except Conflict:
            await self._release_fleet(fleet_id, trip["id"])
            raise
        try:
            await self.db.trips.insert_one(trip)
        except DuplicateKeyError:
            await self._release_order(order_id, trip["id"])
            await self._release_fleet(fleet_id, trip["id"])
            raise Conflict(f"Trip number {trip_no} already exists", error_code="DUPLICATE_TRIP_NO")
        trip.pop("_id", None)

        plan = await self._seed_plan(trip, order, qty)
        logger.info(f"Trip {trip_no} assigned: fleet {fleet_id}, order {order.get('orderNo')}, {qty}/{capacity} L")
        return {"message": "Trip assigned", "trip": trip, "plan": plan}

    async def add_order(self, trip_id: str, order_id: str, user: Optional[dict] = None) -> Dict:
        """Append a pending order to an open trip, reserving from its remaining capacity"""
        if not order_id:
            raise ValidationFailed("orderId is required", field="orderId")
        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip:
            raise NotFound("Trip")
        if trip.get("status") not in OPEN_TRIP_STATUSES:
            raise ValidationFailed("Trip is not open for new orders", field="tripId")

        if await self.db.delivery_plans.find_one({"tripId": trip_id, "orderId": order_id}, {"_id": 0, "id": 1}):
            raise Conflict("Order is already planned on this trip", error_code="ALREADY_PLANNED")

        order = await self.db.orders.find_one({"id": order_id}, {"_id": 0})
        if not order:
            raise NotFound("Order")
        if order.get("orderStatus") != "PENDING":
            raise ValidationFailed("Order is not pending", field="orderId")

        capacity = float(trip["capacity"])
        qty = order_quantity(order)
        remaining = capacity - float(trip.get("plannedQty") or 0)
        if qty > remaining:
            raise CapacityExceeded(qty, remaining)

        await self._claim_order(order_id, trip)
        reserved = await self.db.trips.find_one_and_update(
            {"id": trip_id, "status": {"$in": OPEN_TRIP_STATUSES}, "plannedQty": {"$lte": capacity - qty}},
            {"$inc": {"plannedQty": qty}, "$set": {"updatedAt": _now()}},
            return_document=True
        )
        if reserved is None:
            await self._release_order(order_id, trip_id)
            latest = await self.db.trips.find_one({"id": trip_id}, {"_id": 0, "plannedQty": 1})
            raise CapacityExceeded(qty, capacity - float((latest or {}).get("plannedQty") or 0))

        plan = await self._seed_plan(trip, order, qty)
        logger.info(f"Order {order.get('orderNo')} added to trip {trip.get('tripNo')} ({qty} L)")
        return {
            "message": "Order added to trip",
            "plan": plan,
            "plannedQty": reserved["plannedQty"],
            "remaining": capacity - float(reserved["plannedQty"])
        }

    async def capacity_summary(self, trip_id: str) -> Dict:
        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip:
            raise NotFound("Trip")
        plans = await self.db.delivery_plans.find({"tripId": trip_id}, {"_id": 0}).to_list(1000)
        planned = sum(float(p.get("requiredQty") or 0) for p in plans)
        capacity = float(trip.get("capacity") or 0)
        return {"capacity": capacity, "plannedQty": planned, "remaining": capacity - planned}

    # ==================== LIFECYCLE ====================

    async def login(self, data: dict, user: Optional[dict] = None) -> Dict:
        if data.get("startKm") is None or data.get("totalizerStart") is None:
            raise ValidationFailed("startKm and totalizerStart are required")

        trip = None
        if data.get("tripId"):
            trip = await self.db.trips.find_one({"id": data["tripId"], "status": TRIP_ASSIGNED}, {"_id": 0})
        if not trip and data.get("driverId") and data.get("vehicleNo"):
            trip = await self.db.trips.find_one(
                {"driverId": data["driverId"], "vehicleNo": data["vehicleNo"], "status": TRIP_ASSIGNED},
                {"_id": 0}
            )
        if not trip:
            raise Forbidden("No assigned trip to start. Please check back later.")
        if user and user.get("userType") == "D" and user.get("driverId") != trip.get("driverId"):
            raise Forbidden("Trip is assigned to another driver")

        diesel_opening = await self.inventory.balance(trip_vehicle_no(trip))
        now = _now()
        update = {
            "status": TRIP_ACTIVE,
            "startKm": data["startKm"],
            "totalizerStart": data["totalizerStart"],
            "dieselOpening": diesel_opening,
            "loginTime": now,
            "updatedAt": now
        }
        if data.get("routeId"):
            update["routeId"] = data["routeId"]
        if data.get("remarks") is not None:
            update["remarks"] = data["remarks"]

        started = await self.db.trips.find_one_and_update(
            {"id": trip["id"], "status": TRIP_ASSIGNED},
            {"$set": update},
            return_document=True
        )
        if started is None:
            raise Conflict("Trip was already started", error_code="TRIP_STATE_CHANGED")

        await self.db.drivers.update_one({"id": trip["driverId"]}, {"$set": {"currentTripId": trip["id"]}})
        deliveries = await self.inventory.pending_deliveries(trip["id"])
        logger.info(f"Trip {trip.get('tripNo')} started at {data['startKm']} km")
        return {
            "message": "Trip started successfully",
            "tripId": trip["id"],
            "tripNo": trip.get("tripNo"),
            "dieselOpening": diesel_opening,
            "deliveries": deliveries
        }

    async def logout(self, data: dict, user: Optional[dict] = None) -> Dict:
        trip_id = data.get("tripId")
        end_km = data.get("endKm")
        totalizer_end = data.get("totalizerEnd")
        if not trip_id or end_km is None or totalizer_end is None:
            raise ValidationFailed("tripId, endKm, and totalizerEnd are required")

        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip or trip.get("status") != TRIP_ACTIVE:
            raise ValidationFailed("No active trip found to end", field="tripId")
        if trip.get("startKm") is not None and float(end_km) < float(trip["startKm"]):
            raise ValidationFailed("endKm cannot be less than startKm", field="endKm")

        deliveries = await self.inventory.completed_deliveries(trip_id)
        if not deliveries:
            raise ValidationFailed("No deliveries made on this trip")

        now = _now()
        closed = await self.db.trips.find_one_and_update(
            {"id": trip_id, "status": TRIP_ACTIVE},
            {"$set": {
                "status": TRIP_COMPLETED,
                "endKm": end_km,
                "totalizerEnd": totalizer_end,
                "logoutTime": now,
                "updatedAt": now
            }},
            return_document=True
        )
        if closed is None:
            raise Conflict("Trip was already closed", error_code="TRIP_STATE_CHANGED")
        closed.pop("_id", None)

        invoices = await self._invoice_deliveries(closed, deliveries)

        await self.db.vehicles.update_one(
            {"vehicleNo": trip_vehicle_no(closed)},
            {"$set": {"lastKm": end_km, "lastTotalizer": totalizer_end, "updatedAt": now}}
        )
        await self.db.deliveries.delete_many({"tripId": trip_id, "dcNo": None})

        plans = await self.db.delivery_plans.find({"tripId": trip_id}, {"_id": 0, "orderId": 1}).to_list(1000)
        order_ids = list({p["orderId"] for p in plans} | {closed.get("orderId")} - {None})
        await self.db.orders.update_many(
            {"id": {"$in": order_ids}},
            {"$set": {"orderStatus": "COMPLETED", "completedAt": now, "updatedAt": now}}
        )
        await self.db.drivers.update_one(
            {"id": closed.get("driverId"), "currentTripId": trip_id},
            {"$set": {"currentTripId": None}}
        )
        await self._release_fleet(closed.get("fleetId"), trip_id)

        await notification_service.notify_trip_closed(closed, invoices)
        logger.info(f"Trip {closed.get('tripNo')} closed with {len(invoices)} invoice(s)")
        return {"message": "Trip closed and orders invoiced", "trip": closed, "invoices": invoices}

    async def _invoice_deliveries(self, trip: dict, deliveries: List[dict]) -> List[dict]:
        """One invoice per delivery; on failure the trip goes back to ACTIVE with no invoices"""
        trip_id = trip["id"]
        builder = InvoiceService(self.db)
        await self.db.invoices.delete_many({"tripId": trip_id, "source": "TRIP_CLOSE"})
        invoices = []
        try:
            for delivery in deliveries:
                invoices.append(await builder.create_delivery_invoice(trip, delivery))
        except Exception as e:
            logger.error(f"Invoicing failed for trip {trip.get('tripNo')}, reopening: {e}")
            await self.db.invoices.delete_many({"tripId": trip_id, "source": "TRIP_CLOSE"})
            await self.db.trips.update_one(
                {"id": trip_id, "status": TRIP_COMPLETED},
                {
                    "$set": {"status": TRIP_ACTIVE, "updatedAt": _now()},
                    "$unset": {"endKm": "", "totalizerEnd": "", "logoutTime": ""}
                }
            )
            raise
        return invoices

    async def cancel_trip(self, trip_id: str) -> Dict:
        """Delete a trip that has not started; its orders go back to PENDING"""
        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip:
            raise NotFound("Trip")
        result = await self.db.trips.delete_one({"id": trip_id, "status": TRIP_ASSIGNED})
        if result.deleted_count == 0:
            raise ValidationFailed("Only ASSIGNED trips can be deleted", field="tripId")

        plans = await self.db.delivery_plans.find({"tripId": trip_id}, {"_id": 0, "orderId": 1}).to_list(1000)
        for plan in plans:
            await self._release_order(plan["orderId"], trip_id)
        await self._release_fleet(trip.get("fleetId"), trip_id)
        await self.db.delivery_plans.delete_many({"tripId": trip_id})
        await self.db.deliveries.delete_many({"tripId": trip_id, "dcNo": None})
        await self.db.loading_auths.delete_many({"tripId": trip_id})
        logger.info(f"Trip {trip.get('tripNo')} cancelled, {len(plans)} order(s) released")
        return {"message": "Trip deleted", "releasedOrders": len(plans)}
