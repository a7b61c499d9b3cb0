"""
Inventory Service - bowser balances, ledger, loading authorization and deliveries

Every balance change is a single conditional update so a bowser can never be
driven below zero, followed by a ledger row carrying opening/closing stock.
"""

import logging
import secrets
import uuid
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

from errors import (
    InsufficientStock,
    InvalidLoadingCode,
    NotFound,
    ValidationFailed,
)
from numbering_service import NumberingService
import notification_service

logger = logging.getLogger(__name__)

LOADING_CODE_TTL_MINUTES = 15

TR_OPENING = "OPENING"
TR_LOADING = "LOADING"
TR_DELIVERY = "DELIVERY"
TR_ADJUSTMENT = "ADJUSTMENT"
TR_REVERSAL = "REVERSAL"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def trip_vehicle_no(trip: dict) -> Optional[str]:
    return trip.get("vehicleNo") or (trip.get("snapshot") or {}).get("vehicleNo")


def generate_loading_code() -> str:
    """Six digits, never starting with 0"""
    return str(100000 + secrets.randbelow(900000))


class InventoryService:
    """Bowser inventory movements and the flows that consume stock"""

    def __init__(self, db):
        self.db = db
        self.numbering = NumberingService(db)

    # ==================== BALANCES ====================

    async def get_inventory(self, vehicle_no: str) -> Optional[dict]:
        return await self.db.bowser_inventories.find_one({"vehicleNo": vehicle_no}, {"_id": 0})

    async def balance(self, vehicle_no: Optional[str]) -> float:
        if not vehicle_no:
            return 0
        inv = await self.get_inventory(vehicle_no)
        return float(inv.get("balanceLiters", 0)) if inv else 0

    async def _write_ledger(self, vehicle_no: str, op_bal: float, tr_type: str, tr_ref: str,
                            tr_qty: float, cl_stock: float, depot_cd: Optional[str] = None) -> dict:
        entry = {
            "id": str(uuid.uuid4()),
            "vehicleNo": vehicle_no,
            "depotCd": depot_cd,
            "opBal": op_bal,
            "trType": tr_type,
            "trRef": tr_ref,
            "trQty": tr_qty,
            "clStock": cl_stock,
            "timeStamp": _now().isoformat()
        }
        await self.db.bowser_ledger.insert_one(entry)
        entry.pop("_id", None)
        return entry

    async def set_opening(self, vehicle_no: str, liters: float, depot_cd: Optional[str] = None,
                          ref: str = "OPENING") -> dict:
        if liters is None or liters < 0:
            raise ValidationFailed("Opening balance must be zero or more", field="balanceLiters")

        previous = await self.get_inventory(vehicle_no)
        now = _now().isoformat()
        update = {"balanceLiters": liters, "updatedAt": now}
        if depot_cd:
            update["depotCd"] = depot_cd
        inv = await self.db.bowser_inventories.find_one_and_update(
            {"vehicleNo": vehicle_no},
            {"$set": update, "$setOnInsert": {"id": str(uuid.uuid4()), "createdAt": now}},
            upsert=True,
            return_document=True
        )
        op_bal = float(previous.get("balanceLiters", 0)) if previous else 0
        await self._write_ledger(vehicle_no, op_bal, TR_OPENING, ref, liters - op_bal, liters,
                                 depot_cd or inv.get("depotCd"))
        logger.info(f"Opening balance for {vehicle_no} set to {liters} L")
        inv.pop("_id", None)
        return inv

    async def debit(self, vehicle_no: str, qty: float, tr_type: str, tr_ref: str) -> dict:
        """Conditionally take ``qty`` liters off a bowser, raising when it would go negative"""
        inv = await self.db.bowser_inventories.find_one_and_update(
            {"vehicleNo": vehicle_no, "balanceLiters": {"$gte": qty}},
            {"$inc": {"balanceLiters": -qty}, "$set": {"updatedAt": _now().isoformat()}},
            return_document=True
        )
        if inv is None:
            logger.warning(f"Insufficient stock on {vehicle_no} for {qty} L ({tr_type} {tr_ref})")
            raise InsufficientStock(vehicle_no, qty)

        closing = float(inv["balanceLiters"])
        await self._write_ledger(vehicle_no, closing + qty, tr_type, tr_ref, -qty, closing, inv.get("depotCd"))
        return inv

    async def credit(self, vehicle_no: str, qty: float, tr_type: str, tr_ref: str) -> Optional[dict]:
        inv = await self.db.bowser_inventories.find_one_and_update(
            {"vehicleNo": vehicle_no},
            {"$inc": {"balanceLiters": qty}, "$set": {"updatedAt": _now().isoformat()}},
            return_document=True
        )
        if inv is None:
            raise NotFound("Bowser inventory")
        closing = float(inv["balanceLiters"])
        await self._write_ledger(vehicle_no, closing - qty, tr_type, tr_ref, qty, closing, inv.get("depotCd"))
        return inv

    async def adjust(self, vehicle_no: str, delta: float, reason: str = "") -> dict:
        if not delta:
            raise ValidationFailed("Adjustment quantity must be non-zero", field="qty")
        ref = reason or "manual"
        if delta < 0:
            inv = await self.debit(vehicle_no, -delta, TR_ADJUSTMENT, ref)
        else:
            inv = await self.credit(vehicle_no, delta, TR_ADJUSTMENT, ref)
        inv.pop("_id", None)
        return inv

    async def ledger(self, vehicle_no: str, limit: int = 200) -> List[dict]:
        return await self.db.bowser_ledger.find(
            {"vehicleNo": vehicle_no}, {"_id": 0}
        ).sort("timeStamp", -1).to_list(limit)

    # ==================== LOADING AUTHORIZATION ====================

    async def _active_trip(self, trip_id: str) -> dict:
        if not trip_id:
            raise ValidationFailed("Valid tripId required", field="tripId")
        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip or trip.get("status") != "ACTIVE":
            raise ValidationFailed("Trip not active", field="tripId")
        return trip

    async def generate_code(self, trip_id: str) -> Dict:
        """
        Issue a loading code when the bowser cannot cover the trip's capacity.

        Returns ``{"codeRequired": bool, "code": str | None, "expiresAt": ...}``.
        The code is also sent to the trip's driver.
        """
        trip = await self._active_trip(trip_id)
        inv = await self.get_inventory(trip_vehicle_no(trip))
        if not inv:
            raise ValidationFailed("No inventory for vehicle")

        if float(inv.get("balanceLiters", 0)) >= float(trip.get("capacity") or 0):
            return {"codeRequired": False, "code": None}

        code = generate_loading_code()
        expires_at = (_now() + timedelta(minutes=LOADING_CODE_TTL_MINUTES)).isoformat()
        await self.db.loading_auths.find_one_and_update(
            {"tripId": trip_id},
            {
                "$set": {"code": code, "expiresAt": expires_at, "used": False, "usedAt": None,
                         "updatedAt": _now().isoformat()},
                "$setOnInsert": {"id": str(uuid.uuid4()), "createdAt": _now().isoformat()}
            },
            upsert=True,
            return_document=True
        )
        logger.info(f"Loading code issued for trip {trip.get('tripNo')}")

        driver_id = trip.get("driverId") or (trip.get("snapshot") or {}).get("driverId")
        driver = await self.db.drivers.find_one({"id": driver_id}, {"_id": 0}) if driver_id else None
        await notification_service.notify_loading_code(driver, trip.get("tripNo", ""), code)

        return {"codeRequired": True, "code": code, "expiresAt": expires_at}

    async def consume_code(self, trip_id: str, code: str) -> dict:
        """Mark the trip's code used; one conditional update so a code works once"""
        now = _now().isoformat()
        auth = await self.db.loading_auths.find_one_and_update(
            {"tripId": trip_id, "code": str(code), "used": False, "expiresAt": {"$gt": now}},
            {"$set": {"used": True, "usedAt": now}},
            return_document=True
        )
        if auth is None:
            raise InvalidLoadingCode()
        return auth

    async def verify_code(self, trip_id: str, code: Optional[str]) -> Dict:
        if not trip_id or not code:
            raise ValidationFailed("tripId and code are required")
        await self.consume_code(trip_id, code)
        return {"message": "Code verified"}

    # ==================== LOADINGS ====================

    async def record_loading(self, data: dict, user: Optional[dict] = None) -> Dict:
        trip_id = data.get("tripId")
        station_id = data.get("stationId")
        product = data.get("product")
        qty = data.get("qty")
        if not trip_id or not station_id or not product or qty is None:
            raise ValidationFailed("tripId, stationId, product, and qty are required")
        qty = float(qty)
        if qty <= 0:
            raise ValidationFailed("qty must be greater than 0", field="qty")

        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip:
            raise NotFound("Trip")

        auth = await self.db.loading_auths.find_one({"tripId": trip_id}, {"_id": 0})
        if auth:
            if not data.get("code"):
                raise ValidationFailed("code is required", field="code")
            await self.consume_code(trip_id, data["code"])

        station = await self.db.stations.find_one({"id": station_id}, {"_id": 0})
        if not station:
            raise NotFound("Station")

        vehicle = None
        if data.get("vehicleId"):
            vehicle = await self.db.vehicles.find_one({"id": data["vehicleId"]}, {"_id": 0})
        if not vehicle:
            vehicle = await self.db.vehicles.find_one({"vehicleNo": trip_vehicle_no(trip)}, {"_id": 0})
        if not vehicle:
            raise NotFound("Vehicle")

        loading_id = str(uuid.uuid4())
        await self.debit(vehicle["vehicleNo"], qty, TR_LOADING, loading_id)

        loading = {
            "id": loading_id,
            "tripId": trip_id,
            "stationId": station_id,
            "product": product,
            "qty": qty,
            "vehicleNo": vehicle["vehicleNo"],
            "depotCd": vehicle.get("depotCd"),
            "createdBy": (user or {}).get("userId"),
            "createdAt": _now().isoformat()
        }
        try:
            await self.db.loadings.insert_one(loading)
        except Exception:
            logger.error(f"Loading insert failed for trip {trip_id}, reversing {qty} L")
            await self.credit(vehicle["vehicleNo"], qty, TR_REVERSAL, loading_id)
            raise

        logger.info(f"Loading {loading_id}: {qty} L {product} on {vehicle['vehicleNo']}")
        return {"message": "Loading recorded", "loadingId": loading_id}

    # ==================== DELIVERIES ====================

    async def record_delivery(self, data: dict, user: Optional[dict] = None) -> Dict:
        trip_id = data.get("tripId")
        order_id = data.get("orderId")
        customer_id = data.get("customerId")
        ship_to = data.get("shipTo")
        qty = data.get("qty")
        rate = data.get("rate")
        if not trip_id or not order_id or not customer_id or not ship_to or qty is None or rate is None:
            raise ValidationFailed("tripId, orderId, customerId, shipTo, qty and rate are required")
        qty = float(qty)
        rate = float(rate)
        if qty <= 0:
            raise ValidationFailed("qty must be greater than 0", field="qty")
        if rate <= 0:
            raise ValidationFailed("rate must be greater than 0", field="rate")

        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip:
            raise NotFound("Trip")
        if trip.get("status") != "ACTIVE":
            raise ValidationFailed("Trip is not active", field="tripId")

        order = await self.db.orders.find_one({"id": order_id}, {"_id": 0})
        if not order or order.get("customerId") != customer_id:
            raise ValidationFailed("orderId does not match that customer", field="orderId")

        plan = await self.db.delivery_plans.find_one({"tripId": trip_id, "orderId": order_id}, {"_id": 0})
        if not plan:
            raise ValidationFailed("Order is not planned on this trip", field="orderId")

        vehicle_no = trip_vehicle_no(trip)
        dc_no = await self.numbering.next_dc_no()
        await self.debit(vehicle_no, qty, TR_DELIVERY, dc_no)

        now = _now().isoformat()
        fields = {
            "customerId": customer_id,
            "shipTo": ship_to,
            "qty": qty,
            "rate": rate,
            "dcNo": dc_no,
            "deliveredAt": now,
            "recordedBy": (user or {}).get("userId"),
            "updatedAt": now
        }
        try:
            delivery = await self.db.deliveries.find_one_and_update(
                {"tripId": trip_id, "orderId": order_id, "dcNo": None},
                {"$set": fields},
                return_document=True
            )
            if delivery is None:
                delivery = {"id": str(uuid.uuid4()), "tripId": trip_id, "orderId": order_id,
                            "createdAt": now, **fields}
                await self.db.deliveries.insert_one(delivery)
        except Exception:
            logger.error(f"Delivery write failed for trip {trip_id}, reversing {qty} L")
            await self.credit(vehicle_no, qty, TR_REVERSAL, dc_no)
            raise

        # COMPLETED is set at logout; until then a fully delivered order reads ASSIGNED
        delivered = await self.delivered_qty(trip_id, order_id)
        if delivered < float(plan.get("requiredQty", 0)):
            await self.db.orders.update_one(
                {"id": order_id, "orderStatus": {"$in": ["ASSIGNED", "PARTIALLY_COMPLETED"]}},
                {"$set": {"orderStatus": "PARTIALLY_COMPLETED", "updatedAt": now}}
            )
        else:
            await self.db.orders.update_one(
                {"id": order_id, "orderStatus": "PARTIALLY_COMPLETED"},
                {"$set": {"orderStatus": "ASSIGNED", "updatedAt": now}}
            )

        customer = await self.db.customers.find_one({"id": customer_id}, {"_id": 0})
        await notification_service.notify_delivery(customer, dc_no, qty)

        logger.info(f"Delivery {dc_no}: {qty} L @ {rate} on trip {trip.get('tripNo')}")
        return {"dcNo": dc_no, "deliveryId": delivery["id"]}

    async def delivered_qty(self, trip_id: str, order_id: str) -> float:
        rows = await self.db.deliveries.find(
            {"tripId": trip_id, "orderId": order_id, "dcNo": {"$ne": None}}, {"_id": 0, "qty": 1}
        ).to_list(1000)
        return sum(float(r.get("qty", 0)) for r in rows)

    async def pending_deliveries(self, trip_id: str) -> List[dict]:
        """Plan rows whose order has no recorded delivery yet"""
        plans = await self.db.delivery_plans.find({"tripId": trip_id}, {"_id": 0}).to_list(1000)
        done = await self.db.deliveries.find(
            {"tripId": trip_id, "dcNo": {"$ne": None}}, {"_id": 0, "orderId": 1}
        ).to_list(1000)
        done_orders = {d["orderId"] for d in done}
        return [
            {
                "id": p["id"],
                "orderId": p["orderId"],
                "customerId": p.get("customerId"),
                "shipTo": p.get("shipTo"),
                "requiredQty": p.get("requiredQty", 0)
            }
            for p in plans if p["orderId"] not in done_orders
        ]

    async def completed_deliveries(self, trip_id: str) -> List[dict]:
        return await self.db.deliveries.find(
            {"tripId": trip_id, "dcNo": {"$ne": None}}, {"_id": 0}
        ).sort("deliveredAt", 1).to_list(1000)
