# backend/tests/test_trip_service.py

"""
Unit tests for Trip Service

Tests cover:
- Capacity resolution: explicit → calibrated → nominal → 400
- Assignment over capacity → 409 with no trip, plan or claimed order left behind
- Fleet busy (including two concurrent assigns) / fleet without driver / order not pending
- Appending orders to the remaining capacity, and rejection past it
- Lost order claim releases the capacity reservation
- Login: ASSIGNED → ACTIVE once, diesel opening from the bowser
- Logout: one invoice per recorded delivery, trip and orders COMPLETED
- Logout rollback when invoicing fails
- Cancelling an ASSIGNED trip releases its orders
"""

import asyncio

import pytest

from errors import CapacityExceeded, Conflict, Forbidden, NotFound, ValidationFailed
from factories import ADMIN, DRIVER, seed_fleet, seed_order
from inventory_service import InventoryService
from trip_service import TripService, resolve_capacity


async def assigned_trip(db, order_qty=1000.0, capacity=6000.0, balance=8000.0):
    _, _, fleet = await seed_fleet(db, capacity=capacity, balance=balance)
    customer, order = await seed_order(db, qty=order_qty)
    result = await TripService(db).assign_trip({"fleetId": fleet["id"], "orderId": order["id"]}, ADMIN)
    return result["trip"], order, customer


async def active_trip(db, **kwargs):
    trip, order, customer = await assigned_trip(db, **kwargs)
    await TripService(db).login({"tripId": trip["id"], "startKm": 1200, "totalizerStart": 50000}, DRIVER)
    return trip, order, customer


class TestResolveCapacity:
    def test_explicit_wins(self):
        assert resolve_capacity(4000, {"capacity": 6000, "calibratedCapacity": 5800}) == 4000

    def test_calibrated_before_nominal(self):
        assert resolve_capacity(None, {"capacity": 6000, "calibratedCapacity": 5800}) == 5800

    def test_nominal_capacity(self):
        assert resolve_capacity(0, {"capacity": 6000}) == 6000

    def test_missing_capacity(self):
        with pytest.raises(ValidationFailed):
            resolve_capacity(None, {})


class TestAssignTrip:
    @pytest.mark.asyncio
    async def test_assign_snapshots_fleet_and_claims_order(self, db):
        trip, order, _ = await assigned_trip(db)

        assert trip["status"] == "ASSIGNED"
        assert trip["capacity"] == 6000.0
        assert trip["plannedQty"] == 1000.0
        assert trip["snapshot"]["vehicleNo"] == "MH04AB1234"
        assert trip["tripNo"].endswith("000")

        stored = await db.orders.find_one({"id": order["id"]}, {"_id": 0})
        assert stored["orderStatus"] == "ASSIGNED"
        assert stored["tripId"] == trip["id"]
        assert await db.delivery_plans.count_documents({"tripId": trip["id"]}) == 1
        placeholder = await db.deliveries.find_one({"tripId": trip["id"]}, {"_id": 0})
        assert placeholder["dcNo"] is None
        assert placeholder["qty"] == 0

    @pytest.mark.asyncio
    async def test_over_capacity_leaves_nothing_behind(self, db):
        _, _, fleet = await seed_fleet(db, capacity=5000.0)
        _, order = await seed_order(db, qty=6000.0)

        with pytest.raises(CapacityExceeded) as exc:
            await TripService(db).assign_trip({"fleetId": fleet["id"], "orderId": order["id"]}, ADMIN)

        assert exc.value.status_code == 409
        assert await db.trips.count_documents({}) == 0
        assert await db.delivery_plans.count_documents({}) == 0
        stored = await db.orders.find_one({"id": order["id"]}, {"_id": 0})
        assert stored["orderStatus"] == "PENDING"

    @pytest.mark.asyncio
    async def test_fleet_with_open_trip_is_busy(self, db):
        trip, _, _ = await assigned_trip(db)
        _, second = await seed_order(db)
        with pytest.raises(Conflict) as exc:
            await TripService(db).assign_trip({"fleetId": trip["fleetId"], "orderId": second["id"]}, ADMIN)
        assert exc.value.error_code == "FLEET_BUSY"

    @pytest.mark.asyncio
    async def test_concurrent_assigns_on_one_fleet(self, db):
        _, _, fleet = await seed_fleet(db)
        _, first = await seed_order(db)
        _, second = await seed_order(db)
        # both requests pass the open-trip lookup before either writes
        original = db.trips.find_one

        async def yielding_find_one(*args, **kwargs):
            found = await original(*args, **kwargs)
            await asyncio.sleep(0)
            return found

        db.trips.find_one = yielding_find_one
        service = TripService(db)
        results = await asyncio.gather(
            service.assign_trip({"fleetId": fleet["id"], "orderId": first["id"]}, ADMIN),
            service.assign_trip({"fleetId": fleet["id"], "orderId": second["id"]}, ADMIN),
            return_exceptions=True
        )
        db.trips.find_one = original

        assigned = [r for r in results if isinstance(r, dict)]
        refused = [r for r in results if isinstance(r, Conflict)]
        assert len(assigned) == 1
        assert len(refused) == 1
        assert refused[0].error_code == "FLEET_BUSY"
        assert await db.trips.count_documents({"fleetId": fleet["id"]}) == 1
        assert await db.orders.count_documents({"orderStatus": "PENDING"}) == 1
        stored = await db.fleets.find_one({"id": fleet["id"]}, {"_id": 0})
        assert stored["openTripId"] == assigned[0]["trip"]["id"]

    @pytest.mark.asyncio
    async def test_fleet_without_driver(self, db):
        _, _, fleet = await seed_fleet(db)
        await db.fleets.update_one({"id": fleet["id"]}, {"$set": {"driverId": None}})
        _, order = await seed_order(db)
        with pytest.raises(ValidationFailed):
            await TripService(db).assign_trip({"fleetId": fleet["id"], "orderId": order["id"]}, ADMIN)

    @pytest.mark.asyncio
    async def test_order_must_be_pending(self, db):
        _, _, fleet = await seed_fleet(db)
        _, order = await seed_order(db, status="COMPLETED")
        with pytest.raises(ValidationFailed):
            await TripService(db).assign_trip({"fleetId": fleet["id"], "orderId": order["id"]}, ADMIN)

    @pytest.mark.asyncio
    async def test_unknown_fleet(self, db):
        _, order = await seed_order(db)
        with pytest.raises(NotFound):
            await TripService(db).assign_trip({"fleetId": "nope", "orderId": order["id"]}, ADMIN)

    @pytest.mark.asyncio
    async def test_failed_trip_insert_releases_order(self, db):
        from pymongo.errors import DuplicateKeyError

        _, _, fleet = await seed_fleet(db)
        _, order = await seed_order(db)

        async def failing_insert(document):
            raise DuplicateKeyError("E11000 duplicate key error", 11000)

        db.trips.insert_one = failing_insert
        with pytest.raises(Conflict):
            await TripService(db).assign_trip({"fleetId": fleet["id"], "orderId": order["id"]}, ADMIN)
        stored = await db.orders.find_one({"id": order["id"]}, {"_id": 0})
        assert stored["orderStatus"] == "PENDING"
        assert "tripId" not in stored
        assert (await db.fleets.find_one({"id": fleet["id"]}, {"_id": 0})).get("openTripId") is None


class TestAddOrder:
    @pytest.mark.asyncio
    async def test_append_within_remaining_capacity(self, db):
        trip, _, _ = await assigned_trip(db, order_qty=4000.0)
        _, second = await seed_order(db, qty=2000.0)

        result = await TripService(db).add_order(trip["id"], second["id"], ADMIN)

        assert result["plannedQty"] == 6000.0
        assert result["remaining"] == 0.0
        summary = await TripService(db).capacity_summary(trip["id"])
        assert summary == {"capacity": 6000.0, "plannedQty": 6000.0, "remaining": 0.0}

    @pytest.mark.asyncio
    async def test_append_past_capacity_rejected(self, db):
        trip, _, _ = await assigned_trip(db, order_qty=4000.0)
        _, second = await seed_order(db, qty=2500.0)

        with pytest.raises(CapacityExceeded):
            await TripService(db).add_order(trip["id"], second["id"], ADMIN)

        stored = await db.trips.find_one({"id": trip["id"]}, {"_id": 0})
        assert stored["plannedQty"] == 4000.0
        assert (await db.orders.find_one({"id": second["id"]}, {"_id": 0}))["orderStatus"] == "PENDING"

    @pytest.mark.asyncio
    async def test_lost_reservation_race_releases_claim(self, db):
        trip, _, _ = await assigned_trip(db, order_qty=4000.0)
        _, second = await seed_order(db, qty=2000.0)
        # another request reserved the rest after this one read the trip
        original = db.orders.find_one_and_update

        async def claim_then_fill(query, update, **kwargs):
            claimed = await original(query, update, **kwargs)
            await db.trips.update_one({"id": trip["id"]}, {"$inc": {"plannedQty": 1500.0}})
            return claimed

        db.orders.find_one_and_update = claim_then_fill
        with pytest.raises(CapacityExceeded):
            await TripService(db).add_order(trip["id"], second["id"], ADMIN)
        db.orders.find_one_and_update = original

        stored = await db.orders.find_one({"id": second["id"]}, {"_id": 0})
        assert stored["orderStatus"] == "PENDING"
        assert await db.delivery_plans.count_documents({"orderId": second["id"]}) == 0

    @pytest.mark.asyncio
    async def test_same_order_twice(self, db):
        trip, order, _ = await assigned_trip(db)
        with pytest.raises(Conflict):
            await TripService(db).add_order(trip["id"], order["id"], ADMIN)


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_activates_and_reads_opening(self, db):
        trip, order, _ = await assigned_trip(db, balance=7500.0)
        result = await TripService(db).login(
            {"tripId": trip["id"], "startKm": 1200, "totalizerStart": 50000}, DRIVER
        )

        assert result["dieselOpening"] == 7500.0
        assert [d["orderId"] for d in result["deliveries"]] == [order["id"]]
        stored = await db.trips.find_one({"id": trip["id"]}, {"_id": 0})
        assert stored["status"] == "ACTIVE"
        assert stored["startKm"] == 1200
        driver = await db.drivers.find_one({"id": "drv-1"}, {"_id": 0})
        assert driver["currentTripId"] == trip["id"]

    @pytest.mark.asyncio
    async def test_second_login_is_refused(self, db):
        trip, _, _ = await active_trip(db)
        with pytest.raises(Forbidden):
            await TripService(db).login({"tripId": trip["id"], "startKm": 1, "totalizerStart": 1}, DRIVER)

    @pytest.mark.asyncio
    async def test_readings_required(self, db):
        trip, _, _ = await assigned_trip(db)
        with pytest.raises(ValidationFailed):
            await TripService(db).login({"tripId": trip["id"], "startKm": 1200}, DRIVER)

    @pytest.mark.asyncio
    async def test_other_driver_cannot_start(self, db):
        trip, _, _ = await assigned_trip(db)
        stranger = {**DRIVER, "driverId": "drv-2"}
        with pytest.raises(Forbidden):
            await TripService(db).login({"tripId": trip["id"], "startKm": 1, "totalizerStart": 1}, stranger)


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_invoices_each_delivery(self, db):
        trip, order, customer = await active_trip(db, order_qty=3000.0)
        inventory = InventoryService(db)
        for qty in (1000.0, 1500.0):
            await inventory.record_delivery({
                "tripId": trip["id"], "orderId": order["id"], "customerId": customer["id"],
                "shipTo": order["shipToAddress"], "qty": qty, "rate": 92.5
            }, DRIVER)

        result = await TripService(db).logout({"tripId": trip["id"], "endKm": 1260, "totalizerEnd": 52500}, DRIVER)

        assert result["trip"]["status"] == "COMPLETED"
        assert len(result["invoices"]) == 2
        assert sorted(inv["totalAmount"] for inv in result["invoices"]) == [92500.0, 138750.0]
        assert await db.invoices.count_documents({"tripId": trip["id"]}) == 2
        assert (await db.orders.find_one({"id": order["id"]}, {"_id": 0}))["orderStatus"] == "COMPLETED"
        assert await db.deliveries.count_documents({"tripId": trip["id"], "dcNo": None}) == 0
        vehicle = await db.vehicles.find_one({"vehicleNo": "MH04AB1234"}, {"_id": 0})
        assert vehicle["lastKm"] == 1260
        assert (await db.drivers.find_one({"id": "drv-1"}, {"_id": 0}))["currentTripId"] is None
        assert (await db.fleets.find_one({"id": trip["fleetId"]}, {"_id": 0}))["openTripId"] is None

    @pytest.mark.asyncio
    async def test_logout_without_deliveries(self, db):
        trip, _, _ = await active_trip(db)
        with pytest.raises(ValidationFailed):
            await TripService(db).logout({"tripId": trip["id"], "endKm": 1300, "totalizerEnd": 51000}, DRIVER)
        assert (await db.trips.find_one({"id": trip["id"]}, {"_id": 0}))["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_end_km_before_start_km(self, db):
        trip, _, _ = await active_trip(db)
        with pytest.raises(ValidationFailed):
            await TripService(db).logout({"tripId": trip["id"], "endKm": 1100, "totalizerEnd": 51000}, DRIVER)

    @pytest.mark.asyncio
    async def test_logout_requires_active_trip(self, db):
        trip, _, _ = await assigned_trip(db)
        with pytest.raises(ValidationFailed) as exc:
            await TripService(db).logout({"tripId": trip["id"], "endKm": 1300, "totalizerEnd": 51000}, DRIVER)
        assert exc.value.message == "No active trip found to end"

    @pytest.mark.asyncio
    async def test_invoice_failure_reopens_trip(self, db):
        trip, order, customer = await active_trip(db)
        await InventoryService(db).record_delivery({
            "tripId": trip["id"], "orderId": order["id"], "customerId": customer["id"],
            "shipTo": order["shipToAddress"], "qty": 1000.0, "rate": 92.5
        }, DRIVER)

        async def failing_insert(document):
            raise RuntimeError("write failed")

        db.invoices.insert_one = failing_insert
        with pytest.raises(RuntimeError):
            await TripService(db).logout({"tripId": trip["id"], "endKm": 1300, "totalizerEnd": 51000}, DRIVER)

        stored = await db.trips.find_one({"id": trip["id"]}, {"_id": 0})
        assert stored["status"] == "ACTIVE"
        assert "endKm" not in stored
        assert await db.invoices.count_documents({}) == 0


class TestCancelTrip:
    @pytest.mark.asyncio
    async def test_cancel_assigned_trip_releases_orders(self, db):
        trip, order, _ = await assigned_trip(db)
        result = await TripService(db).cancel_trip(trip["id"])
        assert result["releasedOrders"] == 1
        assert await db.trips.count_documents({}) == 0
        assert (await db.orders.find_one({"id": order["id"]}, {"_id": 0}))["orderStatus"] == "PENDING"
        assert await db.deliveries.count_documents({"tripId": trip["id"]}) == 0
        assert (await db.fleets.find_one({"id": trip["fleetId"]}, {"_id": 0}))["openTripId"] is None

    @pytest.mark.asyncio
    async def test_active_trip_cannot_be_cancelled(self, db):
        trip, _, _ = await active_trip(db)
        with pytest.raises(ValidationFailed):
            await TripService(db).cancel_trip(trip["id"])
