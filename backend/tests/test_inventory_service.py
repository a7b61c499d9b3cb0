# backend/tests/test_inventory_service.py

"""
Unit tests for bowser inventory, loading authorization and deliveries

Tests cover:
- Opening balance, debit/credit ledger rows (opening + qty = closing)
- Debits never drive a bowser below zero
- Loading code only issued when the bowser cannot cover capacity
- Loading code is single use and expires
- Loading requires the code once one was issued; stock debited per loading
- Delivery validation: positive qty/rate, active trip, order/customer match
- Delivery fills the placeholder, mints a DC number, marks partial orders
- Insufficient stock leaves the bowser and the deliveries untouched
"""

import pytest
from datetime import datetime, timezone, timedelta

from errors import InsufficientStock, InvalidLoadingCode, NotFound, ValidationFailed
from factories import ADMIN, DRIVER, seed_fleet, seed_order
from inventory_service import InventoryService, generate_loading_code
from trip_service import TripService


async def active_trip(db, balance=8000.0, capacity=6000.0, order_qty=1000.0):
    await seed_fleet(db, capacity=capacity, balance=balance)
    fleet = await db.fleets.find_one({}, {"_id": 0})
    customer, order = await seed_order(db, qty=order_qty)
    trips = TripService(db)
    trip = (await trips.assign_trip({"fleetId": fleet["id"], "orderId": order["id"]}, ADMIN))["trip"]
    await trips.login({"tripId": trip["id"], "startKm": 100, "totalizerStart": 10}, DRIVER)
    await db.stations.insert_one({"id": "st-1", "name": "Bhiwandi Depot"})
    return trip, order, customer


def delivery_body(trip, order, customer, **overrides):
    body = {"tripId": trip["id"], "orderId": order["id"], "customerId": customer["id"],
            "shipTo": order["shipToAddress"], "qty": 400.0, "rate": 92.5}
    body.update(overrides)
    return body


class TestBalances:
    @pytest.mark.asyncio
    async def test_opening_then_debit_writes_ledger(self, db):
        service = InventoryService(db)
        await service.set_opening("MH04AB1234", 5000.0, "101")
        await service.debit("MH04AB1234", 1200.0, "DELIVERY", "DC00000001")

        assert await service.balance("MH04AB1234") == 3800.0
        rows = await service.ledger("MH04AB1234")
        debit_row = [r for r in rows if r["trType"] == "DELIVERY"][0]
        assert debit_row["opBal"] == 5000.0
        assert debit_row["trQty"] == -1200.0
        assert debit_row["clStock"] == 3800.0
        assert debit_row["opBal"] + debit_row["trQty"] == debit_row["clStock"]

    @pytest.mark.asyncio
    async def test_debit_never_goes_negative(self, db):
        service = InventoryService(db)
        await service.set_opening("MH04AB1234", 300.0)
        with pytest.raises(InsufficientStock) as exc:
            await service.debit("MH04AB1234", 300.5, "DELIVERY", "DC1")
        assert exc.value.status_code == 400
        assert await service.balance("MH04AB1234") == 300.0

    @pytest.mark.asyncio
    async def test_negative_opening_rejected(self, db):
        with pytest.raises(ValidationFailed):
            await InventoryService(db).set_opening("MH04AB1234", -1)

    @pytest.mark.asyncio
    async def test_adjust_both_directions(self, db):
        service = InventoryService(db)
        await service.set_opening("MH04AB1234", 1000.0)
        await service.adjust("MH04AB1234", 250.0, "dip correction")
        inv = await service.adjust("MH04AB1234", -50.0, "dip correction")
        assert inv["balanceLiters"] == 1200.0
        with pytest.raises(ValidationFailed):
            await service.adjust("MH04AB1234", 0)

    def test_loading_code_shape(self):
        for _ in range(50):
            code = generate_loading_code()
            assert len(code) == 6
            assert code[0] != "0"


class TestLoadingCodes:
    @pytest.mark.asyncio
    async def test_no_code_when_bowser_covers_capacity(self, db):
        trip, _, _ = await active_trip(db, balance=6000.0, capacity=6000.0)
        result = await InventoryService(db).generate_code(trip["id"])
        assert result == {"codeRequired": False, "code": None}
        assert await db.loading_auths.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_code_issued_and_single_use(self, db):
        trip, _, _ = await active_trip(db, balance=2000.0)
        service = InventoryService(db)
        issued = await service.generate_code(trip["id"])
        assert issued["codeRequired"] is True

        assert await service.verify_code(trip["id"], issued["code"]) == {"message": "Code verified"}
        with pytest.raises(InvalidLoadingCode) as exc:
            await service.verify_code(trip["id"], issued["code"])
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_expired_code_rejected(self, db):
        trip, _, _ = await active_trip(db, balance=2000.0)
        service = InventoryService(db)
        issued = await service.generate_code(trip["id"])
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        await db.loading_auths.update_one({"tripId": trip["id"]}, {"$set": {"expiresAt": past}})
        with pytest.raises(InvalidLoadingCode):
            await service.verify_code(trip["id"], issued["code"])

    @pytest.mark.asyncio
    async def test_wrong_code_rejected(self, db):
        trip, _, _ = await active_trip(db, balance=2000.0)
        service = InventoryService(db)
        issued = await service.generate_code(trip["id"])
        wrong = "100000" if issued["code"] != "100000" else "100001"
        with pytest.raises(InvalidLoadingCode):
            await service.verify_code(trip["id"], wrong)

    @pytest.mark.asyncio
    async def test_regenerating_replaces_the_code(self, db):
        trip, _, _ = await active_trip(db, balance=2000.0)
        service = InventoryService(db)
        await service.generate_code(trip["id"])
        await service.generate_code(trip["id"])
        assert await db.loading_auths.count_documents({"tripId": trip["id"]}) == 1

    @pytest.mark.asyncio
    async def test_trip_must_be_active(self, db):
        with pytest.raises(ValidationFailed):
            await InventoryService(db).generate_code("missing")


class TestLoadings:
    @pytest.mark.asyncio
    async def test_loading_without_issued_code(self, db):
        trip, _, _ = await active_trip(db, balance=8000.0)
        result = await InventoryService(db).record_loading(
            {"tripId": trip["id"], "stationId": "st-1", "product": "Diesel", "qty": 500}, DRIVER
        )
        assert result["message"] == "Loading recorded"
        assert await InventoryService(db).balance("MH04AB1234") == 7500.0
        assert await db.loadings.count_documents({"tripId": trip["id"]}) == 1

    @pytest.mark.asyncio
    async def test_loading_requires_issued_code(self, db):
        trip, _, _ = await active_trip(db, balance=2000.0)
        service = InventoryService(db)
        issued = await service.generate_code(trip["id"])
        body = {"tripId": trip["id"], "stationId": "st-1", "product": "Diesel", "qty": 500}

        with pytest.raises(ValidationFailed):
            await service.record_loading(body, DRIVER)
        await service.record_loading({**body, "code": issued["code"]}, DRIVER)
        with pytest.raises(InvalidLoadingCode):
            await service.record_loading({**body, "code": issued["code"]}, DRIVER)
        assert await db.loadings.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_unknown_station(self, db):
        trip, _, _ = await active_trip(db)
        with pytest.raises(NotFound):
            await InventoryService(db).record_loading(
                {"tripId": trip["id"], "stationId": "nope", "product": "Diesel", "qty": 10}, DRIVER
            )

    @pytest.mark.asyncio
    async def test_failed_insert_reverses_stock(self, db):
        trip, _, _ = await active_trip(db, balance=8000.0)

        async def failing_insert(document):
            raise RuntimeError("write failed")

        db.loadings.insert_one = failing_insert
        with pytest.raises(RuntimeError):
            await InventoryService(db).record_loading(
                {"tripId": trip["id"], "stationId": "st-1", "product": "Diesel", "qty": 500}, DRIVER
            )
        assert await InventoryService(db).balance("MH04AB1234") == 8000.0
        assert await db.bowser_ledger.count_documents({"trType": "REVERSAL"}) == 1


class TestDeliveries:
    @pytest.mark.asyncio
    async def test_delivery_fills_placeholder(self, db):
        trip, order, customer = await active_trip(db, order_qty=1000.0)
        result = await InventoryService(db).record_delivery(delivery_body(trip, order, customer), DRIVER)

        assert result["dcNo"] == "DC00000001"
        assert await db.deliveries.count_documents({"tripId": trip["id"]}) == 1
        stored = await db.deliveries.find_one({"id": result["deliveryId"]}, {"_id": 0})
        assert stored["qty"] == 400.0
        assert await InventoryService(db).balance("MH04AB1234") == 7600.0
        assert (await db.orders.find_one({"id": order["id"]}, {"_id": 0}))["orderStatus"] == "PARTIALLY_COMPLETED"

    @pytest.mark.asyncio
    async def test_full_delivery_keeps_order_assigned(self, db):
        trip, order, customer = await active_trip(db, order_qty=1000.0)
        await InventoryService(db).record_delivery(delivery_body(trip, order, customer, qty=1000.0), DRIVER)
        assert (await db.orders.find_one({"id": order["id"]}, {"_id": 0}))["orderStatus"] == "ASSIGNED"
        assert await InventoryService(db).pending_deliveries(trip["id"]) == []

    @pytest.mark.asyncio
    async def test_partial_then_remaining_delivery_returns_to_assigned(self, db):
        trip, order, customer = await active_trip(db, order_qty=1000.0)
        service = InventoryService(db)
        await service.record_delivery(delivery_body(trip, order, customer, qty=400.0), DRIVER)
        assert (await db.orders.find_one({"id": order["id"]}, {"_id": 0}))["orderStatus"] == "PARTIALLY_COMPLETED"

        second = await service.record_delivery(delivery_body(trip, order, customer, qty=600.0), DRIVER)
        assert second["dcNo"] == "DC00000002"
        assert (await db.orders.find_one({"id": order["id"]}, {"_id": 0}))["orderStatus"] == "ASSIGNED"
        assert len(await service.completed_deliveries(trip["id"])) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["qty", "rate"])
    async def test_non_positive_amounts(self, db, field):
        trip, order, customer = await active_trip(db)
        with pytest.raises(ValidationFailed) as exc:
            await InventoryService(db).record_delivery(delivery_body(trip, order, customer, **{field: 0}), DRIVER)
        assert exc.value.field == field

    @pytest.mark.asyncio
    async def test_customer_must_match_order(self, db):
        trip, order, _ = await active_trip(db)
        with pytest.raises(ValidationFailed) as exc:
            await InventoryService(db).record_delivery(
                delivery_body(trip, order, {"id": "someone-else"}), DRIVER
            )
        assert exc.value.message == "orderId does not match that customer"

    @pytest.mark.asyncio
    async def test_insufficient_stock_records_nothing(self, db):
        trip, order, customer = await active_trip(db, balance=300.0)
        with pytest.raises(InsufficientStock):
            await InventoryService(db).record_delivery(delivery_body(trip, order, customer), DRIVER)
        assert await InventoryService(db).balance("MH04AB1234") == 300.0
        assert await InventoryService(db).completed_deliveries(trip["id"]) == []

    @pytest.mark.asyncio
    async def test_unknown_trip(self, db):
        _, order = await seed_order(db)
        with pytest.raises(NotFound):
            await InventoryService(db).record_delivery(
                delivery_body({"id": "nope"}, order, {"id": order["customerId"]}), DRIVER
            )
