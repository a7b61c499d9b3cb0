# backend/tests/factories.py

"""Users and seed documents shared by the service tests"""

import uuid


ADMIN = {"id": "u-admin", "userId": "admin", "userType": "A", "isAdmin": True,
         "empCd": "E001", "depotCd": "101", "driverId": None, "customerId": None}
EMPLOYEE = {"id": "u-emp", "userId": "emp1", "userType": "E", "isAdmin": False,
            "empCd": "E001", "depotCd": "101", "driverId": None, "customerId": None}
DRIVER = {"id": "u-drv", "userId": "drv1", "userType": "D", "isAdmin": False,
          "empCd": None, "depotCd": "101", "driverId": "drv-1", "customerId": None}


def make_customer(**overrides):
    customer = {
        "id": str(uuid.uuid4()),
        "custCd": "C001",
        "custName": "Acme Infra",
        "depotCd": "101",
        "status": "Active",
        "empCdMapped": "E001",
        "mobileNo": "9876543210",
        "billStateCd": "27",
        "billToAdd1": "Plot 4, MIDC",
        "billCity": "Thane",
        "shipTo1Add1": "Site A, Ghodbunder Road",
        "shipTo1City": "Thane",
        "shipTo1StateCd": "27",
    }
    customer.update(overrides)
    return customer


def make_order(customer, qty=1000.0, rate=92.5, status="PENDING", **overrides):
    order = {
        "id": str(uuid.uuid4()),
        "orderNo": f"2701{uuid.uuid4().hex[:9]}",
        "customerId": customer["id"],
        "shipToAddress": "Site A, Ghodbunder Road, Thane",
        "items": [{"productName": "Diesel", "quantity": qty, "rate": rate}],
        "deliveryDate": "2026-10-20T00:00:00+00:00",
        "deliveryTimeSlot": "09:00 - 12:00",
        "depotCd": customer.get("depotCd"),
        "orderStatus": status,
        "paymentMethod": "RTGS",
        "creditDays": 1,
        "createdAt": "2026-10-19T08:00:00+00:00",
    }
    order.update(overrides)
    return order


async def seed_fleet(db, capacity=6000.0, calibrated=None, balance=None, vehicle_no="MH04AB1234",
                     driver_id="drv-1"):
    """Vehicle + driver + fleet row (+ bowser inventory when ``balance`` is given)"""
    vehicle = {
        "id": str(uuid.uuid4()),
        "vehicleNo": vehicle_no,
        "depotCd": "101",
        "capacity": capacity,
        "calibratedCapacity": calibrated,
        "gpsYesNo": True,
    }
    driver = {"id": driver_id, "driverName": "Ramesh", "depotCd": "101",
              "mobileNo": "9123456780", "currentTripId": None}
    fleet = {"id": str(uuid.uuid4()), "vehicleId": vehicle["id"], "driverId": driver_id,
             "depotCd": "101", "gpsYesNo": True}
    await db.vehicles.insert_one(vehicle)
    await db.drivers.insert_one(driver)
    await db.fleets.insert_one(fleet)
    if balance is not None:
        await db.bowser_inventories.insert_one({
            "id": str(uuid.uuid4()), "vehicleNo": vehicle_no, "depotCd": "101", "balanceLiters": balance
        })
    return vehicle, driver, fleet


async def seed_order(db, qty=1000.0, rate=92.5, customer=None, **overrides):
    if customer is None:
        customer = await db.customers.find_one({"custCd": "C001"}, {"_id": 0})
        if customer is None:
            customer = make_customer()
            await db.customers.insert_one(customer)
    order = make_order(customer, qty=qty, rate=rate, **overrides)
    await db.orders.insert_one(order)
    return customer, order
