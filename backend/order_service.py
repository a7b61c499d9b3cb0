"""
Order Service - customer master rules and order intake
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from errors import Conflict, Forbidden, NotFound, ValidationFailed
from numbering_service import NumberingService, SHIP_TO_SLOTS, format_ship_to

logger = logging.getLogger(__name__)

ORDER_STATUSES = ["PENDING", "ASSIGNED", "PARTIALLY_COMPLETED", "COMPLETED", "CANCELLED"]
CUSTOMER_STATUSES = ["Active", "Inactive", "Suspended"]
DELETABLE_ORDER_STATUSES = ["PENDING", "CANCELLED"]
RELEASED_ORDER_STATUSES = ["PENDING", "CANCELLED"]

TIME_SLOT_RE = re.compile(r"^(\d{2}):(\d{2})\s*-\s*(\d{2}):(\d{2})$")
DEPOT_CD_RE = re.compile(r"^[1-9]\d{2}$")
MOBILE_RE = re.compile(r"^\d{10}$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso_date(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed("deliveryDate is required", field="deliveryDate")
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationFailed("deliveryDate must be ISO 8601", field="deliveryDate")


def validate_time_slot(slot) -> str:
    match = TIME_SLOT_RE.match((slot or "").strip()) if isinstance(slot, str) else None
    if not match:
        raise ValidationFailed("deliveryTimeSlot must be in format HH:MM - HH:MM", field="deliveryTimeSlot")
    h1, m1, h2, m2 = (int(g) for g in match.groups())
    if h1 > 23 or h2 > 23 or m1 > 59 or m2 > 59:
        raise ValidationFailed("deliveryTimeSlot must be in format HH:MM - HH:MM", field="deliveryTimeSlot")
    if h1 * 60 + m1 >= h2 * 60 + m2:
        raise ValidationFailed("End time must be after start time", field="deliveryTimeSlot")
    return f"{h1:02d}:{m1:02d} - {h2:02d}:{m2:02d}"


def _positive_number(value, field: str) -> float:
    if isinstance(value, bool):
        raise ValidationFailed(f"{field} must be a number > 0", field=field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be a number > 0", field=field)
    if not number > 0:
        raise ValidationFailed(f"{field} must be a number > 0", field=field)
    return number


def validate_order_payload(data: dict) -> dict:
    """Check an order body and return the cleaned fields"""
    if not data.get("customerId"):
        raise ValidationFailed("customerId is required", field="customerId")
    ship_to = data.get("shipToAddress")
    if not isinstance(ship_to, str) or not ship_to.strip():
        raise ValidationFailed("shipToAddress cannot be empty", field="shipToAddress")

    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationFailed("items must be a non-empty array", field="items")
    cleaned_items = []
    for item in items:
        item = item or {}
        name = item.get("productName")
        if not isinstance(name, str) or not name.strip():
            raise ValidationFailed("productName is required for each item", field="items.productName")
        cleaned = {
            "productName": name.strip(),
            "quantity": _positive_number(item.get("quantity"), "quantity"),
            "rate": _positive_number(item.get("rate"), "rate"),
        }
        if item.get("productCode"):
            cleaned["productCode"] = item["productCode"]
        cleaned_items.append(cleaned)

    delivery_date = parse_iso_date(data.get("deliveryDate"))
    return {
        "customerId": data["customerId"],
        "shipToAddress": ship_to.strip(),
        "items": cleaned_items,
        "deliveryDate": delivery_date.isoformat(),
        "deliveryTimeSlot": validate_time_slot(data.get("deliveryTimeSlot")),
    }


def ship_to_addresses(customer: dict) -> List[Dict]:
    """Up to five formatted ship-to addresses with their state codes"""
    result = []
    for slot in range(1, SHIP_TO_SLOTS + 1):
        text = format_ship_to(customer, slot)
        if text:
            result.append({"slot": slot, "address": text, "stateCd": customer.get(f"shipTo{slot}StateCd")})
    return result


def validate_customer_fields(data: dict, creating: bool):
    if creating:
        for field in ("depotCd", "custName", "custCd"):
            if not data.get(field):
                raise ValidationFailed(f"{field} is required", field=field)
    if "depotCd" in data and not DEPOT_CD_RE.match(str(data["depotCd"] or "")):
        raise ValidationFailed("Depot code must be a 3-digit number from 100-999", field="depotCd")
    if "custName" in data and len(data["custName"] or "") > 20:
        raise ValidationFailed("custName must be at most 20 characters", field="custName")
    if "status" in data and data["status"] not in CUSTOMER_STATUSES:
        raise ValidationFailed(f"Invalid status. Must be one of: {CUSTOMER_STATUSES}", field="status")
    if data.get("mobileNo") and not MOBILE_RE.match(str(data["mobileNo"])):
        raise ValidationFailed("mobileNo must be 10 digits", field="mobileNo")
    if "agreement" in data and data["agreement"] not in ("Yes", "No", None):
        raise ValidationFailed("agreement must be Yes or No", field="agreement")


def can_order_for(customer: dict, user: dict) -> bool:
    """Admins, the employee the customer is mapped to, or the customer's own login"""
    if user.get("isAdmin"):
        return True
    if user.get("userType") == "C":
        return bool(user.get("customerId")) and user.get("customerId") == customer.get("id")
    return bool(user.get("empCd")) and user.get("empCd") == customer.get("empCdMapped")


class CustomerService:
    def __init__(self, db):
        self.db = db

    async def create(self, data: dict, user: Optional[dict] = None) -> dict:
        validate_customer_fields(data, creating=True)
        now = _now()
        customer = {
            "status": "Active",
            "agreement": "No",
            "outstandingAmount": 0,
            **data,
            "id": str(uuid.uuid4()),
            "createdBy": (user or {}).get("userId"),
            "createdAt": now,
            "updatedAt": now
        }
        await self.db.customers.insert_one(customer)
        customer.pop("_id", None)
        logger.info(f"Customer {customer['custCd']} created")
        return customer

    async def update(self, customer_id: str, data: dict, user: Optional[dict] = None) -> dict:
        """Partial merge; custCd can be echoed back but never changed"""
        current = await self.db.customers.find_one({"id": customer_id}, {"_id": 0})
        if not current:
            raise NotFound("Customer")
        changes = {k: v for k, v in data.items() if k not in ("id", "_id", "createdAt", "createdBy")}
        if "custCd" in changes:
            if changes["custCd"] != current.get("custCd"):
                raise ValidationFailed("custCd cannot be changed", field="custCd")
            changes.pop("custCd")
        validate_customer_fields(changes, creating=False)
        changes["updatedAt"] = _now()
        changes["updatedBy"] = (user or {}).get("userId")
        updated = await self.db.customers.find_one_and_update(
            {"id": customer_id},
            {"$set": changes},
            return_document=True
        )
        updated.pop("_id", None)
        return updated

    async def delete(self, customer_id: str) -> Dict:
        customer = await self.db.customers.find_one({"id": customer_id}, {"_id": 0, "id": 1})
        if not customer:
            raise NotFound("Customer")
        if await self.db.orders.count_documents({"customerId": customer_id}) > 0:
            raise ValidationFailed("Customer has orders and cannot be deleted", field="customerId")
        await self.db.customers.delete_one({"id": customer_id})
        return {"deleted": True}

    async def mapped_for(self, emp_cd: Optional[str], is_admin: bool = False) -> List[dict]:
        """Customers an employee may order for, with selectable ship-to addresses"""
        query = {} if is_admin else {"empCdMapped": emp_cd}
        customers = await self.db.customers.find(query, {"_id": 0}).sort("custName", 1).to_list(1000)
        return [
            {
                "id": c["id"],
                "custCd": c.get("custCd"),
                "custName": c.get("custName"),
                "status": c.get("status"),
                "outstandingAmount": c.get("outstandingAmount", 0),
                "selectable": c.get("status") == "Active",
                "shipToAddresses": ship_to_addresses(c),
            }
            for c in customers
        ]


class OrderService:
    def __init__(self, db):
        self.db = db
        self.numbering = NumberingService(db)

    async def create(self, data: dict, user: Optional[dict] = None) -> dict:
        fields = validate_order_payload(data)
        customer = await self.db.customers.find_one({"id": fields["customerId"]}, {"_id": 0})
        if not customer:
            raise NotFound("Customer")
        if user and not can_order_for(customer, user):
            raise Forbidden("Customer not accessible")
        if customer.get("status") != "Active":
            raise ValidationFailed("Cannot place order for inactive/suspended customer", field="customerId")

        created = datetime.now(timezone.utc)
        order = {
            "id": str(uuid.uuid4()),
            "orderNo": await self.numbering.next_order_no(customer, fields["shipToAddress"], created),
            **fields,
            "empCd": (user or {}).get("empCd"),
            "depotCd": customer.get("depotCd"),
            "orderStatus": "PENDING",
            "referenceNo": data.get("referenceNo"),
            "paymentMethod": data.get("paymentMethod") or "RTGS",
            "creditDays": data.get("creditDays") if data.get("creditDays") is not None else 1,
            "confirmedAt": created.isoformat(),
            "createdAt": created.isoformat(),
            "updatedAt": created.isoformat()
        }
        await self.db.orders.insert_one(order)
        order.pop("_id", None)
        logger.info(f"Order {order['orderNo']} created for {customer.get('custCd')}")
        return order

    async def list(self, user: dict, status: Optional[str] = None, customer_id: Optional[str] = None) -> List[dict]:
        query: Dict = {}
        if status:
            query["orderStatus"] = status
        if customer_id:
            query["customerId"] = customer_id
        if not user.get("isAdmin"):
            if user.get("userType") == "C":
                query["customerId"] = user.get("customerId")
            else:
                mapped = await self.db.customers.find(
                    {"empCdMapped": user.get("empCd")}, {"_id": 0, "id": 1}
                ).to_list(1000)
                allowed = [c["id"] for c in mapped]
                if customer_id and customer_id not in allowed:
                    return []
                query["customerId"] = customer_id if customer_id else {"$in": allowed}

        orders = await self.db.orders.find(query, {"_id": 0}).sort("createdAt", -1).to_list(1000)
        for o in orders:
            o["orderQty"] = sum(float(i.get("quantity") or 0) for i in o.get("items") or [])
        return orders

    async def get(self, order_id: str) -> dict:
        order = await self.db.orders.find_one({"id": order_id}, {"_id": 0})
        if not order:
            raise NotFound("Order")
        return order

    async def ensure_access(self, order: dict, user: Optional[dict]):
        if not user or user.get("isAdmin"):
            return
        customer = await self.db.customers.find_one({"id": order.get("customerId")}, {"_id": 0})
        if user.get("userType") == "C" or not customer or not can_order_for(customer, user):
            raise Forbidden("Not allowed for this order")

    async def set_status(self, order_id: str, status: Optional[str], user: Optional[dict] = None) -> dict:
        if status not in ORDER_STATUSES:
            raise ValidationFailed(f"Invalid status. Must be one of: {ORDER_STATUSES}", field="orderStatus")
        await self.ensure_access(await self.get(order_id), user)

        now = _now()
        update = {"orderStatus": status, "updatedAt": now}
        if status == "ASSIGNED":
            update["allocatedAt"] = now
        if status == "COMPLETED":
            update["completedAt"] = now
        query: Dict = {"id": order_id}
        if status in RELEASED_ORDER_STATUSES:
            # planned orders are released by cancelling their trip
            query["tripId"] = None
        order = await self.db.orders.find_one_and_update(query, {"$set": update}, return_document=True)
        if not order:
            raise Conflict(f"Order is planned on a trip and cannot be set to {status}", error_code="ORDER_ON_TRIP")
        order.pop("_id", None)
        return order

    async def delete(self, order_id: str, user: Optional[dict] = None) -> Dict:
        await self.ensure_access(await self.get(order_id), user)
        result = await self.db.orders.delete_one({"id": order_id, "orderStatus": {"$in": DELETABLE_ORDER_STATUSES}})
        if result.deleted_count == 0:
            raise ValidationFailed("Only PENDING or CANCELLED orders can be deleted", field="orderStatus")
        return {"deleted": True}
