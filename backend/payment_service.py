"""
Payment Service - customer payment drafts and the PayRec accounts ledger
"""

import logging
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from errors import Conflict, Forbidden, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

PAYMENT_STATUSES = ["DRAFT", "SUBMITTED", "DELETED"]
PAYMENT_TRANS_TYPES = ["RECEIPT", "PAYMENT", "ADJUSTMENT"]
PAYMENT_MODES = ["CASH", "UPI", "NEFT", "RTGS", "CHEQUE", "CARD", "OTHER"]
PAYMENT_EDITABLE = ["transType", "transName", "custCd", "custName", "customerId", "amount",
                    "mode", "refNo", "remarks", "txDate", "orderId", "tripId"]

PAYREC_TR_TYPES = ["RECEIPT", "PAYMENT", "DR", "CR", "3P_RECEIPT", "3P_PAYMENT"]
PAYREC_THIRD_PARTY = ["3P_RECEIPT", "3P_PAYMENT"]
PAYREC_MODES = ["BANK", "CASH", "ADJ_DR", "ADJ_CR"]
PAYREC_STATUSES = ["ACTIVE", "POSTED", "DELETED"]
PAYREC_FIELDS = ["date", "trType", "partyCode", "partyName", "forPartyCode", "forPartyName",
                 "mode", "refNo", "amount", "remarks", "mgr", "status"]
ACCOUNTS_USER_TYPES = ["A", "AC"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _page_args(page, limit, default_limit=50):
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or default_limit), 1), MAX_PAGE_SIZE)
    return page, limit


def _end_of_day(value: str) -> str:
    return f"{value}T23:59:59.999999+00:00" if len(value) == 10 else value


def _amount(value) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("amount must be a number >= 0", field="amount")
    if math.isnan(amount) or math.isinf(amount) or amount < 0:
        raise ValidationFailed("amount must be a number >= 0", field="amount")
    return amount


def _choice(value, allowed, field):
    if value not in allowed:
        raise ValidationFailed(f"Invalid {field}. Must be one of: {allowed}", field=field)
    return value


class PaymentService:
    """DRAFT -> SUBMITTED, soft deleted to DELETED; only drafts are editable"""

    def __init__(self, db):
        self.db = db

    async def list_payments(self, q: str = "", status: Optional[str] = None, trans_type: Optional[str] = None,
                            mode: Optional[str] = None, date_from: Optional[str] = None,
                            date_to: Optional[str] = None, page=1, limit=50,
                            include_deleted: bool = False) -> Dict:
        page, limit = _page_args(page, limit)
        query: Dict = {}
        if not include_deleted:
            query["status"] = {"$ne": "DELETED"}
        if status and status != "ALL":
            query["status"] = status
        if trans_type and trans_type != "ALL":
            query["transType"] = trans_type
        if mode and mode != "ALL":
            query["mode"] = mode
        if date_from or date_to:
            query["txDate"] = {}
            if date_from:
                query["txDate"]["$gte"] = date_from
            if date_to:
                query["txDate"]["$lte"] = _end_of_day(date_to)
        if q and q.strip():
            rx = {"$regex": re.escape(q.strip()), "$options": "i"}
            query["$or"] = [{"transName": rx}, {"custCd": rx}, {"custName": rx}, {"refNo": rx}, {"remarks": rx}]

        total = await self.db.payments.count_documents(query)
        data = await self.db.payments.find(query, {"_id": 0}).sort(
            "txDate", -1
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        matching = await self.db.payments.find(query, {"_id": 0, "amount": 1}).to_list(None)
        totals = {"amount": round(sum(float(p.get("amount") or 0) for p in matching), 2)}
        return {"data": data, "page": page, "pages": math.ceil(total / limit) or 1, "total": total, "totals": totals}

    async def get_payment(self, payment_id: str) -> dict:
        doc = await self.db.payments.find_one({"id": payment_id, "status": {"$ne": "DELETED"}}, {"_id": 0})
        if not doc:
            raise NotFound("Payment")
        return doc

    async def create_payment(self, data: dict, user: Optional[dict] = None) -> Dict:
        if not data.get("transType") or data.get("amount") is None or not data.get("mode"):
            raise ValidationFailed("transType, amount and mode are required")
        now = _now()
        doc = {
            "id": str(uuid.uuid4()),
            "transType": _choice(data["transType"], PAYMENT_TRANS_TYPES, "transType"),
            "transName": data.get("transName") or "",
            "custCd": data.get("custCd"),
            "custName": data.get("custName"),
            "customerId": data.get("customerId"),
            "amount": _amount(data["amount"]),
            "mode": _choice(data["mode"], PAYMENT_MODES, "mode"),
            "refNo": data.get("refNo"),
            "remarks": data.get("remarks") or "",
            "txDate": data.get("txDate") or now,
            "orderId": data.get("orderId") or None,
            "tripId": data.get("tripId") or None,
            "status": "DRAFT",
            "createdBy": (user or {}).get("id"),
            "updatedBy": (user or {}).get("id"),
            "createdAt": now,
            "updatedAt": now
        }
        await self.db.payments.insert_one(doc)
        return {"message": "Payment created", "id": doc["id"]}

    async def _draft_transition(self, payment_id: str, update: dict, action: str):
        """Apply ``update`` only while the payment is still a DRAFT"""
        result = await self.db.payments.find_one_and_update(
            {"id": payment_id, "status": "DRAFT"},
            update,
            return_document=True
        )
        if result is None:
            await self.get_payment(payment_id)
            raise Conflict(f"Only DRAFT payments can be {action}", error_code="PAYMENT_NOT_DRAFT")
        return result

    async def update_payment(self, payment_id: str, data: dict, user: Optional[dict] = None) -> Dict:
        changes = {k: data[k] for k in PAYMENT_EDITABLE if k in data}
        if "amount" in changes:
            changes["amount"] = _amount(changes["amount"])
        if "transType" in changes:
            _choice(changes["transType"], PAYMENT_TRANS_TYPES, "transType")
        if "mode" in changes:
            _choice(changes["mode"], PAYMENT_MODES, "mode")
        for ref in ("orderId", "tripId"):
            if ref in changes and not changes[ref]:
                changes[ref] = None
        changes["updatedBy"] = (user or {}).get("id")
        changes["updatedAt"] = _now()
        await self._draft_transition(payment_id, {"$set": changes}, "modified")
        return {"message": "Payment updated"}

    async def submit_payment(self, payment_id: str, user: Optional[dict] = None) -> Dict:
        now = _now()
        await self._draft_transition(
            payment_id,
            {"$set": {"status": "SUBMITTED", "submittedAt": now, "updatedBy": (user or {}).get("id"), "updatedAt": now}},
            "submitted"
        )
        logger.info(f"Payment {payment_id} submitted")
        return {"message": "Payment submitted"}

    async def reset_payment(self, payment_id: str, user: Optional[dict] = None) -> Dict:
        """Blank the editable fields but keep transType and txDate"""
        await self._draft_transition(
            payment_id,
            {"$set": {
                "transName": "", "custCd": "", "custName": "", "customerId": None,
                "amount": 0, "mode": "CASH", "refNo": "", "remarks": "",
                "orderId": None, "tripId": None,
                "updatedBy": (user or {}).get("id"), "updatedAt": _now()
            }},
            "reset"
        )
        return {"message": "Payment reset"}

    async def delete_payment(self, payment_id: str, user: Optional[dict] = None) -> Dict:
        now = _now()
        result = await self.db.payments.find_one_and_update(
            {"id": payment_id, "status": {"$ne": "DELETED"}},
            {"$set": {"status": "DELETED", "deletedAt": now, "updatedBy": (user or {}).get("id"), "updatedAt": now}},
            return_document=True
        )
        if result is None:
            raise NotFound("Payment")
        return {"deleted": True}


def require_accounts(user: Optional[dict]):
    if not user or (user.get("userType") not in ACCOUNTS_USER_TYPES and not user.get("isAdmin")):
        raise Forbidden("Accounts or Admin required")


def normalize_payrec(data: dict) -> dict:
    """Validate a PayRec payload; non third-party rows mirror the party into forParty"""
    if not data.get("date"):
        raise ValidationFailed("date is required", field="date")
    if not data.get("partyCode"):
        raise ValidationFailed("partyCode is required", field="partyCode")
    _choice(data.get("trType"), PAYREC_TR_TYPES, "trType")
    _choice(data.get("mode"), PAYREC_MODES, "mode")
    doc = {k: data.get(k) for k in PAYREC_FIELDS if k in data}
    doc["amount"] = _amount(data.get("amount"))
    doc["status"] = _choice(data.get("status") or "ACTIVE", PAYREC_STATUSES, "status")
    if len(doc.get("remarks") or "") > 500:
        raise ValidationFailed("remarks must be at most 500 characters", field="remarks")
    if len(doc.get("mgr") or "") > 100:
        raise ValidationFailed("mgr must be at most 100 characters", field="mgr")

    if doc["trType"] in PAYREC_THIRD_PARTY:
        if not doc.get("forPartyCode"):
            raise ValidationFailed("forPartyCode is required for 3P transactions", field="forPartyCode")
    else:
        doc["forPartyCode"] = doc["partyCode"]
        if not doc.get("forPartyName"):
            doc["forPartyName"] = doc.get("partyName")
    return doc


class PayRecService:
    def __init__(self, db):
        self.db = db

    async def _live(self, payrec_id: str) -> dict:
        doc = await self.db.payrecs.find_one({"id": payrec_id}, {"_id": 0})
        if not doc:
            raise NotFound("PayRec")
        if doc.get("status") == "DELETED":
            raise Conflict("Record is soft-deleted and cannot be modified", error_code="PAYREC_DELETED")
        return doc

    async def create(self, data: dict, user: dict) -> dict:
        doc = normalize_payrec(data)
        now = _now()
        doc.update({
            "id": str(uuid.uuid4()),
            "createdBy": user.get("userId"),
            "updatedBy": user.get("userId"),
            "createdAt": now,
            "updatedAt": now
        })
        await self.db.payrecs.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def list(self, q: Optional[str] = None, date_from: Optional[str] = None, date_to: Optional[str] = None,
                   tr_type: Optional[str] = None, mode: Optional[str] = None, party_code: Optional[str] = None,
                   for_party_code: Optional[str] = None, status: Optional[str] = None,
                   page=1, limit=20) -> Dict:
        page, limit = _page_args(page, limit, default_limit=20)
        query: Dict = {"status": status} if status else {"status": {"$ne": "DELETED"}}
        if date_from or date_to:
            query["date"] = {}
            if date_from:
                query["date"]["$gte"] = date_from
            if date_to:
                query["date"]["$lte"] = _end_of_day(date_to)
        if tr_type:
            query["trType"] = tr_type
        if mode:
            query["mode"] = mode
        if party_code:
            query["partyCode"] = party_code
        if for_party_code:
            query["forPartyCode"] = for_party_code
        if q:
            rx = {"$regex": re.escape(q), "$options": "i"}
            query["$or"] = [{f: rx} for f in ("partyCode", "partyName", "forPartyCode", "forPartyName",
                                               "refNo", "remarks", "mgr")]

        total = await self.db.payrecs.count_documents(query)
        items = await self.db.payrecs.find(query, {"_id": 0}).sort(
            "date", -1
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        return {"page": page, "limit": limit, "total": total, "items": items}

    async def get(self, payrec_id: str) -> dict:
        doc = await self.db.payrecs.find_one({"id": payrec_id}, {"_id": 0})
        if not doc:
            raise NotFound("PayRec")
        return doc

    async def update(self, payrec_id: str, data: dict, user: dict) -> dict:
        current = await self._live(payrec_id)
        merged = {k: current.get(k) for k in PAYREC_FIELDS if k in current}
        merged.update({k: data[k] for k in PAYREC_FIELDS if k in data})
        changes = normalize_payrec(merged)
        if changes["status"] == "DELETED":
            raise ValidationFailed("Use DELETE to remove a record", field="status")
        changes["updatedBy"] = user.get("userId")
        changes["updatedAt"] = _now()
        saved = await self.db.payrecs.find_one_and_update(
            {"id": payrec_id, "status": {"$ne": "DELETED"}},
            {"$set": changes},
            return_document=True
        )
        if saved is None:
            raise Conflict("Record is soft-deleted and cannot be modified", error_code="PAYREC_DELETED")
        saved.pop("_id", None)
        return saved

    async def set_status(self, payrec_id: str, status: Optional[str], user: dict) -> dict:
        if not status:
            raise ValidationFailed("status is required", field="status")
        _choice(status, ["ACTIVE", "POSTED"], "status")
        await self._live(payrec_id)
        saved = await self.db.payrecs.find_one_and_update(
            {"id": payrec_id, "status": {"$ne": "DELETED"}},
            {"$set": {"status": status, "updatedBy": user.get("userId"), "updatedAt": _now()}},
            return_document=True
        )
        if saved is None:
            raise Conflict("Record is soft-deleted and cannot be modified", error_code="PAYREC_DELETED")
        saved.pop("_id", None)
        return saved

    async def restore(self, payrec_id: str, user: dict) -> Dict:
        restored = await self.db.payrecs.find_one_and_update(
            {"id": payrec_id, "status": "DELETED"},
            {"$set": {"status": "ACTIVE", "updatedBy": user.get("userId"), "updatedAt": _now()},
             "$unset": {"deletedAt": "", "deletedBy": ""}},
            return_document=True
        )
        if restored is None:
            await self.get(payrec_id)
            raise Conflict("Record is not soft-deleted", error_code="PAYREC_NOT_DELETED")
        return {"restored": True, "id": payrec_id}

    async def soft_delete(self, payrec_id: str, user: dict) -> Dict:
        await self.get(payrec_id)
        now = _now()
        await self.db.payrecs.update_one(
            {"id": payrec_id, "status": {"$ne": "DELETED"}},
            {"$set": {"status": "DELETED", "deletedAt": now, "deletedBy": user.get("userId"), "updatedAt": now}}
        )
        return {"deleted": True, "soft": True, "id": payrec_id}
