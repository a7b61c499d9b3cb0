"""
Numbering Service - atomic counters for order, trip, DC and invoice numbers
"""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, Optional

from errors import SequenceExhausted

logger = logging.getLogger(__name__)

SHIP_TO_SLOTS = 5
TRIP_SERIAL_KEY = "tripSerial"
DC_SERIAL_KEY = "dcSerial"
INVOICE_SERIAL_KEY = "invoiceSerial"
MAX_ORDER_SEQ = 999


def format_ship_to(customer: dict, slot: int) -> str:
    """Join the non-empty address parts of ship-to slot ``slot`` (1-based)"""
    prefix = f"shipTo{slot}"
    parts = [
        customer.get(f"{prefix}Add1"),
        customer.get(f"{prefix}Add2"),
        customer.get(f"{prefix}Add3"),
        customer.get(f"{prefix}Area"),
        customer.get(f"{prefix}City"),
    ]
    text = ", ".join(str(p).strip() for p in parts if p and str(p).strip())
    pin = customer.get(f"{prefix}Pin")
    if pin:
        text = f"{text} - {pin}" if text else str(pin)
    return text


def state_code_for(customer: dict, ship_to_text: str) -> str:
    """
    Pick the 2-digit state code for an order.

    The ship-to slot whose first address line (or formatted address) overlaps the
    order's ship-to text wins; otherwise the billing state code, otherwise "00".
    """
    needle = (ship_to_text or "").strip().lower()
    if needle:
        for slot in range(1, SHIP_TO_SLOTS + 1):
            state_cd = customer.get(f"shipTo{slot}StateCd")
            candidates = [customer.get(f"shipTo{slot}Add1") or "", format_ship_to(customer, slot)]
            for candidate in candidates:
                candidate = candidate.strip().lower()
                if not candidate:
                    continue
                if candidate in needle or needle in candidate:
                    if state_cd:
                        return _two_digits(state_cd)
                    break

    if customer.get("billStateCd"):
        return _two_digits(customer["billStateCd"])
    return "00"


def _two_digits(value) -> str:
    digits = re.sub(r"\D", "", str(value))
    return (digits or "0")[-2:].zfill(2)


def depot_code_suffix(depot_cd) -> str:
    """Last two digits of the 3-digit depot code"""
    return _two_digits(depot_cd)


def ddmmyy(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%d%m%y")


def trip_prefix(requested: Optional[str]) -> str:
    """Client trip number with its trailing serial digits removed"""
    return re.sub(r"\d+$", "", (requested or "").strip())


class NumberingService:
    """Counter documents in ``db.counters`` keyed by ``_id``"""

    def __init__(self, db):
        self.db = db

    async def next_value(self, key: str, start: int = 0) -> int:
        """
        Increment counter ``key`` and return the new value.

        A missing counter is created at ``start - 1`` so the first value handed
        out is ``start``.
        """
        counter = await self.db.counters.find_one_and_update(
            {"_id": key},
            {"$setOnInsert": {"createdAt": datetime.now(timezone.utc).isoformat()}, "$inc": {"seq": 1}},
            upsert=True,
            return_document=True
        )
        seq = counter.get("seq", 1)
        if start != 1:
            # $inc on an upserted doc starts at 1
            seq = seq - 1 + start
        return seq

    async def next_order_no(self, customer: dict, ship_to_text: str, order_date: Optional[datetime] = None) -> str:
        """state(2) + depot(2) + ddmmyy(6) + running number(3)"""
        prefix = (
            state_code_for(customer, ship_to_text)
            + depot_code_suffix(customer.get("depotCd", ""))
            + ddmmyy(order_date)
        )
        seq = await self.next_value(f"order:{prefix}", start=1)
        if seq > MAX_ORDER_SEQ:
            logger.warning(f"Order sequence exhausted for prefix {prefix}")
            raise SequenceExhausted(prefix)
        return f"{prefix}{str(seq).zfill(3)}"

    async def next_trip_serial(self) -> str:
        """Three-digit rolling serial, first value 000"""
        n = await self.next_value(TRIP_SERIAL_KEY, start=0)
        return str(n % 1000).zfill(3)

    async def next_trip_no(self, requested: Optional[str], depot_cd: str = "", moment: Optional[datetime] = None) -> str:
        prefix = trip_prefix(requested) or f"{depot_cd}{ddmmyy(moment)}"
        return f"{prefix}{await self.next_trip_serial()}"

    async def reset_trip_serial(self) -> Dict:
        await self.db.counters.update_one(
            {"_id": TRIP_SERIAL_KEY},
            {"$set": {"seq": 0}},
            upsert=True
        )
        logger.info("Trip serial reset")
        return {"ok": True, "next": "000"}

    async def next_dc_no(self) -> str:
        n = await self.next_value(DC_SERIAL_KEY, start=1)
        return f"DC{str(n).zfill(8)}"

    async def next_invoice_no(self) -> str:
        """Per-delivery invoice numbers; INVD never collides with INV + trip digits"""
        n = await self.next_value(INVOICE_SERIAL_KEY, start=1)
        return f"INVD{str(n).zfill(6)}"


def invoice_no_for_trip(trip_no: str) -> str:
    """Aggregated trip invoice number: INV + trip digits (zero padded to 6)"""
    digits = re.sub(r"\D", "", trip_no or "")
    return f"INV{digits.zfill(6)}"
