"""
Invoice Service - invoice documents from deliveries and their PDF rendering
"""

import logging
import math
import os
import re
import uuid
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional

from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from errors import Conflict, NotFound
from numbering_service import NumberingService, format_ship_to, invoice_no_for_trip

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
DEFAULT_PRODUCT = "Diesel"
DEFAULT_UOM = "Liter"
MAX_PAGE_SIZE = 200

SOURCE_TRIP_CLOSE = "TRIP_CLOSE"
SOURCE_AGGREGATED = "AGGREGATED"


def company_profile() -> Dict[str, str]:
    """Branding printed on invoices, overridable from the environment"""
    return {
        "title": "Delivery cum Sales Invoice",
        "name": os.environ.get('COMPANY_NAME', 'SHREENATH PETROLEUM'),
        "suffix": os.environ.get('COMPANY_SUFFIX', 'PRIVATE LIMITED'),
        "address": os.environ.get('COMPANY_ADDRESS', 'Thane, Maharashtra - 421501'),
        "phone": os.environ.get('COMPANY_PHONE', '+91-9321640558'),
        "email": os.environ.get('COMPANY_EMAIL', 'order@fuelwale.com'),
        "web": os.environ.get('COMPANY_WEB', 'www.fuelwale.com'),
        "jurisdiction": os.environ.get('INVOICE_JURISDICTION', 'Mumbai'),
    }


def bank_profile() -> Dict[str, str]:
    return {
        "bankName": os.environ.get('BANK_NAME', 'Bank of Maharashtra'),
        "accountName": os.environ.get('BANK_ACCT_NAME', 'Shreenath Petroleum Pvt Ltd'),
        "accountNo": os.environ.get('BANK_ACCT_NO', '60528140328'),
        "ifsc": os.environ.get('BANK_IFSC', 'MAHB0001006'),
        "branch": os.environ.get('BANK_BRANCH', 'BoM & Nariman Point'),
        "upi": os.environ.get('UPI_QR_VALUE', ''),
    }


def round2(value: float) -> float:
    return round(float(value), 2)


def number_to_words(num: float) -> str:
    """
    Indian-system words for an amount, e.g.
    123456.5 -> "One Lakh Twenty Three Thousand Four Hundred Fifty Six and Paise Fifty"
    """
    ones = ["", "One", "Two", "Three", "Four", "Five", "Six", "Seven", "Eight", "Nine"]
    teens = ["Ten", "Eleven", "Twelve", "Thirteen", "Fourteen", "Fifteen", "Sixteen", "Seventeen", "Eighteen", "Nineteen"]
    tens = ["", "", "Twenty", "Thirty", "Forty", "Fifty", "Sixty", "Seventy", "Eighty", "Ninety"]

    def two_digits(n):
        if n >= 20:
            return (tens[n // 10] + " " + ones[n % 10]).strip()
        if n >= 10:
            return teens[n - 10]
        return ones[n]

    def convert_hundreds(n):
        result = ""
        if n >= 100:
            result += ones[n // 100] + " Hundred "
            n %= 100
        if n > 0:
            result += two_digits(n)
        return result.strip()

    total_paise = int(round(abs(num) * 100))
    integer_part, decimal_part = divmod(total_paise, 100)

    if integer_part == 0:
        words = "Zero"
    else:
        words = ""
        crore, integer_part = divmod(integer_part, 10000000)
        lakh, integer_part = divmod(integer_part, 100000)
        thousand, integer_part = divmod(integer_part, 1000)
        if crore:
            words += convert_hundreds(crore) + " Crore "
        if lakh:
            words += two_digits(lakh) + " Lakh "
        if thousand:
            words += two_digits(thousand) + " Thousand "
        if integer_part:
            words += convert_hundreds(integer_part)
        words = words.strip()

    if decimal_part > 0:
        words += f" and Paise {two_digits(decimal_part)}"
    return words


def amount_in_words(amount: float) -> str:
    return f"Rupees {number_to_words(amount)} only"


def bill_address(customer: dict) -> str:
    parts = [customer.get("billToAdd1"), customer.get("billToAdd2"), customer.get("billToAdd3"),
             customer.get("billArea"), customer.get("billCity")]
    text = ", ".join(str(p).strip() for p in parts if p and str(p).strip())
    if customer.get("billPin"):
        text = f"{text} - {customer['billPin']}" if text else str(customer["billPin"])
    return text or format_ship_to(customer, 1)


def customer_snapshot(customer: Optional[dict], ship_to: Optional[str] = None) -> Dict:
    customer = customer or {}
    return {
        "custCd": customer.get("custCd"),
        "custName": customer.get("custName"),
        "address": bill_address(customer) or None,
        "shipToAddress": ship_to,
        "district": customer.get("billCity"),
        "rsmName": customer.get("rsmName") or customer.get("empCdMapped"),
        "receiverPhone": customer.get("mobileNo"),
        "custGST": customer.get("custGST"),
    }


def order_snapshot(order: Optional[dict]) -> Dict:
    order = order or {}
    credit_days = order.get("creditDays")
    return {
        "orderNo": order.get("orderNo"),
        "referenceNo": order.get("referenceNo"),
        "paymentMethod": order.get("paymentMethod") or "RTGS",
        "creditDays": 1 if credit_days is None else credit_days,
        "shipToAddress": order.get("shipToAddress"),
    }


def vehicle_snapshot(trip: dict) -> Dict:
    snap = trip.get("snapshot") or {}
    return {
        "vehicleNo": snap.get("vehicleNo") or trip.get("vehicleNo"),
        "routeId": trip.get("routeId"),
        "tripNo": trip.get("tripNo"),
    }


def line_product(order: Optional[dict]) -> Dict:
    items = (order or {}).get("items") or []
    first = items[0] if items else {}
    return {
        "productCode": first.get("productCode") or first.get("productId"),
        "productName": first.get("productName") or DEFAULT_PRODUCT,
        "uom": first.get("uom") or DEFAULT_UOM,
    }


def aggregate_items(deliveries: List[dict], orders_by_id: Dict[str, dict]) -> List[Dict]:
    """Group deliveries by (productCode, productName, uom, rate), summing quantity and amount"""
    grouped: Dict[tuple, Dict] = {}
    for d in deliveries:
        product = line_product(orders_by_id.get(d.get("orderId")))
        rate = float(d.get("rate") or 0)
        qty = float(d.get("qty") or 0)
        amount = round2(qty * rate)
        key = (product["productCode"], product["productName"], product["uom"], rate)
        if key not in grouped:
            grouped[key] = {**product, "rate": rate, "quantity": qty, "amount": amount}
        else:
            acc = grouped[key]
            acc["quantity"] += qty
            acc["amount"] = round2(acc["amount"] + amount)
    return list(grouped.values())


class InvoiceService:
    def __init__(self, db):
        self.db = db
        self.numbering = NumberingService(db)

    async def create_delivery_invoice(self, trip: dict, delivery: dict) -> dict:
        """One invoice for a single recorded delivery at trip close"""
        order = await self.db.orders.find_one({"id": delivery.get("orderId")}, {"_id": 0})
        customer = await self.db.customers.find_one({"id": delivery.get("customerId")}, {"_id": 0})
        qty = float(delivery.get("qty") or 0)
        rate = float(delivery.get("rate") or 0)
        amount = round2(qty * rate)
        now = datetime.now(timezone.utc).isoformat()

        invoice = {
            "id": str(uuid.uuid4()),
            "invoiceNo": await self.numbering.next_invoice_no(),
            "invoiceDate": now,
            "tripId": trip["id"],
            "orderId": delivery.get("orderId"),
            "customerId": delivery.get("customerId"),
            "deliveryId": delivery.get("id"),
            "customerSnap": customer_snapshot(customer, delivery.get("shipTo")),
            "orderSnap": order_snapshot(order),
            "vehicleSnap": vehicle_snapshot(trip),
            "items": [{**line_product(order), "quantity": qty, "rate": rate, "amount": amount}],
            "subTotal": amount,
            "totalAmount": amount,
            "dcNumber": delivery.get("dcNo"),
            "notes": f"Subject to {company_profile()['jurisdiction']} Jurisdiction",
            "source": SOURCE_TRIP_CLOSE,
            "createdAt": now
        }
        await self.db.invoices.insert_one(invoice)
        invoice.pop("_id", None)
        return invoice

    async def prefill_from_trip(self, trip_id: str) -> Dict:
        """Single aggregated invoice payload for a whole trip, not persisted"""
        trip = await self.db.trips.find_one({"id": trip_id}, {"_id": 0})
        if not trip:
            raise NotFound("Trip")

        deliveries = await self.db.deliveries.find(
            {"tripId": trip_id, "dcNo": {"$ne": None}}, {"_id": 0}
        ).sort("deliveredAt", 1).to_list(1000)
        if not deliveries:
            raise NotFound("Delivery", "No deliveries for this trip")

        order_ids = list({d["orderId"] for d in deliveries})
        orders = await self.db.orders.find({"id": {"$in": order_ids}}, {"_id": 0}).to_list(1000)
        orders_by_id = {o["id"]: o for o in orders}

        first = deliveries[0]
        order = orders_by_id.get(first["orderId"]) or {}
        customer = await self.db.customers.find_one({"id": first.get("customerId")}, {"_id": 0})

        items = aggregate_items(deliveries, orders_by_id)
        sub_total = round2(sum(it["amount"] for it in items))
        trip_digits = re.sub(r"\D", "", trip.get("tripNo") or "")

        return {
            "tripId": trip_id,
            "tripNo": trip.get("tripNo"),
            "invoiceNo": invoice_no_for_trip(trip.get("tripNo")),
            "invoiceDate": datetime.now(timezone.utc).isoformat(),
            "orderId": order.get("id"),
            "customerId": first.get("customerId"),
            "customerSnap": customer_snapshot(customer, first.get("shipTo")),
            "orderSnap": order_snapshot(order),
            "vehicleSnap": vehicle_snapshot(trip),
            "items": items,
            "subTotal": sub_total,
            "totalAmount": sub_total,
            "dcNumber": order.get("referenceNo") or f"DC{trip_digits}",
            "notes": f"Subject to {company_profile()['jurisdiction']} Jurisdiction",
        }

    async def create_from_trip(self, trip_id: str, overrides: Optional[dict] = None,
                               user: Optional[dict] = None) -> Dict:
        prefill = await self.prefill_from_trip(trip_id)
        overrides = overrides or {}

        existing = await self.db.invoices.find_one({"invoiceNo": prefill["invoiceNo"]}, {"_id": 0, "id": 1})
        if existing:
            raise Conflict(f"Invoice {prefill['invoiceNo']} already exists", error_code="DUPLICATE_INVOICE")

        now = datetime.now(timezone.utc).isoformat()
        invoice = {
            **prefill,
            "id": str(uuid.uuid4()),
            "invoiceDate": overrides.get("invoiceDate") or prefill["invoiceDate"],
            "notes": overrides["notes"] if isinstance(overrides.get("notes"), str) else prefill["notes"],
            "source": SOURCE_AGGREGATED,
            "createdBy": (user or {}).get("userId"),
            "createdAt": now
        }
        await self.db.invoices.insert_one(invoice)

        if prefill.get("orderId"):
            await self.db.orders.update_one(
                {"id": prefill["orderId"]},
                {"$set": {"orderStatus": "COMPLETED", "completedAt": now}}
            )
        logger.info(f"Aggregated invoice {invoice['invoiceNo']} created for trip {prefill.get('tripNo')}")
        return {"ok": True, "invoiceId": invoice["id"], "invoiceNo": invoice["invoiceNo"]}

    async def list_invoices(self, q: str = "", date_from: Optional[str] = None, date_to: Optional[str] = None,
                            page: int = 1, limit: int = 50) -> Dict:
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 50), 1), MAX_PAGE_SIZE)

        query: Dict = {}
        if q and q.strip():
            rx = {"$regex": re.escape(q.strip()), "$options": "i"}
            query["$or"] = [
                {"invoiceNo": rx},
                {"dcNumber": rx},
                {"customerSnap.custCd": rx},
                {"customerSnap.custName": rx},
            ]
        if date_from or date_to:
            query["invoiceDate"] = {}
            if date_from:
                query["invoiceDate"]["$gte"] = date_from
            if date_to:
                query["invoiceDate"]["$lte"] = f"{date_to}T23:59:59.999999+00:00" if len(date_to) == 10 else date_to

        total = await self.db.invoices.count_documents(query)
        data = await self.db.invoices.find(query, {"_id": 0}).sort(
            "invoiceDate", -1
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        pages = math.ceil(total / limit) or 1
        return {"data": data, "page": page, "pages": pages, "total": total}

    async def get_invoice(self, invoice_id: str) -> dict:
        invoice = await self.db.invoices.find_one({"id": invoice_id}, {"_id": 0})
        if not invoice:
            raise NotFound("Invoice")
        return invoice


# ==================== PDF ====================

def _qr_drawing(value: str, size: float = 2.6 * cm) -> Drawing:
    widget = QrCodeWidget(value)
    x1, y1, x2, y2 = widget.getBounds()
    drawing = Drawing(size, size, transform=[size / (x2 - x1), 0, 0, size / (y2 - y1), 0, 0])
    drawing.add(widget)
    return drawing


def create_invoice_header(company: Dict[str, str], styles) -> list:
    """Company name block (left) and contact block (right), then title and divider"""
    elements = []

    logo_path = ROOT_DIR / "assets" / "logo_left.png"
    name_style = ParagraphStyle('CompanyName', parent=styles['Normal'], fontSize=14, leading=17,
                                alignment=TA_LEFT, textColor=colors.HexColor('#254c91'))
    contact_style = ParagraphStyle('CompanyContact', parent=styles['Normal'], fontSize=9, leading=12,
                                   alignment=TA_RIGHT, textColor=colors.HexColor('#212529'))

    name_cell = Paragraph(f"<b>{company['name']}</b><br/><font size='9'>{company['suffix']}</font>", name_style)
    if logo_path.exists():
        try:
            name_cell = Table([[Image(str(logo_path), width=2 * cm, height=2 * cm), name_cell]],
                              colWidths=[2.3 * cm, 7.6 * cm])
        except Exception as e:
            logger.warning(f"Failed to load logo: {e}")

    contact_cell = Paragraph(
        f"{company['address']}<br/>{company['phone']}<br/>{company['email']} &nbsp; {company['web']}",
        contact_style
    )
    header_table = Table([[name_cell, contact_cell]], colWidths=[9.9 * cm, 9.9 * cm])
    header_table.setStyle(TableStyle([
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ('LEFTPADDING', (0, 0), (-1, -1), 0),
        ('RIGHTPADDING', (0, 0), (-1, -1), 0),
    ]))
    elements.append(header_table)

    title_style = ParagraphStyle('InvoiceTitle', parent=styles['Heading1'], fontSize=16, leading=20,
                                 alignment=TA_CENTER, fontName='Helvetica-Bold',
                                 textColor=colors.HexColor('#254c91'), spaceAfter=0.1 * cm)
    elements.append(Paragraph(company["title"], title_style))

    divider = Table([[""]], colWidths=[19.8 * cm])
    divider.setStyle(TableStyle([
        ('LINEBELOW', (0, 0), (0, 0), 2, colors.HexColor('#dee2e6')),
        ('TOPPADDING', (0, 0), (0, 0), 0.1 * cm),
        ('BOTTOMPADDING', (0, 0), (0, 0), 0.1 * cm),
    ]))
    elements.append(divider)
    elements.append(Spacer(1, 0.2 * cm))
    return elements


def _format_date(iso_value: Optional[str]) -> str:
    if not iso_value:
        return datetime.now(timezone.utc).strftime("%d %b %Y")
    try:
        return datetime.fromisoformat(str(iso_value).replace("Z", "+00:00")).strftime("%d %b %Y")
    except ValueError:
        return str(iso_value)


def generate_invoice_pdf(invoice: dict) -> BytesIO:
    """Render a stored (or prefilled) invoice as an A4 PDF"""
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, topMargin=1 * cm, bottomMargin=1 * cm,
                            leftMargin=0.6 * cm, rightMargin=0.6 * cm)
    styles = getSampleStyleSheet()
    small = ParagraphStyle('Small', parent=styles['Normal'], fontSize=8.5, leading=11)
    small_bold = ParagraphStyle('SmallBold', parent=small, fontName='Helvetica-Bold')

    company = company_profile()
    bank = bank_profile()
    customer = invoice.get("customerSnap") or {}
    order = invoice.get("orderSnap") or {}
    vehicle = invoice.get("vehicleSnap") or {}
    trip_no = vehicle.get("tripNo") or invoice.get("tripNo") or ""

    elements = create_invoice_header(company, styles)

    def grid(rows):
        return [[Paragraph(label, small_bold), Paragraph(str(value if value not in (None, "") else "-"), small)]
                for label, value in rows]

    credit_days = order.get("creditDays")
    left = grid([
        ("Party Name:", customer.get("custName")),
        ("Address:", customer.get("address") or customer.get("shipToAddress")),
        ("PoS:", customer.get("shipToAddress") or customer.get("address")),
        ("Party Code", customer.get("custCd")),
        ("Receiver's No.:", customer.get("receiverPhone")),
        ("Payment:", order.get("paymentMethod") or "RTGS"),
        ("DC Number:", invoice.get("dcNumber")),
    ])
    right = grid([
        ("Invoice No.:", invoice.get("invoiceNo")),
        ("Invoice Date:", _format_date(invoice.get("invoiceDate"))),
        ("District:", customer.get("district")),
        ("RSM:", customer.get("rsmName")),
        ("Dispenser ID:", vehicle.get("vehicleNo")),
        ("Ref. No.:", order.get("referenceNo") or trip_no),
        ("Credit Period:", f"{credit_days if credit_days is not None else 1} Days"),
    ])
    left_table = Table(left, colWidths=[3 * cm, 6.7 * cm])
    right_table = Table(right, colWidths=[3 * cm, 6.7 * cm])
    for t in (left_table, right_table):
        t.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('TOPPADDING', (0, 0), (-1, -1), 1),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 1),
        ]))
    party_grid = Table([[left_table, right_table]], colWidths=[9.9 * cm, 9.9 * cm])
    party_grid.setStyle(TableStyle([
        ('BOX', (0, 0), (-1, -1), 0.8, colors.HexColor('#adb5bd')),
        ('LINEAFTER', (0, 0), (0, 0), 0.5, colors.HexColor('#adb5bd')),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
    ]))
    elements.append(party_grid)
    elements.append(Spacer(1, 0.3 * cm))

    items_data = [["#", "Description of Goods", "Quantity", "Per", "Unit Rate", "Amount"]]
    total_qty = 0.0
    for idx, item in enumerate(invoice.get("items") or [], 1):
        qty = float(item.get("quantity") or 0)
        total_qty += qty
        items_data.append([
            str(idx),
            item.get("productName") or DEFAULT_PRODUCT,
            f"{qty:,.2f}",
            item.get("uom") or DEFAULT_UOM,
            f"{float(item.get('rate') or 0):,.2f}",
            f"{float(item.get('amount') or 0):,.2f}",
        ])
    total_amount = float(invoice.get("totalAmount") or 0)
    items_data.append(["", "Total", f"{total_qty:,.2f}", "", "", f"{total_amount:,.2f}"])

    items_table = Table(items_data, colWidths=[1 * cm, 7.3 * cm, 3 * cm, 2 * cm, 2.8 * cm, 3.7 * cm])
    items_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#254c91')),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('ALIGN', (2, 0), (-1, -1), 'RIGHT'),
        ('ALIGN', (3, 0), (3, -1), 'CENTER'),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#adb5bd')),
        ('BACKGROUND', (0, -1), (-1, -1), colors.HexColor('#f1f3f5')),
    ]))
    elements.append(items_table)
    elements.append(Spacer(1, 0.2 * cm))
    elements.append(Paragraph(f"<b>Amount in words:</b> {amount_in_words(total_amount)}", small))
    elements.append(Spacer(1, 0.3 * cm))

    bank_text = (
        f"<b>Bank Details</b><br/>{bank['bankName']}<br/>A/c Name: {bank['accountName']}<br/>"
        f"A/c No.: {bank['accountNo']}<br/>IFSC: {bank['ifsc']}<br/>Branch: {bank['branch']}"
    )
    bank_cell = [Paragraph(bank_text, small)]
    if bank["upi"]:
        bank_cell = Table([[Paragraph(bank_text, small), _qr_drawing(bank["upi"])]],
                          colWidths=[4.2 * cm, 2.8 * cm])

    sign_style = ParagraphStyle('Sign', parent=small, alignment=TA_CENTER)
    blocks = Table(
        [[
            Paragraph("<br/><br/><br/>Receiver's Sign.", sign_style),
            bank_cell,
            Paragraph(f"For, <b>{company['name']}</b><br/><br/><br/>Authorized Sign.", sign_style),
        ]],
        colWidths=[5.4 * cm, 7.4 * cm, 7 * cm]
    )
    blocks.setStyle(TableStyle([
        ('BOX', (0, 0), (-1, -1), 0.8, colors.HexColor('#adb5bd')),
        ('INNERGRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#adb5bd')),
        ('VALIGN', (0, 0), (-1, -1), 'BOTTOM'),
    ]))
    elements.append(blocks)
    elements.append(Spacer(1, 0.3 * cm))

    elements.append(Paragraph(
        "Material received by you will be treated as final acceptance. Pay this invoice by due date. "
        "24% PA Interest will be charged on overdue payments.", small))
    elements.append(Paragraph(invoice.get("notes") or f"Subject to {company['jurisdiction']} Jurisdiction", small))
    elements.append(Spacer(1, 0.2 * cm))
    elements.append(Paragraph("<b>Thank You for your business</b>", ParagraphStyle('Thanks', parent=small,
                                                                                    alignment=TA_CENTER)))

    doc.build(elements)
    buffer.seek(0)
    return buffer
