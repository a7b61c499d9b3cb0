"""
Notification Service - driver/customer messages and operations e-mail
"""

import asyncio
import logging
import os
from typing import List, Optional

import resend

logger = logging.getLogger(__name__)


def _ops_emails() -> List[str]:
    raw = os.environ.get('OPS_NOTIFY_EMAILS', '')
    return [e.strip() for e in raw.split(',') if e.strip()]


async def send_whatsapp(to: Optional[str], message: str) -> bool:
    """
    WhatsApp/SMS provider stub.

    Only logs the outgoing message; SMS_API_KEY / SMS_SENDER_ID are read so the
    log shows which sender would have been used.
    """
    if not to:
        logger.info("No recipient number, skipping message")
        return False
    sender = os.environ.get('SMS_SENDER_ID', 'FUELWL')
    if not os.environ.get('SMS_API_KEY'):
        logger.info(f"[sms stub] {sender} -> {to}: {message}")
    else:
        logger.info(f"[sms] {sender} -> {to}: {message}")
    return True


async def send_email_notification(to_emails: List[str], subject: str, html_content: str):
    """Send email notification using Resend"""
    api_key = os.environ.get('RESEND_API_KEY')
    if not api_key:
        logger.warning("RESEND_API_KEY not configured, skipping email")
        return None
    if not to_emails:
        return None

    resend.api_key = api_key
    try:
        params = {
            "from": os.environ.get('SENDER_EMAIL', 'onboarding@resend.dev'),
            "to": to_emails,
            "subject": subject,
            "html": html_content
        }
        result = await asyncio.to_thread(resend.Emails.send, params)
        logger.info(f"Email sent to {to_emails}: {result}")
        return result
    except Exception as e:
        logger.error(f"Failed to send email: {str(e)}")
        return None


async def notify_delivery(customer: Optional[dict], dc_no: str, qty: float):
    mobile = (customer or {}).get("mobileNo")
    name = (customer or {}).get("custName", "Customer")
    await send_whatsapp(mobile, f"Dear {name}, {qty:g} L delivered against DC {dc_no}. Thank you.")


async def notify_loading_code(driver: Optional[dict], trip_no: str, code: str):
    mobile = (driver or {}).get("mobileNo")
    await send_whatsapp(mobile, f"Loading code for trip {trip_no}: {code}. Valid for 15 minutes.")


async def notify_trip_closed(trip: dict, invoices: List[dict]):
    """Mail operations a summary of a closed trip"""
    emails = _ops_emails()
    if not emails:
        return None

    rows = "".join(
        f"<tr><td style=\"padding: 6px; border-bottom: 1px solid #ddd;\">{inv.get('invoiceNo')}</td>"
        f"<td style=\"padding: 6px; border-bottom: 1px solid #ddd;\">{(inv.get('customerSnap') or {}).get('custName', '')}</td>"
        f"<td style=\"padding: 6px; border-bottom: 1px solid #ddd; text-align: right;\">{inv.get('totalAmount', 0):.2f}</td></tr>"
        for inv in invoices
    )
    vehicle_no = (trip.get("snapshot") or {}).get("vehicleNo", "")
    html_content = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="background: #254c91; color: white; padding: 16px; text-align: center;">
            <h2 style="margin: 0;">Trip {trip.get('tripNo')} closed</h2>
        </div>
        <div style="padding: 16px; background: #f8f9fa;">
            <p>Vehicle {vehicle_no}, end km {trip.get('endKm')}, totalizer {trip.get('totalizerEnd')}.</p>
            <table style="width: 100%; border-collapse: collapse;">
                <tr><th align="left">Invoice</th><th align="left">Customer</th><th align="right">Amount</th></tr>
                {rows}
            </table>
        </div>
    </div>
    """
    return await send_email_notification(emails, f"Trip {trip.get('tripNo')} closed", html_content)
