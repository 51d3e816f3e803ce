"""
SMS Service - tenant notifications via Africa's Talking.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx

from rentflow.config import Settings, settings as default_settings
from rentflow.models.payment import Payment

logger = logging.getLogger(__name__)

AT_SMS_URL = "https://api.africastalking.com/version1/messaging"
AT_SANDBOX_SMS_URL = "https://api.sandbox.africastalking.com/version1/messaging"

PAYMENT_RECEIPT_TEMPLATE = """✅ RENT PAYMENT RECEIVED
Amount: KSh {amount}
Room: {room_number}
Reference: {reference}
Date: {date}
Thank you for your payment!
- RentFlow Management"""


def format_amount(amount: Decimal) -> str:
    """12000.00 -> 12,000 and 12000.50 -> 12,000.50"""
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


class SmsService:
    """Sends receipts. When disabled, messages are only logged."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or default_settings
        self.enabled = settings.sms_enabled
        self.username = settings.sms_username
        self.api_key = settings.sms_api_key
        self.sender_id = settings.sms_sender_id
        self.url = AT_SMS_URL if settings.is_production else AT_SANDBOX_SMS_URL
        self.client = client

    def render_receipt(self, payment: Payment, room_number: Optional[str] = None) -> str:
        paid = payment.paid_date or datetime.now(timezone.utc)
        return PAYMENT_RECEIPT_TEMPLATE.format(
            amount=format_amount(Decimal(payment.amount)),
            room_number=room_number or "-",
            reference=payment.reference or "",
            date=paid.strftime("%d/%m/%Y"),
        )

    async def send_payment_receipt(
        self,
        payment: Payment,
        room_number: Optional[str] = None,
    ) -> bool:
        """Send a receipt for a completed payment. Returns True when accepted."""
        if not payment.phone_number:
            logger.warning(f"No phone number on payment {payment.reference}; receipt not sent")
            return False

        message = self.render_receipt(payment, room_number)
        message_id = await self.send_sms(payment.phone_number, message)
        if message_id:
            logger.info(f"Payment receipt sent for {payment.reference}")
        return message_id is not None

    async def send_sms(self, phone: str, message: str) -> Optional[str]:
        """
        Send one SMS.

        Returns message ID on success, None on failure.
        """
        if not self.enabled:
            logger.info(f"[SMS disabled] to={phone}: {message!r}")
            return "disabled"

        headers = {
            "apiKey": self.api_key,
            "Accept": "application/json",
        }
        data = {
            "username": self.username,
            "to": f"+{phone.lstrip('+')}",
            "message": message,
            "from": self.sender_id,
        }

        try:
            if self.client is not None:
                response = await self.client.post(self.url, data=data, headers=headers, timeout=30.0)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self.url, data=data, headers=headers)

            if response.status_code in (200, 201):
                recipients = response.json().get("SMSMessageData", {}).get("Recipients", [])
                if recipients and recipients[0].get("status") == "Success":
                    message_id = recipients[0].get("messageId")
                    logger.info(f"SMS sent: {message_id}")
                    return message_id
                logger.error(f"Africa's Talking error: {response.text}")
                return None

            logger.error(f"Africa's Talking HTTP error: {response.status_code} {response.text}")
            return None

        except httpx.TimeoutException:
            logger.error("Africa's Talking request timeout")
            return None
        except Exception as e:
            logger.error(f"SMS send error: {e}", exc_info=True)
            return None
