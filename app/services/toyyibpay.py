"""toyyibPay payment gateway client.

Only the calls reconciliation needs: create a bill, read its payment status.
Transport failures and malformed answers raise GatewayUnavailable; nothing
here touches the database.
"""

import enum
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import httpx

from app.config import settings
from app.errors import GatewayUnavailable

logger = logging.getLogger(__name__)

BILL_NAME_MAX = 30
BILL_DESCRIPTION_MAX = 200


class BillState(enum.Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


# toyyibPay status codes (billpaymentStatus / callback status)
STATUS_CODES: dict[str, BillState] = {
    "1": BillState.SUCCESS,
    "2": BillState.PENDING,
    "3": BillState.FAILED,
}


@dataclass
class BillStatus:
    """Latest payment state the gateway reports for a bill."""

    bill_code: str
    state: BillState
    amount: Decimal | None = None
    transaction_id: str | None = None


def parse_status_code(code: object) -> BillState:
    """Map a toyyibPay status code to a BillState. Unknown codes count as pending."""
    return STATUS_CODES.get(str(code).strip(), BillState.PENDING)


def truncate(text: str | None, max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_amount(value: object, bill_code: str) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        amount = None
    if amount is None or not amount.is_finite():
        logger.error("toyyibPay bill %s: malformed amount %r", bill_code, value)
        raise GatewayUnavailable("Invalid amount in payment gateway response")
    return amount


class ToyyibPayGateway:
    """HTTP client for the toyyibPay form-encoded API."""

    def __init__(
        self,
        base_url: str | None = None,
        user_secret_key: str | None = None,
        category_code: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.toyyibpay_base_url).rstrip("/") + "/"
        self.user_secret_key = user_secret_key if user_secret_key is not None else settings.toyyibpay_user_secret_key
        self.category_code = category_code if category_code is not None else settings.toyyibpay_category_code
        self._transport = transport

    def payment_url(self, bill_code: str) -> str:
        return settings.toyyibpay_payment_url.rstrip("/") + "/" + bill_code

    async def _post(self, endpoint: str, data: dict) -> object:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.gateway_timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                resp = await client.post(endpoint, data=data)
            except httpx.TimeoutException:
                logger.error("toyyibPay %s timed out", endpoint)
                raise GatewayUnavailable(f"Payment gateway timed out ({endpoint})")
            except httpx.RequestError as e:
                logger.error("toyyibPay %s request failed: %s", endpoint, e)
                raise GatewayUnavailable(f"Failed to reach payment gateway ({endpoint})")

        if resp.status_code != 200:
            logger.error("toyyibPay %s returned %d: %s", endpoint, resp.status_code, resp.text[:500])
            raise GatewayUnavailable(f"Payment gateway error (status {resp.status_code})")
        try:
            return resp.json()
        except ValueError:
            logger.error("toyyibPay %s returned non-JSON body: %s", endpoint, resp.text[:500])
            raise GatewayUnavailable("Invalid response from payment gateway")

    async def create_bill(
        self,
        amount: Decimal,
        reference: str,
        name: str,
        description: str,
        return_url: str | None = None,
        callback_url: str | None = None,
    ) -> str:
        """Create a fixed-amount bill and return its bill code."""
        data = {
            "userSecretKey": self.user_secret_key,
            "categoryCode": self.category_code,
            "billName": truncate(name, BILL_NAME_MAX),
            "billDescription": truncate(description, BILL_DESCRIPTION_MAX),
            "billPriceSetting": 1,
            "billPayorInfo": 1,
            "billAmount": to_cents(amount),
            "billReturnUrl": return_url or settings.payment_return_url,
            "billCallbackUrl": callback_url or settings.payment_callback_url,
            "billExternalReferenceNo": reference,
            "billSplitPayment": 0,
            "billPaymentChannel": "0",
            "billChargeToCustomer": 1,
            "billExpiryDays": settings.bill_expiry_days,
        }
        body = await self._post("createBill", data)
        if not isinstance(body, list) or not body or not isinstance(body[0], dict):
            logger.error("toyyibPay createBill: unexpected response %r", body)
            raise GatewayUnavailable("Invalid response format from payment gateway")

        bill_code = body[0].get("BillCode")
        if not bill_code:
            msg = body[0].get("msg", "Failed to create bill")
            logger.error("toyyibPay createBill rejected: %s", msg)
            raise GatewayUnavailable(f"Payment gateway rejected the bill: {msg}")

        logger.info("toyyibPay bill %s created for reference %s (RM%s)", bill_code, reference, amount)
        return bill_code

    async def get_bill_status(self, bill_code: str) -> BillStatus:
        """Read the bill's payment attempts; any successful one wins."""
        body = await self._post(
            "getBillTransactions",
            {"userSecretKey": self.user_secret_key, "billCode": bill_code},
        )
        if not isinstance(body, list):
            # toyyibPay answers with a bare message when a bill has no attempts yet
            return BillStatus(bill_code=bill_code, state=BillState.PENDING)

        attempts = [item for item in body if isinstance(item, dict)]
        for wanted in (BillState.SUCCESS, BillState.PENDING, BillState.FAILED):
            for item in attempts:
                if parse_status_code(item.get("billpaymentStatus")) is wanted:
                    return BillStatus(
                        bill_code=bill_code,
                        state=wanted,
                        amount=_parse_amount(item.get("billpaymentAmount"), bill_code),
                        transaction_id=item.get("billpaymentInvoiceNo"),
                    )
        return BillStatus(bill_code=bill_code, state=BillState.PENDING)


def get_gateway() -> ToyyibPayGateway:
    """FastAPI dependency; overridden in tests."""
    return ToyyibPayGateway()
