"""ToyyibPay redirect and callback adapter."""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from ..database.models import ProviderType
from ..exceptions import ConfigurationError, ProviderAPIError
from .base import (
    BillRequest,
    CreatedBill,
    PaymentEvent,
    ProviderStatus,
    RedirectGatewayConnector,
    RedirectOutcome,
    parse_amount,
    parse_form,
)

logger = logging.getLogger(__name__)

# ToyyibPay status_id -> outcome. Anything else is pending.
TOYYIBPAY_STATUSES: Dict[str, RedirectOutcome] = {
    "1": RedirectOutcome.SUCCESS,
    "2": RedirectOutcome.PENDING,
    "3": RedirectOutcome.FAILED,
}

# ToyyibPay reports local time (UTC+8)
MALAYSIA_TZ = timezone(timedelta(hours=8))

BILL_NAME_LIMIT = 30
BILL_DESCRIPTION_LIMIT = 100


def map_status(status_id: Optional[str]) -> RedirectOutcome:
    code = str(status_id or "").strip()
    if code not in TOYYIBPAY_STATUSES:
        logger.info(f"Unmapped ToyyibPay status_id {code!r} treated as pending")
    return TOYYIBPAY_STATUSES.get(code, RedirectOutcome.PENDING)


def _parse_payment_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    for fmt in ("%d-%m-%Y %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            local = datetime.strptime(value.strip(), fmt).replace(tzinfo=MALAYSIA_TZ)
        except ValueError:
            continue
        return local.astimezone(timezone.utc).replace(tzinfo=None)
    return None


class ToyyibPayConnector(RedirectGatewayConnector):
    """
    ToyyibPay sends the payer back with ``status_id`` and ``billcode`` in the
    query string and posts an unsigned form to the callback URL. Our own
    ``contribution_id`` travels in the query string of both URLs.
    """

    provider = ProviderType.TOYYIBPAY
    SANDBOX_URL = "https://dev.toyyibpay.com"
    PRODUCTION_URL = "https://toyyibpay.com"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        category_code: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.category_code = category_code

    def verify_and_parse(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> PaymentEvent:
        form = parse_form(body)
        return self.parse_callback(form, query or {})

    def parse_callback(
        self,
        form: Mapping[str, str],
        query: Mapping[str, str],
    ) -> PaymentEvent:
        """Normalize the server-to-server callback form.

        Args:
            form: Posted fields (refno, status, reason, billcode, order_id,
                amount, transaction_id, status_id, msg).
            query: Callback URL query parameters carrying ``contribution_id``.

        Raises:
            ValidationError: If the bill code, contribution id, status or
                amount is missing.
        """
        contribution_id = query.get("contribution_id") or form.get("contribution_id")
        bill_id = form.get("billcode")
        status_id = form.get("status_id") or form.get("status")
        amount = parse_amount(form.get("amount"))

        self._require({
            "contribution_id": contribution_id,
            "bill_id": bill_id,
            "status": status_id,
            "amount": str(amount) if amount is not None else None,
        })

        outcome = map_status(status_id)
        return self.build_event(
            contribution_id=contribution_id,
            bill_id=bill_id,
            outcome=outcome,
            provider_status=status_id,
            amount=amount,
            raw_payload=json.dumps(dict(form), sort_keys=True),
            transaction_id=form.get("transaction_id") or form.get("refno") or None,
            message=form.get("msg") or form.get("reason") or None,
            source="callback",
        )

    def parse_redirect(
        self,
        params: Mapping[str, str],
        expected_amount: Optional[int],
    ) -> PaymentEvent:
        """Normalize the browser redirect.

        The redirect carries no amount, so the amount of the contribution it
        was matched against is used.

        Raises:
            ValidationError: If a correlation parameter is missing.
        """
        contribution_id = params.get("contribution_id")
        bill_id = params.get("billcode")
        status_id = params.get("status_id")

        self._require({
            "contribution_id": contribution_id,
            "bill_id": bill_id,
            "status": status_id,
            "amount": str(expected_amount) if expected_amount is not None else None,
        })

        return self.build_event(
            contribution_id=contribution_id,
            bill_id=bill_id,
            outcome=map_status(status_id),
            provider_status=status_id,
            amount=expected_amount,
            raw_payload=json.dumps(dict(params), sort_keys=True),
            source="redirect",
        )

    async def fetch_bill_status(self, bill_code: str) -> ProviderStatus:
        """Ask ToyyibPay for the current state of a bill.

        A bill with any successful transaction is reported as paid;
        otherwise the latest transaction's status is used.
        """
        payload = await self._request(
            "POST",
            f"{self.base_url}/index.php/api/getBillTransactions",
            data={"billCode": bill_code},
        )
        if not isinstance(payload, list):
            raise ProviderAPIError("toyyibpay returned an unexpected transactions payload")

        transactions = [t for t in payload if isinstance(t, dict) and t.get("billpaymentStatus")]
        if not transactions:
            return ProviderStatus(
                provider=self.provider,
                bill_id=bill_code,
                outcome=RedirectOutcome.PENDING,
                provider_status="",
                raw_data={"transactions": payload},
            )

        chosen = next(
            (t for t in transactions if map_status(t["billpaymentStatus"]) == RedirectOutcome.SUCCESS),
            transactions[-1],
        )
        status_id = str(chosen["billpaymentStatus"])
        return ProviderStatus(
            provider=self.provider,
            bill_id=bill_code,
            outcome=map_status(status_id),
            provider_status=status_id,
            amount=parse_amount(chosen.get("billpaymentAmount")),
            paid_at=_parse_payment_date(chosen.get("billPaymentDate")),
            raw_data={"transactions": payload},
        )

    async def create_bill(self, request: BillRequest) -> CreatedBill:
        """Open a fixed-price FPX bill under the tenant's category.

        The response is a list holding one ``{"BillCode": ...}`` entry; the
        payer is sent to ``{base_url}/{BillCode}``.
        """
        if not self.secret_key or not self.category_code:
            raise ConfigurationError("ToyyibPay secret key and category code are not configured")

        form = {
            "userSecretKey": self.secret_key,
            "categoryCode": self.category_code,
            "billName": request.payer_name[:BILL_NAME_LIMIT],
            "billDescription": request.description[:BILL_DESCRIPTION_LIMIT],
            "billPriceSetting": 1,
            "billPayorInfo": 1,
            "billAmount": request.amount,
            "billReturnUrl": request.redirect_url,
            "billCallbackUrl": request.callback_url,
            "billExternalReferenceNo": request.contribution_id,
            "billTo": request.payer_name,
            "billEmail": request.payer_email or "",
            "billPhone": request.payer_mobile or "",
            "billSplitPayment": 0,
            "billSplitPaymentArgs": "",
            "billPaymentChannel": "0",
            "billChargeToCustomer": 1,
        }
        payload = await self._request(
            "POST", f"{self.base_url}/index.php/api/createBill", data=form
        )
        entries = payload if isinstance(payload, list) else [payload]
        bill_code = entries[0].get("BillCode") if entries and isinstance(entries[0], dict) else None
        if not bill_code:
            logger.error(f"ToyyibPay createBill returned no bill code: {payload!r}")
            raise ProviderAPIError("toyyibpay did not return a bill code")

        logger.info(f"Created ToyyibPay bill {bill_code} for contribution {request.contribution_id}")
        return CreatedBill(
            provider=self.provider,
            bill_id=bill_code,
            payment_url=f"{self.base_url}/{bill_code}",
            raw_data=payload,
        )
