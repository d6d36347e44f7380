"""Billplz redirect and callback adapter."""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

from ..database.models import ProviderType
from ..exceptions import AuthenticationError, ConfigurationError, ProviderAPIError
from .base import (
    BillRequest,
    Confidence,
    CreatedBill,
    PaymentEvent,
    ProviderStatus,
    RedirectGatewayConnector,
    RedirectOutcome,
    parse_form,
)

logger = logging.getLogger(__name__)

# Billplz bill state -> outcome, used when the bill is not flagged paid
BILLPLZ_STATES: Dict[str, RedirectOutcome] = {
    "paid": RedirectOutcome.SUCCESS,
    "due": RedirectOutcome.PENDING,
    "overdue": RedirectOutcome.FAILED,
    "deleted": RedirectOutcome.FAILED,
}

SIGNATURE_FIELD = "x_signature"
REDIRECT_PREFIX = "billplz"
BILL_DESCRIPTION_LIMIT = 200


def _truthy(value: Any) -> bool:
    return str(value).strip().lower() == "true"


def map_status(paid: Any, state: Optional[str] = None) -> RedirectOutcome:
    if _truthy(paid):
        return RedirectOutcome.SUCCESS
    return BILLPLZ_STATES.get((state or "").strip().lower(), RedirectOutcome.PENDING)


def _parse_int(value: Any) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_paid_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    try:
        parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _encode(value: Any) -> str:
    # Matches JavaScript's encodeURIComponent
    return quote(str(value), safe="-_.!~*'()")


def signature_sources(data: Mapping[str, Any]) -> Dict[str, str]:
    """Source strings Billplz may have signed for ``data``.

    Callbacks sign ``key + value`` pairs sorted by key and joined with
    ``|``. Redirects sign the same construction over ``billplz[key]``.
    Both raw and URL-encoded values are accepted.
    """
    fields = {k: v for k, v in data.items() if k != SIGNATURE_FIELD}
    plain = sorted(fields.items())
    bracketed = sorted((f"{REDIRECT_PREFIX}[{k}]", v) for k, v in fields.items())
    return {
        "plain": "|".join(f"{k}{v}" for k, v in plain),
        "plain_encoded": "|".join(f"{k}{_encode(v)}" for k, v in plain),
        "bracketed": "|".join(f"{k}{v}" for k, v in bracketed),
        "bracketed_encoded": "|".join(f"{k}{_encode(v)}" for k, v in bracketed),
    }


def compute_signature(x_signature_key: str, source: str) -> str:
    return hmac.new(
        x_signature_key.encode("utf-8"), source.encode("utf-8"), hashlib.sha256
    ).hexdigest()


class BillplzConnector(RedirectGatewayConnector):
    """
    Billplz posts a form to the callback URL and redirects the payer with
    ``billplz[...]`` query parameters. Both may carry an HMAC-SHA256
    X-Signature computed with the collection's signature key; when the
    tenant has a key configured the callback signature is mandatory.
    """

    provider = ProviderType.BILLPLZ
    SANDBOX_URL = "https://www.billplz-sandbox.com/api/v3"
    PRODUCTION_URL = "https://www.billplz.com/api/v3"

    def __init__(
        self,
        api_key: Optional[str] = None,
        x_signature_key: Optional[str] = None,
        collection_id: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.x_signature_key = x_signature_key
        self.collection_id = collection_id

    def verify_signature(self, data: Mapping[str, Any], signature: Optional[str]) -> bool:
        """Check an X-Signature against every accepted source construction."""
        if not self.x_signature_key or not signature:
            return False
        received = signature.strip().lower()
        for source in signature_sources(data).values():
            expected = compute_signature(self.x_signature_key, source)
            if hmac.compare_digest(expected, received):
                return True
        logger.warning(f"Billplz X-Signature mismatch (provided {received[:8]}...)")
        return False

    def verify_and_parse(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> PaymentEvent:
        form = parse_form(body)
        signature = form.get(SIGNATURE_FIELD) or headers.get("x-signature")
        return self.parse_callback(form, query or {}, signature)

    def parse_callback(
        self,
        form: Mapping[str, str],
        query: Mapping[str, str],
        signature: Optional[str] = None,
    ) -> PaymentEvent:
        """Normalize the server-to-server callback form.

        Args:
            form: Posted bill fields (id, paid, state, amount, paid_amount,
                paid_at, reference_1, x_signature, ...).
            query: Callback URL query parameters, may carry ``contribution_id``.
            signature: X-Signature from the form or header.

        Raises:
            AuthenticationError: If a signature key is configured and the
                signature is missing or wrong.
            ValidationError: If a correlation field is missing.
        """
        contribution_id = query.get("contribution_id") or form.get("reference_1")
        bill_id = form.get("id")
        paid = form.get("paid")
        state = form.get("state")
        outcome = map_status(paid, state)
        amount = _parse_int(form.get("paid_amount")) if _truthy(paid) else None
        if amount is None:
            amount = _parse_int(form.get("amount"))

        self._require({
            "contribution_id": contribution_id,
            "bill_id": bill_id,
            "status": paid or state,
            "amount": str(amount) if amount is not None else None,
        })

        confidence = self._check_signature(form, signature)
        return self.build_event(
            contribution_id=contribution_id,
            bill_id=bill_id,
            outcome=outcome,
            provider_status=state or ("paid" if _truthy(paid) else "unpaid"),
            amount=amount,
            raw_payload=json.dumps(
                {k: v for k, v in form.items() if k != SIGNATURE_FIELD}, sort_keys=True
            ),
            confidence=confidence,
            transaction_id=form.get("transaction_id") or None,
            paid_at=_parse_paid_at(form.get("paid_at")),
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
            AuthenticationError: If a signature is present but wrong.
            ValidationError: If a correlation parameter is missing.
        """
        prefix = REDIRECT_PREFIX
        bill_id = params.get(f"{prefix}[id]")
        paid = params.get(f"{prefix}[paid]")
        paid_at = params.get(f"{prefix}[paid_at]")
        signature = params.get(f"{prefix}[{SIGNATURE_FIELD}]")
        contribution_id = params.get("contribution_id")

        self._require({
            "contribution_id": contribution_id,
            "bill_id": bill_id,
            "status": paid,
            "amount": str(expected_amount) if expected_amount is not None else None,
        })

        signed = {"id": bill_id, "paid": paid, "paid_at": paid_at or ""}
        confidence = Confidence.DEGRADED
        if signature:
            confidence = self._check_signature(signed, signature)

        return self.build_event(
            contribution_id=contribution_id,
            bill_id=bill_id,
            outcome=map_status(paid),
            provider_status="paid" if _truthy(paid) else "unpaid",
            amount=expected_amount,
            raw_payload=json.dumps(signed, sort_keys=True),
            confidence=confidence,
            paid_at=_parse_paid_at(paid_at),
            source="redirect",
        )

    def _check_signature(self, data: Mapping[str, Any], signature: Optional[str]) -> Confidence:
        if not self.x_signature_key:
            return Confidence.DEGRADED
        if not signature:
            raise AuthenticationError("Missing Billplz X-Signature")
        if not self.verify_signature(data, signature):
            raise AuthenticationError("Invalid Billplz X-Signature")
        return Confidence.VERIFIED

    async def fetch_bill_status(self, bill_id: str) -> ProviderStatus:
        """Fetch a bill from the Billplz API and map its state."""
        if not self.api_key:
            raise ConfigurationError("Billplz API key is not configured")

        bill = await self._request(
            "GET",
            f"{self.base_url}/bills/{bill_id}",
            auth=(self.api_key, ""),
        )
        if not isinstance(bill, dict):
            raise ProviderAPIError("billplz returned an unexpected bill payload")

        paid = bill.get("paid")
        outcome = map_status(paid, bill.get("state"))
        amount = _parse_int(bill.get("paid_amount")) if _truthy(paid) else _parse_int(bill.get("amount"))
        return ProviderStatus(
            provider=self.provider,
            bill_id=bill_id,
            outcome=outcome,
            provider_status=str(bill.get("state") or ""),
            amount=amount,
            paid_at=_parse_paid_at(bill.get("paid_at")),
            raw_data=bill,
        )

    async def create_bill(self, request: BillRequest) -> CreatedBill:
        """Open a bill in the tenant's collection.

        The contribution id is sent as ``reference_1``, which Billplz echoes
        back on the callback.
        """
        if not self.api_key or not self.collection_id:
            raise ConfigurationError("Billplz API key and collection ID are not configured")

        form = {
            "collection_id": self.collection_id,
            "name": request.payer_name,
            "email": request.payer_email or "",
            "mobile": request.payer_mobile or "",
            "amount": request.amount,
            "description": request.description[:BILL_DESCRIPTION_LIMIT],
            "callback_url": request.callback_url,
            "redirect_url": request.redirect_url,
            "reference_1_label": "Contribution ID",
            "reference_1": request.contribution_id,
        }
        bill = await self._request(
            "POST", f"{self.base_url}/bills", data=form, auth=(self.api_key, "")
        )
        if not isinstance(bill, dict) or not bill.get("id") or not bill.get("url"):
            logger.error(f"Billplz create bill returned an unexpected payload: {bill!r}")
            raise ProviderAPIError("billplz did not return a bill")

        logger.info(f"Created Billplz bill {bill['id']} for contribution {request.contribution_id}")
        return CreatedBill(
            provider=self.provider,
            bill_id=str(bill["id"]),
            payment_url=bill["url"],
            raw_data=bill,
        )
