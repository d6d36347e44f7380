"""Browser redirects from payment gateways back to the result page."""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError

from .connectors import ContributionData, RedirectOutcome, format_amount
from .database import ProviderType
from .exceptions import AuthenticationError, CryptoError, PaymentsCoreError, ValidationError
from .services import PaymentsService, build_gateway_connector

logger = logging.getLogger(__name__)

# Query parameter carrying the provider bill id on each gateway's redirect
REDIRECT_BILL_PARAMS: Dict[ProviderType, str] = {
    ProviderType.TOYYIBPAY: "billcode",
    ProviderType.BILLPLZ: "billplz[id]",
}

STATUS_ERROR = "error"

MESSAGES = {
    RedirectOutcome.SUCCESS.value: "Payment successful",
    RedirectOutcome.PENDING.value: "Payment is being processed",
    RedirectOutcome.FAILED.value: "Payment failed",
    STATUS_ERROR: "We could not verify this payment",
}


def mask_name(name: Optional[str]) -> str:
    """Keep the first letter of each word, e.g. "Ahmad Ali" -> "A**** A**"."""
    if not name:
        return ""
    return " ".join(word[0] + "*" * (len(word) - 1) for word in name.split())


@dataclass
class RedirectResult:
    """Outcome echoed to the result page. Holds nothing sensitive."""
    status: str
    message: str
    contribution_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    payer_name: Optional[str] = None

    @classmethod
    def error(cls) -> "RedirectResult":
        return cls(status=STATUS_ERROR, message=MESSAGES[STATUS_ERROR])

    def query_params(self) -> Dict[str, str]:
        params = {"status": self.status, "message": self.message}
        if self.contribution_id:
            params["contributionId"] = self.contribution_id
        if self.payment_id:
            params["paymentId"] = self.payment_id
        if self.amount is not None:
            params["amount"] = format_amount(self.amount)
        if self.payer_name:
            params["payerName"] = mask_name(self.payer_name)
        return params


class RedirectResolver:
    """
    Turns a gateway redirect into a result-page URL.

    The contribution is looked up strictly by (contribution id, bill id).
    A match is pushed through the same ledger path as the server callback,
    so whichever of the two arrives first changes state and the other is a
    no-op. Anything that cannot be matched fails closed to ``status=error``;
    internal detail is only logged.
    """

    def __init__(self, service: PaymentsService, result_url: str):
        """
        Args:
            service: Service used for lookups and ingestion.
            result_url: Absolute URL of the user-facing result page.
        """
        self.service = service
        self.result_url = result_url

    async def resolve(self, provider: ProviderType, params: Mapping[str, str]) -> RedirectResult:
        bill_param = REDIRECT_BILL_PARAMS.get(provider)
        if bill_param is None:
            logger.warning(f"Redirect received for {provider.value}, which has no redirect integration")
            return RedirectResult.error()

        contribution_id = params.get("contribution_id")
        bill_id = params.get(bill_param)
        if not contribution_id or not bill_id:
            logger.warning(
                f"{provider.value} redirect missing correlation parameters "
                f"(contribution_id={contribution_id!r}, {bill_param}={bill_id!r})"
            )
            return RedirectResult.error()

        contribution = await self.service.find_contribution(contribution_id, bill_id)
        if contribution is None:
            logger.warning(
                f"{provider.value} redirect for contribution {contribution_id} "
                f"does not match bill {bill_id}"
            )
            return RedirectResult.error()
        if contribution.provider and contribution.provider != provider.value:
            logger.warning(
                f"Contribution {contribution_id} is paid through {contribution.provider}, "
                f"not {provider.value}"
            )
            return RedirectResult.error()

        result = RedirectResult(
            status=RedirectOutcome.PENDING.value,
            message=MESSAGES[RedirectOutcome.PENDING.value],
            contribution_id=contribution.id,
            payment_id=bill_id,
            amount=contribution.amount,
            payer_name=contribution.contributor_name,
        )

        try:
            credentials = await self.service.find_credentials(contribution.tenant_id, provider.value)
        except CryptoError as e:
            logger.error(f"{provider.value} redirect for {contribution_id} not recorded: {e}")
            return result
        connector = build_gateway_connector(provider, credentials, self.service.http_client)
        try:
            event = connector.parse_redirect(params, contribution.amount)
        except AuthenticationError as e:
            logger.warning(f"{provider.value} redirect for {contribution_id} rejected: {e}")
            return result
        except ValidationError as e:
            logger.warning(f"{provider.value} redirect for {contribution_id} is malformed: {e}")
            return RedirectResult.error()

        try:
            ingest = await self.service.ingest(event)
        except (PaymentsCoreError, SQLAlchemyError) as e:
            # The server callback or a provider status lookup settles it later
            logger.error(f"Failed to record {provider.value} redirect {event.event_id}: {e}")
            return result

        data = event.data
        if isinstance(data, ContributionData):
            result.status = data.outcome.value
            result.message = MESSAGES[data.outcome.value]
        logger.info(
            f"{provider.value} redirect for contribution {contribution_id}: "
            f"{result.status} (ledger {ingest.status}{', duplicate' if ingest.duplicate else ''})"
        )
        return result

    def build_url(self, result: RedirectResult) -> str:
        return f"{self.result_url}?{urlencode(result.query_params())}"
