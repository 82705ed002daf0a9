"""Braintree payment gateway."""

import os
from functools import lru_cache
from typing import Any, Dict, Optional

import braintree
from braintree.exceptions.braintree_error import BraintreeError

from logging_config import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    """The gateway could not be reached or rejected our credentials."""


class PaymentDeclined(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _environment():
    name = os.getenv("BRAINTREE_ENVIRONMENT", "sandbox").lower()
    if name == "production":
        return braintree.Environment.Production
    return braintree.Environment.Sandbox


@lru_cache(maxsize=1)
def get_gateway() -> braintree.BraintreeGateway:
    return braintree.BraintreeGateway(
        braintree.Configuration(
            environment=_environment(),
            merchant_id=os.getenv("BRAINTREE_MERCHANT_ID"),
            public_key=os.getenv("BRAINTREE_PUBLIC_KEY"),
            private_key=os.getenv("BRAINTREE_PRIVATE_KEY"),
        )
    )


def generate_client_token() -> str:
    try:
        return get_gateway().client_token.generate()
    except BraintreeError as exc:
        logger.exception("Braintree client token generation failed")
        raise GatewayError(str(exc)) from exc


def _summarize(transaction: Any) -> Dict[str, Any]:
    # Decimal and gateway objects are not BSON encodable, keep plain values only.
    return {
        "id": getattr(transaction, "id", None),
        "status": getattr(transaction, "status", None),
        "amount": str(getattr(transaction, "amount", "")),
        "currency": getattr(transaction, "currency_iso_code", None),
        "payment_instrument_type": getattr(transaction, "payment_instrument_type", None),
    }


def charge(amount: str, nonce: str, order_id: Optional[str] = None) -> Dict[str, Any]:
    """Run a sale submitted for settlement.

    Returns a plain summary of the captured transaction, raises PaymentDeclined
    when the gateway refuses the card and GatewayError when the call itself fails.
    """
    params = {
        "amount": amount,
        "payment_method_nonce": nonce,
        "options": {"submit_for_settlement": True},
    }
    if order_id:
        params["order_id"] = order_id

    try:
        result = get_gateway().transaction.sale(params)
    except BraintreeError as exc:
        logger.exception("Braintree sale failed", extra={"amount": amount})
        raise GatewayError(str(exc)) from exc

    if not result.is_success:
        logger.info("Payment declined", extra={"amount": amount, "reason": result.message})
        raise PaymentDeclined(result.message)

    summary = {"success": True, "transaction": _summarize(result.transaction)}
    logger.info("Payment captured", extra={"amount": amount, "transaction_id": summary["transaction"]["id"]})
    return summary
