"""
Card processor gateway backed by Stripe.

Charges are confirmed off-session against a saved payment method of the
user's Stripe customer. Each platform user maps to exactly one customer; the
mapping is persisted so every worker reuses it.
"""

import uuid
from enum import Enum
from typing import List, Optional

import stripe
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from service_config import STRIPE_SECRET_KEY
from service_errors import NotFound
from service_logging import log_exception, log_json


class PaymentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentRecordStatus(str, Enum):
    PROCESSING = 'processing'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELED = 'canceled'
    REFUNDED = 'refunded'


class GatewayCharge(PaymentModel):
    intent_id: str
    status: PaymentRecordStatus
    receipt_url: Optional[str] = None


class SavedPaymentMethod(PaymentModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


class GatewayError(Exception):
    pass


# PaymentIntent.status -> payment record status. Off-session charges cannot
# complete an authentication step, so requires_action is a failure.
INTENT_STATUSES = {
    'succeeded': PaymentRecordStatus.SUCCEEDED,
    'processing': PaymentRecordStatus.PROCESSING,
    'requires_capture': PaymentRecordStatus.PROCESSING,
    'requires_action': PaymentRecordStatus.FAILED,
    'requires_payment_method': PaymentRecordStatus.FAILED,
    'requires_confirmation': PaymentRecordStatus.FAILED,
    'canceled': PaymentRecordStatus.CANCELED,
}


def to_saved_method(payment_method, default_id: Optional[str] = None) -> SavedPaymentMethod:
    card = payment_method.get('card') or {}
    return SavedPaymentMethod(
        id=payment_method['id'],
        brand=card.get('brand'),
        last4=card.get('last4'),
        exp_month=card.get('exp_month'),
        exp_year=card.get('exp_year'),
        is_default=payment_method['id'] == default_id,
    )


def object_id(value) -> Optional[str]:
    """Stripe returns related objects either as an id or, when expanded, as the object."""
    if value is None or isinstance(value, str):
        return value
    return value.get('id')


class StripeGateway:

    def __init__(self, customers, api_key: str = STRIPE_SECRET_KEY, stripe_client=stripe):
        # customers: any store with get_customer_id(user_id) / save_customer_id(user_id, customer_id)
        self.customers = customers
        self.api_key = api_key
        self._stripe = stripe_client

    def customer_for(self, user_id: str, email: Optional[str] = None) -> str:
        customer_id = self.customers.get_customer_id(user_id)
        if customer_id:
            return customer_id

        customer = self._call("create customer", self._stripe.Customer.create,
                              email=email, metadata={'userId': user_id})
        customer_id = self.customers.save_customer_id(user_id, customer['id'])
        log_json("INFO", "Gateway customer created", user_id=user_id, customer_id=customer_id)
        return customer_id

    def create_intent(self, amount: int, currency: str, customer_id: str, payment_method_id: str,
                      metadata: dict = None, trace_id: str = None) -> GatewayCharge:
        log_json("INFO", "Calling payment gateway",
                 trace_id=trace_id, amount=amount, currency=currency,
                 customer_id=customer_id, metadata=metadata or {})

        try:
            intent = self._stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                confirm=True,
                off_session=True,
                metadata=metadata or {},
                expand=['latest_charge'],
            )
        except stripe.CardError as e:
            # A declined off-session charge surfaces as an error carrying the intent
            intent = getattr(e.error, 'payment_intent', None) if e.error else None
            intent_id = object_id(intent) or f"declined_{uuid.uuid4().hex}"
            log_json("WARN", "Payment gateway declined the charge",
                     trace_id=trace_id, intent_id=intent_id, decline_code=e.code)
            return GatewayCharge(intent_id=intent_id, status=PaymentRecordStatus.FAILED)
        except stripe.StripeError as e:
            log_exception("ERROR", "Payment gateway call failed", exc=e, trace_id=trace_id)
            raise GatewayError(str(e)) from e

        status = INTENT_STATUSES.get(intent['status'], PaymentRecordStatus.FAILED)
        charge = intent.get('latest_charge')
        receipt_url = charge.get('receipt_url') if charge and not isinstance(charge, str) else None

        log_json("INFO", "Payment gateway responded",
                 trace_id=trace_id, intent_id=intent['id'],
                 intent_status=intent['status'], payment_status=status.value)
        return GatewayCharge(intent_id=intent['id'], status=status, receipt_url=receipt_url)

    def refund(self, intent_id: str):
        self._call("refund", self._stripe.Refund.create, payment_intent=intent_id)

    def cancel(self, intent_id: str):
        self._call("cancel intent", self._stripe.PaymentIntent.cancel, intent_id)

    # =========================================================================
    # SAVED PAYMENT METHODS
    # =========================================================================

    def create_setup_intent(self, customer_id: str) -> str:
        intent = self._call("create setup intent", self._stripe.SetupIntent.create,
                            customer=customer_id, usage='off_session')
        return intent['client_secret']

    def list_payment_methods(self, customer_id: str) -> List[SavedPaymentMethod]:
        methods = self._call("list payment methods", self._stripe.PaymentMethod.list,
                             customer=customer_id, type='card')
        customer = self._call("retrieve customer", self._stripe.Customer.retrieve, customer_id)
        invoice_settings = customer.get('invoice_settings') or {}
        default_id = object_id(invoice_settings.get('default_payment_method')) or customer.get('default_source')
        return [to_saved_method(pm, default_id) for pm in methods['data']]

    def attach_payment_method(self, customer_id: str, payment_method_id: str,
                              billing_details: dict = None) -> SavedPaymentMethod:
        payment_method = self._call("attach payment method", self._stripe.PaymentMethod.attach,
                                    payment_method_id, customer=customer_id)
        if billing_details:
            payment_method = self._call("update payment method", self._stripe.PaymentMethod.modify,
                                        payment_method_id, billing_details=billing_details)
        return to_saved_method(payment_method)

    def detach_payment_method(self, customer_id: str, payment_method_id: str):
        self._require_owned(customer_id, payment_method_id)
        self._call("detach payment method", self._stripe.PaymentMethod.detach, payment_method_id)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str):
        self._require_owned(customer_id, payment_method_id)
        self._call("set default payment method", self._stripe.Customer.modify,
                   customer_id, invoice_settings={'default_payment_method': payment_method_id})

    def _require_owned(self, customer_id: str, payment_method_id: str):
        try:
            payment_method = self._stripe.PaymentMethod.retrieve(payment_method_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            raise NotFound('Payment method not found')
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        if object_id(payment_method.get('customer')) != customer_id:
            raise NotFound('Payment method not found')

    def _call(self, action: str, method, *args, **params):
        try:
            return method(*args, api_key=self.api_key, **params)
        except stripe.StripeError as e:
            log_exception("ERROR", f"Payment gateway failed to {action}", exc=e)
            raise GatewayError(str(e)) from e
