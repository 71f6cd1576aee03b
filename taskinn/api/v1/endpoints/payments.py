import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from taskinn.api.deps import get_current_user, get_ledger, get_paypal_client, get_coinpayments_client
from taskinn.core.config import settings
from taskinn.core.currencies import COINPAYMENTS_CODES, Currency, Rail
from taskinn.core.exceptions import (
    DuplicateSettlement,
    SettlementNotFound,
    UpstreamRailError,
    ValidationError,
)
from taskinn.models.user import User
from taskinn.schemas.base import BaseResponse
from taskinn.schemas.ledger import DepositSettlement
from taskinn.schemas.payment import (
    PayPalDepositRequest, PayPalOrderResponse, PayPalCaptureRequest,
    CryptoDepositRequest, CryptoDepositResponse
)
from taskinn.services.coinpayments import CoinPaymentsClient, ipn_is_complete
from taskinn.services.fee_service import FeeService
from taskinn.services.ledger import LedgerService
from taskinn.services.paypal import PayPalClient

logger = logging.getLogger(__name__)

router = APIRouter()


def _owned_by(settlement: DepositSettlement, user: User) -> DepositSettlement:
    # Another user's order id must look exactly like an unknown one
    if settlement.user_id != user.id:
        raise SettlementNotFound("No deposit found for this order")
    return settlement


@router.post("/paypal/deposit", response_model=BaseResponse[PayPalOrderResponse])
async def create_paypal_deposit(
    deposit: PayPalDepositRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger),
    paypal: PayPalClient = Depends(get_paypal_client),
):
    """Create a PayPal order the user approves before capture"""

    _, amount = ledger.validate_amount(Currency.USD, deposit.amount)
    app_url = settings.APP_URL.rstrip("/")
    order = await paypal.create_order(
        amount,
        current_user.id,
        return_url=f"{app_url}/dashboard/employer/paypal-return",
        cancel_url=f"{app_url}/dashboard/employer/payments?cancelled=true",
    )
    logger.info(f"User {current_user.id} started PayPal deposit {order['id']} for {amount} USD")

    return BaseResponse.success_response(
        data=PayPalOrderResponse(order_id=order["id"], approval_url=order["approval_url"], amount=amount),
        message="PayPal order created successfully",
    )


@router.post("/paypal/capture", response_model=BaseResponse[DepositSettlement])
async def capture_paypal_deposit(
    capture: PayPalCaptureRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger),
    paypal: PayPalClient = Depends(get_paypal_client),
):
    """Capture an approved PayPal order and credit the wallet"""

    # A reload of the return page must not hit PayPal a second time
    prior = await ledger.find_deposit(capture.order_id)
    if prior is not None:
        return BaseResponse.success_response(
            data=_owned_by(prior, current_user), message="Deposit already processed"
        )

    # Only the user who created the order may capture it
    order = await paypal.get_order(capture.order_id)
    if order["custom_id"] != current_user.id:
        logger.warning(f"User {current_user.id} tried to capture PayPal order {capture.order_id} of another user")
        raise SettlementNotFound("No deposit found for this order")

    result = await paypal.capture_order(capture.order_id)
    if result["status"] != "COMPLETED":
        raise UpstreamRailError(
            Rail.PAYPAL.value,
            f"PayPal payment not completed: {result['status']}",
            details={"order_id": capture.order_id},
        )

    try:
        settlement = await ledger.settle_deposit(
            current_user.id,
            Currency.USD,
            result["amount"],
            capture.order_id,
            Rail.PAYPAL,
            transaction_hash=result.get("capture_id"),
        )
    except DuplicateSettlement as e:
        return BaseResponse.success_response(
            data=_owned_by(e.result, current_user), message="Deposit already processed"
        )

    return BaseResponse.success_response(data=settlement, message="Deposit completed successfully")


@router.post("/coinpayments/deposit", response_model=BaseResponse[CryptoDepositResponse])
async def create_crypto_deposit(
    deposit: CryptoDepositRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger),
    coinpayments: CoinPaymentsClient = Depends(get_coinpayments_client),
):
    """Create a USDT (TRC-20) receiving address priced in USD"""

    _, amount = ledger.validate_amount(Currency.USD, deposit.amount)
    result = await coinpayments.create_transaction(
        amount,
        current_user.id,
        COINPAYMENTS_CODES[Currency.USDT_TRC20],
        buyer_email=current_user.email,
    )

    try:
        crypto_amount = Decimal(str(result.get("amount", "0")))
    except InvalidOperation:
        raise UpstreamRailError(Rail.COINPAYMENTS.value, "CoinPayments returned an unreadable amount")

    return BaseResponse.success_response(
        data=CryptoDepositResponse(
            txn_id=result.get("txn_id", ""),
            address=result.get("address", ""),
            amount=crypto_amount,
            qrcode_url=result.get("qrcode_url"),
            status_url=result.get("status_url"),
            checkout_url=result.get("checkout_url") or result.get("status_url") or "",
            timeout=result.get("timeout"),
        ),
        message="Crypto payment created successfully",
    )


@router.post("/coinpayments/ipn", response_class=PlainTextResponse)
async def coinpayments_ipn(
    request: Request,
    ledger: LedgerService = Depends(get_ledger),
    coinpayments: CoinPaymentsClient = Depends(get_coinpayments_client),
):
    """CoinPayments instant payment notification"""

    body = await request.body()
    fields = coinpayments.verify_ipn(body, request.headers.get("HMAC"))

    if fields.get("ipn_type") != "api":
        logger.info(f"Ignoring CoinPayments IPN of type {fields.get('ipn_type')}")
        return PlainTextResponse("IPN OK")

    txn_id = fields.get("txn_id")
    try:
        ipn_status = int(fields.get("status", ""))
    except ValueError:
        raise ValidationError("IPN status is not a number")

    if ipn_status < 0:
        logger.warning(f"CoinPayments deposit {txn_id} failed: {fields.get('status_text')}")
        return PlainTextResponse("IPN OK")

    if not ipn_is_complete(ipn_status):
        logger.info(f"CoinPayments deposit {txn_id} pending: {fields.get('status_text')}")
        return PlainTextResponse("IPN OK")

    user_id = coinpayments.user_from_custom(fields.get("custom"))
    if not txn_id or user_id is None:
        raise ValidationError("IPN does not identify a deposit")

    expected = COINPAYMENTS_CODES[Currency.USDT_TRC20]
    currency1 = fields.get("currency1", "").upper()
    currency2 = fields.get("currency2", "").upper()
    if currency1 != "USD" or currency2 != expected:
        logger.warning(
            f"Ignoring CoinPayments deposit {txn_id}: paid {currency2 or 'unknown'} "
            f"for a {currency1 or 'unknown'} price, expected {expected} for USD"
        )
        return PlainTextResponse("IPN OK")

    try:
        amount = FeeService.quantize(Decimal(fields.get("amount2", "")), Currency.USDT_TRC20)
    except InvalidOperation:
        raise ValidationError("IPN amount is not a number")

    try:
        await ledger.settle_deposit(
            user_id,
            Currency.USDT_TRC20,
            amount,
            txn_id,
            Rail.COINPAYMENTS,
            transaction_hash=txn_id,
        )
    except DuplicateSettlement:
        logger.info(f"CoinPayments deposit {txn_id} already credited")

    return PlainTextResponse("IPN OK")
