"""
Agent 1: Checkout Initiator
===========================
Turns a storefront cart into a Stripe Checkout Session.

- One Stripe customer per panel user, cached by user id and reused
- Effective unit price: sale price when present and lower, else list price
- Invalid computed prices fall back to a fixed minimal price instead of failing
- Prices above the largest amount Stripe accepts reject the cart before any remote call
- One remote session-creation call; nothing is persisted if it fails

pip install pydantic stripe structlog
"""

import math
import uuid
from typing import List, Optional

import structlog

from pipeline.exceptions import EmptyCartError, InvalidCartItemError, MissingIdentityError
from pipeline.settings import Settings
from schemas.payment_definitions import (
    AuthenticatedUser,
    CartItem,
    CheckoutLineItem,
    CheckoutResult,
    is_valid_price,
)
from services.stripe_provider import IPaymentProvider
from storage.payment_cache import PaymentCache

SUCCESS_PATH = "/store/checkout/success?session_id={CHECKOUT_SESSION_ID}"
DEFAULT_CANCEL_PATH = "/store/cart?cancelled=true"

# Largest amount Stripe accepts, in minor units
MAX_UNIT_AMOUNT = 99_999_999


# =============================================================================
# PRICE CALCULATOR
# =============================================================================

class PriceCalculator:
    """Per-line price resolution in store currency and Stripe minor units."""

    def __init__(self, fallback_unit_price: float = 0.99):
        self.fallback_unit_price = fallback_unit_price
        self._logger = structlog.get_logger().bind(component="price_calculator")

    def effective_unit_price(self, item: CartItem) -> float:
        """
        Sale price if present and lower than list price, else list price.
        A NaN sale price counts as present (it is never >= the list price) so
        it ends up on the fallback path rather than silently using list price.
        """
        price = item.price
        sale_price = item.sale_price
        if sale_price is not None and not sale_price >= price:
            price = sale_price

        if not is_valid_price(price):
            self._logger.warning("price_fallback_applied",
                                 item_id=item.id,
                                 computed_price=str(price),
                                 fallback=self.fallback_unit_price)
            return self.fallback_unit_price
        return price

    @staticmethod
    def to_unit_amount(price: float) -> int:
        """Minor units, at least 1. Raises ValueError above MAX_UNIT_AMOUNT."""
        minor = price * 100
        if not math.isfinite(minor):
            raise ValueError(f"price {price!r} has no finite amount in minor units")
        amount = int(round(minor))
        if amount > MAX_UNIT_AMOUNT:
            raise ValueError(f"price {price!r} exceeds {MAX_UNIT_AMOUNT} minor units")
        return max(1, amount)

    def to_line_item(self, item: CartItem) -> CheckoutLineItem:
        price = self.effective_unit_price(item)
        try:
            unit_amount = self.to_unit_amount(price)
        except ValueError as e:
            self._logger.warning("price_out_of_range", item_id=item.id, computed_price=str(price))
            raise InvalidCartItemError("Item price is out of range", {"item_id": item.id}) from e
        return CheckoutLineItem(
            item_id=item.id,
            name=item.name,
            unit_amount=unit_amount,
            quantity=item.quantity,
        )


# =============================================================================
# CHECKOUT INITIATOR
# =============================================================================

class CheckoutInitiator:
    """
    Builds provider checkout sessions from carts.

    Example:
        initiator = CheckoutInitiator(provider, cache, settings)
        result = await initiator.create_checkout(user, cart_items, "Steve")
        # redirect the buyer to result.checkout_url
    """

    def __init__(
        self,
        provider: IPaymentProvider,
        cache: PaymentCache,
        settings: Settings,
        prices: Optional[PriceCalculator] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.settings = settings
        self.prices = prices or PriceCalculator(settings.fallback_unit_price)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            agent="checkout_initiator",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def resolve_customer(self, user: AuthenticatedUser) -> str:
        """Cached customer id for the user, creating the Stripe customer on first checkout."""
        customer_id = await self.cache.get_customer_id(user.user_id)
        if customer_id:
            return customer_id

        customer_id = await self.provider.create_customer(user.user_id, user.email)
        await self.cache.cache_customer_id(user.user_id, customer_id)
        return customer_id

    def _cancel_url(self, return_url: Optional[str]) -> str:
        # Only same-site paths; anything else would be an open redirect
        if return_url and return_url.startswith("/") and not return_url.startswith("//"):
            return self.settings.build_url(return_url)
        return self.settings.build_url(DEFAULT_CANCEL_PATH)

    async def create_checkout(
        self,
        user: AuthenticatedUser,
        cart_items: List[CartItem],
        minecraft_username: Optional[str],
        return_url: Optional[str] = None,
    ) -> CheckoutResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not cart_items:
            raise EmptyCartError()
        username = (minecraft_username or "").strip()
        if not username:
            raise MissingIdentityError()

        line_items = [self.prices.to_line_item(item) for item in cart_items]

        log.info("checkout_initiated",
                 user_id=user.user_id,
                 items=len(line_items),
                 amount=sum(li.unit_amount * li.quantity for li in line_items))

        customer_id = await self.resolve_customer(user)

        session = await self.provider.create_checkout_session(
            customer_id=customer_id,
            line_items=line_items,
            success_url=self.settings.build_url(SUCCESS_PATH),
            cancel_url=self._cancel_url(return_url),
            metadata={
                "user_id": user.user_id,
                "minecraft_username": username,
                "item_ids": ",".join(str(item.id) for item in cart_items),
                "correlation_id": correlation_id,
            },
        )

        await self.cache.cache_checkout_session(session)

        log.info("checkout_created",
                 stripe_session_id=session.session_id,
                 customer_id=customer_id)

        return CheckoutResult(
            checkout_url=session.url,
            session_id=session.session_id,
            customer_id=customer_id,
        )
