"""Dependency injection for services."""
import redis
from fastapi import Depends, Request

from services.cart_service import CartService
from services.catalog_service import CatalogService
from services.checkout_service import CheckoutService
from services.order_service import OrderService
from services.payment_service import PaymentService


def get_redis_client(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_catalog_service() -> CatalogService:
    """Get catalog service instance."""
    return CatalogService()


def get_payment_service() -> PaymentService:
    """Get payment service instance."""
    return PaymentService()


def get_cart_service(
    redis_client: redis.Redis = Depends(get_redis_client),
    catalog: CatalogService = Depends(get_catalog_service)
) -> CartService:
    """Get cart service instance."""
    return CartService(redis_client, catalog)


def get_checkout_service(
    cart_service: CartService = Depends(get_cart_service),
    catalog: CatalogService = Depends(get_catalog_service),
    payment_service: PaymentService = Depends(get_payment_service)
) -> CheckoutService:
    """Get checkout service instance."""
    return CheckoutService(cart_service, catalog, payment_service)


def get_order_service(catalog: CatalogService = Depends(get_catalog_service)) -> OrderService:
    """Get order service instance."""
    return OrderService(catalog)
