"""
Process-wide collaborators handed to routes through `Depends`.

Each provider builds its object once per process. Tests swap them through
`app.dependency_overrides`.
"""

from functools import lru_cache

from .csrf import CsrfService, build_token_store
from .payment_service import PaymentGuard
from .rate_limit import CounterStore, RateLimiter, build_counter_store
from .settings import settings


@lru_cache
def get_counter_store() -> CounterStore:
    return build_counter_store()


@lru_cache
def get_payment_guard() -> PaymentGuard:
    store = get_counter_store()
    return PaymentGuard(
        attempts=RateLimiter(store, "payment", settings.max_payments_per_minute, 60),
        failures=RateLimiter(
            store,
            "payment_failed",
            settings.max_failed_payment_attempts,
            settings.failed_payment_window_seconds,
        ),
    )


@lru_cache
def get_qr_limiter() -> RateLimiter:
    return RateLimiter(
        get_counter_store(), "qr", settings.qr_lookup_rate_limit, settings.rate_limit_window_seconds
    )


@lru_cache
def get_customer_order_limiter() -> RateLimiter:
    return RateLimiter(
        get_counter_store(),
        "order",
        settings.customer_order_rate_limit,
        settings.rate_limit_window_seconds,
    )


@lru_cache
def get_csrf_service() -> CsrfService:
    return CsrfService(
        build_token_store(),
        ttl_seconds=settings.csrf_token_ttl_seconds,
        enabled=settings.csrf_enabled,
    )
