from turnstile.config import Settings, StrategyType
from turnstile.core.backends.base import StorageBackend
from turnstile.core.clock import Clock, utc_now
from turnstile.core.strategies.base import RateLimitStrategy
from turnstile.core.strategies.fixed_window import FixedWindowStrategy
from turnstile.core.strategies.sliding_window import SlidingWindowStrategy

STRATEGIES: dict[StrategyType, type[RateLimitStrategy]] = {
    StrategyType.FIXED_WINDOW: FixedWindowStrategy,
    StrategyType.SLIDING_WINDOW: SlidingWindowStrategy,
}


def build_strategy(
    settings: Settings,
    backend: StorageBackend,
    clock: Clock = utc_now,
) -> RateLimitStrategy:
    """Instantiate the strategy selected by `settings.rate_limit_strategy`."""
    strategy_cls = STRATEGIES[settings.rate_limit_strategy]
    return strategy_cls(
        backend,
        clock=clock,
        timeout=settings.store_timeout,
        key_prefix=settings.rate_limit_key_prefix,
    )
