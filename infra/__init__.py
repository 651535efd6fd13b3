"""Infrastructure modules for the trading resilience layer"""

from .healthcheck import HealthServer  # noqa: F401
from .network_health import Badge, NetworkHealthTracker, NetworkStatus  # noqa: F401
from .retry_scheduler import MAX_RETRY_ATTEMPTS, RETRY_DELAYS_SECONDS, RetryScheduler  # noqa: F401
from .state_store import SimulationStateStore  # noqa: F401

__all__ = [
	"Badge",
	"HealthServer",
	"MAX_RETRY_ATTEMPTS",
	"NetworkHealthTracker",
	"NetworkStatus",
	"RETRY_DELAYS_SECONDS",
	"RetryScheduler",
	"SimulationStateStore",
]
