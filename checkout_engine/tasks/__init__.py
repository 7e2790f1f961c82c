from checkout_engine.tasks.mandate_watch import (
    MandateWatchConfig,
    MandateWatcher,
    PendingMandate,
    IPendingMandateStore,
    IWatchCycle,
    InMemoryPendingMandateStore,
    mandate_watch_loop,
)

__all__ = [
    "MandateWatchConfig",
    "MandateWatcher",
    "PendingMandate",
    "IPendingMandateStore",
    "IWatchCycle",
    "InMemoryPendingMandateStore",
    "mandate_watch_loop",
]
