"""
Signal Lifecycle

Status transitions, audit trail and asynchronous invalidation delivery.
"""
from .manager import SignalLifecycleManager, SYSTEM_ACTOR, DEFAULT_INVALIDATION_REASON
from .invalidation import InvalidationDispatcher, InvalidationJob, invalidation_dispatcher

__all__ = [
    "SignalLifecycleManager",
    "SYSTEM_ACTOR",
    "DEFAULT_INVALIDATION_REASON",
    "InvalidationDispatcher",
    "InvalidationJob",
    "invalidation_dispatcher",
]
