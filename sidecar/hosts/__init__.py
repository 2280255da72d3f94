from .base import ContextHost, HostInstance, HostSignal, WatchHandle, WatchSpec
from .bridge import BridgeHost
from .dummy import DummyHost

__all__ = [
    "BridgeHost",
    "ContextHost",
    "DummyHost",
    "HostInstance",
    "HostSignal",
    "WatchHandle",
    "WatchSpec",
]
