from .ProxyEngine import InboundRequest, ProxyEngine, ProxyResult
from .StatusReporter import StatusReporter
from .StreamRelay import StreamRelay

__all__ = [
    "InboundRequest",
    "ProxyEngine",
    "ProxyResult",
    "StatusReporter",
    "StreamRelay",
]
