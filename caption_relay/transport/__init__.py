"""Transport side: coordinator connection, session registry, tab routing."""
from .agent import TransportAgent
from .client import AiohttpConnector, Connector, WireSocket
from .connection import ConnectionPhase, ConnectionState, ReconnectPolicy
from .host import LocalTabHost, TabHost
from .registry import SessionRegistry

__all__ = [
    "TransportAgent",
    "AiohttpConnector",
    "Connector",
    "WireSocket",
    "ConnectionPhase",
    "ConnectionState",
    "ReconnectPolicy",
    "LocalTabHost",
    "TabHost",
    "SessionRegistry",
]
