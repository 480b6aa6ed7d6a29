"""
Processing provider gateway: capability drivers, transports and dispatch
"""

from .backends import HTTPProviderBackend, ProviderBackend, StubProviderBackend
from .gateway import ProviderGateway

__all__ = ["HTTPProviderBackend", "ProviderBackend", "ProviderGateway", "StubProviderBackend"]
