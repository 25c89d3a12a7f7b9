from .base import ChainProvider
from .registry import ChainRegistry

__all__ = ["ChainProvider", "ChainRegistry"]
