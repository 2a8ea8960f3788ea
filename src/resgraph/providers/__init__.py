from .base import Diff, NotFoundError, Provider, ProviderError
from .command import COMMAND_KIND, LocalCommandProvider
from .factory import default_registry
from .memory import InMemoryProvider, ProviderCall

__all__ = [
    "COMMAND_KIND",
    "Diff",
    "InMemoryProvider",
    "LocalCommandProvider",
    "NotFoundError",
    "Provider",
    "ProviderCall",
    "ProviderError",
    "default_registry",
]
