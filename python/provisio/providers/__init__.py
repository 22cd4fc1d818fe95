"""
provisio.providers

Unified aggregator import for:
- ProviderName
- The provider factory dispatch (ProviderName -> builder)
- get_provider for building a provider from a declaration's `provider` block.
"""

from enum import Enum
from typing import Any, Callable, Dict, Optional

from provisio.models.resource import ProviderDecl
from provisio.providers.aws import build_aws_provider
from provisio.providers.base import Provider, ResourceHandler
from provisio.providers.memory import MemoryProvider, build_memory_provider


# --------------------------
# 1) ProviderName
# --------------------------
class ProviderName(str, Enum):
    memory = "memory"
    aws = "aws"


# --------------------------
# 2) Dictionary-based factory dispatch
# --------------------------
PROVIDER_FACTORY_MAP: Dict[ProviderName, Callable[[Dict[str, Any]], Provider]] = {
    ProviderName.memory: build_memory_provider,
    ProviderName.aws: build_aws_provider,
}


def get_provider(decl: Optional[ProviderDecl]) -> Provider:
    """Build the provider named by `decl` (the memory provider if none is declared)."""
    if decl is None:
        return MemoryProvider()
    try:
        name = ProviderName(decl.name)
    except ValueError:
        raise ValueError(f"Unsupported provider: {decl.name}") from None
    return PROVIDER_FACTORY_MAP[name](decl.options())


__all__ = [
    "Provider",
    "ProviderName",
    "ResourceHandler",
    "MemoryProvider",
    "get_provider",
]
