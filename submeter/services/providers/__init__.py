"""
Provider event normalizers, one per payment provider.

Usage:
    from submeter.services.providers import get_normalizer
    event = get_normalizer("paddle").normalize(body, headers, query)
"""

from typing import Dict, Type

from submeter.core.errors import SubmeterError
from submeter.services.providers.base import EventNormalizer, PayloadError, SignatureError
from submeter.services.providers.dodo import DodoNormalizer
from submeter.services.providers.gumroad import GumroadNormalizer
from submeter.services.providers.paddle import PaddleNormalizer
from submeter.services.providers.stripe_provider import StripeNormalizer

NORMALIZERS: Dict[str, Type[EventNormalizer]] = {
    "stripe": StripeNormalizer,
    "paddle": PaddleNormalizer,
    "dodo": DodoNormalizer,
    "gumroad": GumroadNormalizer,
}


def get_normalizer(provider: str) -> EventNormalizer:
    """Return a normalizer for *provider*, or raise SMT-EVT-002."""
    cls = NORMALIZERS.get(provider)
    if cls is None:
        raise SubmeterError("SMT-EVT-002", detail=f"unknown provider {provider!r}")
    return cls()


__all__ = [
    "EventNormalizer",
    "PayloadError",
    "SignatureError",
    "get_normalizer",
    "NORMALIZERS",
]
