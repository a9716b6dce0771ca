"""Hand-written issuer adapters for portals too irregular for recipes."""

from autochallenge.issuers import lewisham, westminster
from autochallenge.issuers.base import (
    AdapterOutcome,
    IssuerAdapter,
    IssuerArgs,
    take_screenshot,
    upload_evidence,
)


def default_adapters() -> list[IssuerAdapter]:
    """Every built-in adapter. The dispatcher registry is built from this list."""
    return [lewisham.ADAPTER, westminster.ADAPTER]


__all__ = [
    'AdapterOutcome',
    'IssuerAdapter',
    'IssuerArgs',
    'default_adapters',
    'take_screenshot',
    'upload_evidence',
]
