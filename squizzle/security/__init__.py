"""
Artifact signing and provenance.
"""

from .providers import (
    Ed25519SecurityProvider,
    HMACSecurityProvider,
    ProvenanceMixin,
    create_security_provider,
)

__all__ = [
    "HMACSecurityProvider",
    "Ed25519SecurityProvider",
    "ProvenanceMixin",
    "create_security_provider",
]
