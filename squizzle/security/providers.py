"""
Artifact signing providers.

This module provides:
- HMAC-SHA256 signing with a shared secret (development, CI)
- Ed25519 signing with a PEM key pair (release artifacts)
- SLSA-style provenance records

Author: Squizzle SDK
Version: 1.0.0
"""

import base64
import binascii
import hashlib
import hmac
import logging
import platform
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from ..config import SecurityConfig, SecurityProviderType
from ..core.interfaces import SecurityProvider
from ..core.types import Manifest
from ..exceptions import SecurityError
from ..version import __version__

logger = logging.getLogger(__name__)

BUILD_TYPE = "https://squizzle.dev/build/v1"
DEFAULT_BUILDER_ID = "https://squizzle.dev/builder"


class ProvenanceMixin:
    """Builds provenance records from a manifest."""

    builder_id: str = DEFAULT_BUILDER_ID

    async def generate_provenance(
        self, manifest: Manifest, build_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        algorithm = manifest.checksum_algorithm.value
        environment = {
            "engineVersion": __version__,
            "python": platform.python_version(),
            "os": platform.system().lower(),
        }
        environment.update(build_info or {})

        return {
            "builderId": self.builder_id,
            "buildType": BUILD_TYPE,
            "invocation": {
                "parameters": {
                    "version": manifest.version,
                    "previousVersion": manifest.previous_version,
                },
                "environment": environment,
            },
            "materials": [
                {"uri": f.path, "digest": {algorithm: f.checksum}}
                for f in manifest.files
            ],
            "metadata": {
                "buildFinishedOn": datetime.now(timezone.utc).isoformat(),
            },
        }


class HMACSecurityProvider(ProvenanceMixin, SecurityProvider):
    """HMAC-SHA256 signatures, base64 encoded."""

    def __init__(self, secret: Union[str, bytes], builder_id: str = DEFAULT_BUILDER_ID):
        if not secret:
            raise SecurityError("HMAC signing requires a non-empty secret")
        self._secret = secret.encode() if isinstance(secret, str) else secret
        self.builder_id = builder_id

    def _digest(self, data: bytes) -> bytes:
        return hmac.new(self._secret, data, hashlib.sha256).digest()

    async def sign(self, data: bytes) -> str:
        return base64.b64encode(self._digest(data)).decode("ascii")

    async def verify(self, data: bytes, signature: str) -> bool:
        try:
            provided = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False
        return hmac.compare_digest(provided, self._digest(data))


class Ed25519SecurityProvider(ProvenanceMixin, SecurityProvider):
    """
    Ed25519 signatures, base64 encoded.

    A provider holding only a public key can verify but not sign.
    """

    def __init__(
        self,
        private_key: Optional[Ed25519PrivateKey] = None,
        public_key: Optional[Ed25519PublicKey] = None,
        builder_id: str = DEFAULT_BUILDER_ID,
    ):
        if private_key is None and public_key is None:
            raise SecurityError("Ed25519 provider requires a private or public key")
        self.private_key = private_key
        self.public_key = public_key or private_key.public_key()
        self.builder_id = builder_id

    @classmethod
    def generate(cls, builder_id: str = DEFAULT_BUILDER_ID) -> "Ed25519SecurityProvider":
        """Create a provider with a fresh key pair."""
        return cls(private_key=Ed25519PrivateKey.generate(), builder_id=builder_id)

    @classmethod
    def from_pem(
        cls,
        private_pem: Optional[bytes] = None,
        public_pem: Optional[bytes] = None,
        builder_id: str = DEFAULT_BUILDER_ID,
    ) -> "Ed25519SecurityProvider":
        """Load keys from PEM data."""
        try:
            private_key = (
                serialization.load_pem_private_key(private_pem, password=None) if private_pem else None
            )
            public_key = serialization.load_pem_public_key(public_pem) if public_pem else None
        except (ValueError, TypeError) as e:
            raise SecurityError(f"Failed to load signing key: {e}", original_error=e) from e

        if private_key is not None and not isinstance(private_key, Ed25519PrivateKey):
            raise SecurityError("Private key is not an Ed25519 key")
        if public_key is not None and not isinstance(public_key, Ed25519PublicKey):
            raise SecurityError("Public key is not an Ed25519 key")
        return cls(private_key=private_key, public_key=public_key, builder_id=builder_id)

    @classmethod
    def from_files(
        cls,
        private_key_path: Optional[Path] = None,
        public_key_path: Optional[Path] = None,
        builder_id: str = DEFAULT_BUILDER_ID,
    ) -> "Ed25519SecurityProvider":
        try:
            private_pem = Path(private_key_path).read_bytes() if private_key_path else None
            public_pem = Path(public_key_path).read_bytes() if public_key_path else None
        except OSError as e:
            raise SecurityError(f"Failed to read signing key: {e}", original_error=e) from e
        return cls.from_pem(private_pem, public_pem, builder_id=builder_id)

    def private_pem(self) -> bytes:
        if self.private_key is None:
            raise SecurityError("No private key available")
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    async def sign(self, data: bytes) -> str:
        if self.private_key is None:
            raise SecurityError("Cannot sign without a private key")
        return base64.b64encode(self.private_key.sign(data)).decode("ascii")

    async def verify(self, data: bytes, signature: str) -> bool:
        try:
            self.public_key.verify(base64.b64decode(signature, validate=True), data)
            return True
        except (InvalidSignature, binascii.Error, ValueError):
            return False


def create_security_provider(config: Optional[SecurityConfig]) -> Optional[SecurityProvider]:
    """
    Create the provider selected by configuration.

    Returns:
        Configured provider, or None when signing is disabled
    """
    if config is None or config.provider == SecurityProviderType.NONE:
        return None

    if config.provider == SecurityProviderType.HMAC:
        if not config.secret:
            raise SecurityError("HMAC provider selected but no signing secret configured")
        return HMACSecurityProvider(config.secret, builder_id=config.builder_id)

    if config.provider == SecurityProviderType.ED25519:
        return Ed25519SecurityProvider.from_files(
            config.private_key_path, config.public_key_path, builder_id=config.builder_id
        )

    raise SecurityError(f"Unsupported security provider: {config.provider}")
