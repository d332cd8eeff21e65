"""
Registry authentication.

Implements the registry v2 auth sub-protocol: parsing ``WWW-Authenticate``
challenges, resolving credentials (explicit, then the local Docker
credential store, then anonymous), exchanging them for bearer tokens and
caching those tokens per realm and scope until shortly before they expire.
"""

import base64
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import httpx

from ..exceptions import RegistryAuthenticationError, RegistryTransportError

logger = logging.getLogger(__name__)

# Lifetime assumed when a token response omits expires_in
DEFAULT_TOKEN_LIFETIME = 60.0

_PARAM_RE = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|([^\s,]+))')
_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io", "registry.hub.docker.com"}


@dataclass
class AuthChallenge:
    """A parsed ``WWW-Authenticate`` header."""
    scheme: str
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def realm(self) -> Optional[str]:
        return self.params.get("realm")

    @property
    def service(self) -> Optional[str]:
        return self.params.get("service")

    @property
    def scope(self) -> Optional[str]:
        return self.params.get("scope")


def parse_challenge(header: Optional[str]) -> Optional[AuthChallenge]:
    """
    Parse a ``WWW-Authenticate`` header value.

    Example:
        parse_challenge('Bearer realm="https://auth.example.com/token",service="registry"')
    """
    if not header or not header.strip():
        return None
    scheme, _, rest = header.strip().partition(" ")
    params = {}
    for match in _PARAM_RE.finditer(rest):
        params[match.group(1).lower()] = match.group(2) if match.group(2) is not None else match.group(3)
    return AuthChallenge(scheme=scheme.lower(), params=params)


@dataclass(frozen=True)
class Credentials:
    """Registry credentials; both fields empty means anonymous."""
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def anonymous(self) -> bool:
        return not (self.username and self.password)

    def basic_auth(self) -> Optional[httpx.BasicAuth]:
        if self.anonymous:
            return None
        return httpx.BasicAuth(self.username, self.password)

    def basic_header(self) -> Optional[str]:
        if self.anonymous:
            return None
        encoded = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return f"Basic {encoded}"


def normalize_registry_host(value: str) -> str:
    """Reduce a registry reference (URL, host, or Docker config key) to its host."""
    host = value.split("://", 1)[-1].split("/", 1)[0].lower()
    if host in _DOCKER_HUB_ALIASES:
        return "docker.io"
    return host


def default_docker_config_path() -> Path:
    """Location of the Docker client config, honouring ``DOCKER_CONFIG``."""
    base = os.environ.get("DOCKER_CONFIG")
    if base:
        return Path(base) / "config.json"
    return Path.home() / ".docker" / "config.json"


def load_docker_credentials(host: str, config_path: Optional[Path] = None) -> Optional[Credentials]:
    """
    Look up credentials for ``host`` in a Docker ``config.json``.

    Only inline ``auths`` entries are read; external credential helpers are
    not invoked.
    """
    path = Path(config_path) if config_path else default_docker_config_path()
    if not path.is_file():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read Docker config {path}: {e}")
        return None

    wanted = normalize_registry_host(host)
    for key, entry in (data.get("auths") or {}).items():
        if normalize_registry_host(key) != wanted or not isinstance(entry, dict):
            continue
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Malformed auth entry for {key} in {path}: {e}")
                continue
            username, _, password = decoded.partition(":")
            return Credentials(username, password)
        if entry.get("identitytoken"):
            return Credentials("<token>", entry["identitytoken"])
        if entry.get("username") and entry.get("password"):
            return Credentials(entry["username"], entry["password"])

    if data.get("credsStore") or wanted in (data.get("credHelpers") or {}):
        logger.debug(f"Docker credential helpers are configured for {host} but are not consulted")
    return None


def resolve_credentials(
    host: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    docker_config_path: Optional[Path] = None,
) -> Credentials:
    """Explicit credentials first, then the Docker config, then anonymous."""
    if username and password:
        return Credentials(username, password)
    stored = load_docker_credentials(host, docker_config_path)
    if stored is not None:
        logger.debug(f"Using Docker config credentials for {host}")
        return stored
    return Credentials()


class TokenCache:
    """Bearer tokens keyed by realm and scope, dropped shortly before expiry."""

    def __init__(self, expiry_margin: float = 10.0, clock: Callable[[], float] = time.monotonic):
        self.expiry_margin = expiry_margin
        self._clock = clock
        self._tokens: Dict[Tuple[str, str], Tuple[str, float]] = {}

    def get(self, realm: str, scope: Optional[str]) -> Optional[str]:
        key = (realm, scope or "")
        entry = self._tokens.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if self._clock() >= expires_at:
            del self._tokens[key]
            return None
        return token

    def put(self, realm: str, scope: Optional[str], token: str, expires_in: Optional[float] = None) -> None:
        lifetime = float(expires_in) if expires_in else DEFAULT_TOKEN_LIFETIME
        self._tokens[(realm, scope or "")] = (token, self._clock() + lifetime - self.expiry_margin)

    def invalidate(self, realm: str, scope: Optional[str]) -> None:
        self._tokens.pop((realm, scope or ""), None)

    def clear(self) -> None:
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)


class RegistryAuth:
    """
    Answers registry auth challenges for one client instance.

    The last challenge seen for each action (pull, push, delete) is
    remembered so later requests can present a cached token up front.
    """

    def __init__(self, credentials: Credentials, token_cache: Optional[TokenCache] = None):
        self.credentials = credentials
        self.token_cache = token_cache or TokenCache()
        self._challenges: Dict[str, AuthChallenge] = {}

    def cached_authorization(self, action: str) -> Optional[str]:
        """Authorization header to send before any challenge, if one is known."""
        challenge = self._challenges.get(action)
        if challenge is None:
            return None
        if challenge.scheme == "basic":
            return self.credentials.basic_header()
        token = self.token_cache.get(challenge.realm, challenge.scope)
        return f"Bearer {token}" if token else None

    async def authorize(
        self,
        client: httpx.AsyncClient,
        challenge: AuthChallenge,
        action: str,
        rejected: Optional[str] = None,
    ) -> str:
        """
        Produce the Authorization header answering ``challenge``.

        Args:
            client: HTTP client used to reach the token realm
            challenge: Parsed challenge from the 401 response
            action: Registry action the request performs
            rejected: Authorization header the registry just refused, if any

        Raises:
            RegistryAuthenticationError: If no usable authorization can be obtained
        """
        self._challenges[action] = challenge

        if challenge.scheme == "basic":
            header = self.credentials.basic_header()
            if header is None:
                raise RegistryAuthenticationError(
                    "Registry requires basic authentication but no credentials are configured",
                    status_code=401,
                )
            return header

        if challenge.scheme != "bearer" or not challenge.realm:
            raise RegistryAuthenticationError(
                f"Unsupported authentication challenge: {challenge.scheme}",
                status_code=401,
                details={"params": challenge.params},
            )

        token = self.token_cache.get(challenge.realm, challenge.scope)
        if token and rejected != f"Bearer {token}":
            return f"Bearer {token}"
        if token:
            self.token_cache.invalidate(challenge.realm, challenge.scope)

        token, expires_in = await self._fetch_token(client, challenge)
        self.token_cache.put(challenge.realm, challenge.scope, token, expires_in)
        return f"Bearer {token}"

    async def _fetch_token(self, client: httpx.AsyncClient, challenge: AuthChallenge) -> Tuple[str, Optional[float]]:
        params = {}
        if challenge.service:
            params["service"] = challenge.service
        if challenge.scope:
            params["scope"] = challenge.scope

        logger.debug(f"Requesting registry token from {challenge.realm} for scope {challenge.scope}")
        try:
            response = await client.get(challenge.realm, params=params, auth=self.credentials.basic_auth())
        except httpx.TimeoutException as e:
            raise RegistryTransportError(
                f"Token request to {challenge.realm} timed out", code="TIMEOUT", original_error=e
            ) from e
        except httpx.RequestError as e:
            raise RegistryTransportError(
                f"Token request to {challenge.realm} failed: {e}", original_error=e
            ) from e

        if response.status_code != 200:
            raise RegistryAuthenticationError(
                f"Token request to {challenge.realm} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RegistryAuthenticationError(
                "Token endpoint returned invalid JSON", status_code=response.status_code, original_error=e
            ) from e

        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryAuthenticationError("Token response did not contain a token", status_code=200)
        return token, data.get("expires_in")
