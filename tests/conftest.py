"""
Shared fixtures for the Squizzle SDK test suite.
"""

import hashlib
import json
import uuid
from typing import Dict, List, Optional

import httpx
import pytest

from squizzle.config import EngineConfig, RegistryConfig
from squizzle.core.builder import ArtifactBuilder
from squizzle.core.engine import MigrationEngine
from squizzle.core.manifest import ArtifactFile
from squizzle.core.types import MigrationType
from squizzle.drivers.memory import InMemoryDriver
from squizzle.storage.filesystem import FilesystemStorage
from squizzle.storage.oci import OCIStorage


def sample_files() -> List[ArtifactFile]:
    """A small but complete file set: schema, custom, seed and rollback."""
    return [
        ArtifactFile("drizzle/0001_users.sql", b"CREATE TABLE users (id serial primary key);", MigrationType.DRIZZLE),
        ArtifactFile("drizzle/0002_posts.sql", b"CREATE TABLE posts (id serial primary key);", MigrationType.DRIZZLE),
        ArtifactFile("squizzle/0001_index.sql", b"CREATE INDEX users_id ON users (id);", MigrationType.CUSTOM),
        ArtifactFile("squizzle/0002_seed.sql", b"INSERT INTO users DEFAULT VALUES;", MigrationType.SEED),
        ArtifactFile("squizzle/0003_rollback.sql", b"DROP TABLE posts;", MigrationType.ROLLBACK),
    ]


@pytest.fixture
def files() -> List[ArtifactFile]:
    return sample_files()


@pytest.fixture
def driver() -> InMemoryDriver:
    return InMemoryDriver()


@pytest.fixture
def storage(tmp_path) -> FilesystemStorage:
    return FilesystemStorage(tmp_path / "artifacts")


@pytest.fixture
def builder() -> ArtifactBuilder:
    return ArtifactBuilder()


@pytest.fixture
def engine(driver, storage) -> MigrationEngine:
    return MigrationEngine(driver, storage, config=EngineConfig(lock_timeout=1.0))


@pytest.fixture
def publish(builder, engine):
    """Build ``files`` as ``version`` and publish them through the engine."""

    async def _publish(version: str, files: Optional[List[ArtifactFile]] = None):
        built = await builder.build(version, files if files is not None else sample_files())
        await engine.publish(built)
        return built

    return _publish


class FakeRegistry:
    """
    In-process registry v2 server for ``httpx.MockTransport``.

    Supports blob upload and download, manifest push/pull/delete by tag or
    digest, and paginated tag listing. Behaviour switches let tests
    simulate auth challenges and refused deletes.
    """

    def __init__(self, repository: str = "squizzle-artifacts", page_size: Optional[int] = None):
        self.repository = repository
        self.page_size = page_size
        self.blobs: Dict[str, bytes] = {}
        self.manifests: Dict[str, bytes] = {}
        self.tags: Dict[str, str] = {}
        self.requests: List[httpx.Request] = []
        self.uploads: Dict[str, bool] = {}

        self.delete_status: Optional[int] = None
        self.keep_tag_after_delete = False
        self.omit_head_digest = False

        self.bearer_token: Optional[str] = None
        self.basic_credentials: Optional[str] = None
        self.token_requests: List[httpx.Request] = []
        self.token_expires_in: Optional[int] = 300
        self.issued_token: Optional[str] = None
        self.realm = "https://auth.test/token"

    @staticmethod
    def digest(data: bytes) -> str:
        return f"sha256:{hashlib.sha256(data).hexdigest()}"

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization")
        if self.bearer_token is not None:
            return header == f"Bearer {self.bearer_token}"
        if self.basic_credentials is not None:
            return header == f"Basic {self.basic_credentials}"
        return True

    def _challenge(self) -> httpx.Response:
        if self.bearer_token is not None:
            value = (
                f'Bearer realm="{self.realm}",service="registry.test",'
                f'scope="repository:{self.repository}:pull,push"'
            )
        else:
            value = 'Basic realm="registry"'
        return httpx.Response(401, headers={"WWW-Authenticate": value}, json={"errors": [{"code": "UNAUTHORIZED"}]})

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests.append(request)
        body = {"token": self.issued_token or self.bearer_token}
        if self.token_expires_in is not None:
            body["expires_in"] = self.token_expires_in
        return httpx.Response(200, json=body)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "auth.test":
            return self._token(request)
        if not self._authorized(request):
            return self._challenge()

        prefix = f"/v2/{self.repository}/"
        path = request.url.path
        if not path.startswith(prefix):
            return httpx.Response(404)
        rest = path[len(prefix):]

        if rest == "tags/list":
            return self._list_tags(request)
        if rest.startswith("blobs/uploads/"):
            return self._upload(request, rest[len("blobs/uploads/"):])
        if rest.startswith("blobs/"):
            return self._blob(request, rest[len("blobs/"):])
        if rest.startswith("manifests/"):
            return self._manifest(request, rest[len("manifests/"):])
        return httpx.Response(404)

    def _upload(self, request: httpx.Request, session: str) -> httpx.Response:
        if request.method == "POST":
            session = str(uuid.uuid4())
            self.uploads[session] = True
            return httpx.Response(202, headers={"Location": f"/v2/{self.repository}/blobs/uploads/{session}"})
        if request.method == "PUT" and session in self.uploads:
            digest = request.url.params["digest"]
            data = request.content
            if self.digest(data) != digest:
                return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})
            self.blobs[digest] = data
            del self.uploads[session]
            return httpx.Response(201, headers={"Docker-Content-Digest": digest})
        return httpx.Response(404)

    def _blob(self, request: httpx.Request, digest: str) -> httpx.Response:
        if digest not in self.blobs:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, content=self.blobs[digest])

    def _resolve(self, reference: str) -> Optional[str]:
        if reference.startswith("sha256:"):
            return reference if reference in self.manifests else None
        return self.tags.get(reference)

    def _manifest(self, request: httpx.Request, reference: str) -> httpx.Response:
        if request.method == "PUT":
            digest = self.digest(request.content)
            self.manifests[digest] = request.content
            self.tags[reference] = digest
            return httpx.Response(201, headers={"Docker-Content-Digest": digest})

        digest = self._resolve(reference)
        if request.method == "DELETE":
            if self.delete_status is not None:
                return httpx.Response(self.delete_status, json={"errors": [{"code": "DENIED"}]})
            if digest is None:
                return httpx.Response(404)
            if not self.keep_tag_after_delete:
                self.manifests.pop(digest, None)
                self.tags = {t: d for t, d in self.tags.items() if d != digest}
            return httpx.Response(202)

        if digest is None:
            return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
        headers = {"Content-Type": "application/vnd.oci.image.manifest.v1+json"}
        if request.method == "HEAD":
            if not self.omit_head_digest:
                headers["Docker-Content-Digest"] = digest
            return httpx.Response(200, headers=headers)
        headers["Docker-Content-Digest"] = digest
        return httpx.Response(200, headers=headers, content=self.manifests[digest])

    def _list_tags(self, request: httpx.Request) -> httpx.Response:
        tags = sorted(self.tags)
        if not tags and not self.manifests:
            return httpx.Response(404, json={"errors": [{"code": "NAME_UNKNOWN"}]})
        last = request.url.params.get("last")
        if last:
            tags = [t for t in tags if t > last]
        size = int(request.url.params.get("n") or self.page_size or 0) or len(tags)
        page, remaining = tags[:size], tags[size:]

        headers = {}
        if remaining:
            headers["Link"] = f'</v2/{self.repository}/tags/list?n={size}&last={page[-1]}>; rel="next"'
        return httpx.Response(200, headers=headers, content=json.dumps({"name": self.repository, "tags": page}))


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def registry_config(tmp_path) -> RegistryConfig:
    # Point credential lookup at an empty location so the host's Docker config is never read
    return RegistryConfig(registry="registry.test", docker_config_path=tmp_path / "no-docker-config.json")


@pytest.fixture
async def oci_storage(registry, registry_config):
    storage = OCIStorage(registry_config, transport=registry.transport())
    yield storage
    await storage.close()
