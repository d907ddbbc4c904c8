import gzip
import hashlib
import io
import json
import re
import tarfile
import threading

import httpx
import pytest

from container_image.cache import Cache
from container_image.config import Config
from container_image.oci.client import Client
from container_image.oci.manifest import DOCKER_MANIFEST, DOCKER_MANIFEST_LIST

REGISTRY_HOST = "registry.test"
AUTH_HOST = "auth.test"
STORAGE_HOST = "storage.test"

CONFIG_MEDIA_TYPE = "application/vnd.docker.container.image.v1+json"
LAYER_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"
IMAGE_CONFIG = b'{"architecture": "amd64", "os": "linux"}'

ROUTE = re.compile(r"^/v2/(?P<name>.+)/(?P<kind>manifests|blobs)/(?P<reference>[^/]+)$")


def digest_of(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def descriptor(media_type: str, data: bytes) -> dict:
    return {"mediaType": media_type, "digest": digest_of(data), "size": len(data)}


def file_entry(name: str, data: bytes = b"", mode: int = 0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    return info, data


def dir_entry(name: str, mode: int = 0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    return info, None


def link_entry(name: str, target: str, type: bytes = tarfile.SYMTYPE):
    info = tarfile.TarInfo(name)
    info.type = type
    info.linkname = target
    return info, None


def device_entry(name: str, type: bytes = tarfile.CHRTYPE):
    info = tarfile.TarInfo(name)
    info.type = type
    info.devmajor = 1
    info.devminor = 3
    return info, None


def build_layer(*entries) -> bytes:
    """Return a gzip compressed tar archive of `(TarInfo, data)` entries"""
    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as compressed:
        with tarfile.open(fileobj=compressed, mode="w") as archive:
            for info, data in entries:
                archive.addfile(info, io.BytesIO(data) if data else None)
    return buffer.getvalue()


class Registry:
    """In-memory registry and token service behind an httpx.MockTransport

    Every request is recorded. Tokens are numbered in the order they are
    handed out, tokens in `rejected` are answered with 401.
    """

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.requests: list[httpx.Request] = []
        self.rejected: set[str] = set()
        self.corrupt: set[str] = set()
        self.redirect_blobs = False
        self.tokens_issued = 0
        self._lock = threading.Lock()

    def add_blob(self, data: bytes, media_type: str = LAYER_MEDIA_TYPE) -> dict:
        self.blobs[digest_of(data)] = data
        return descriptor(media_type, data)

    def add_manifest(self, name: str, reference: str, media_type: str, data: bytes):
        self.manifests[(name, reference)] = (media_type, data)
        self.manifests[(name, digest_of(data))] = (media_type, data)

    def add_image(
        self,
        name: str,
        tag: str | None,
        layers: list[bytes],
        config: bytes = IMAGE_CONFIG,
    ) -> bytes:
        """Publish a single manifest image, returns the manifest bytes"""
        manifest = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST,
            "config": self.add_blob(config, CONFIG_MEDIA_TYPE),
            "layers": [self.add_blob(layer) for layer in layers],
        }
        data = json.dumps(manifest, indent=3).encode("utf-8")
        self.add_manifest(name, tag or digest_of(data), DOCKER_MANIFEST, data)
        return data

    def add_list(self, name: str, tag: str, entries: list[tuple[dict, bytes]]) -> bytes:
        """Publish a manifest list of `(platform, manifest bytes)` entries"""
        manifest_list = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_LIST,
            "manifests": [
                descriptor(DOCKER_MANIFEST, data) | {"platform": platform}
                for platform, data in entries
            ],
        }
        data = json.dumps(manifest_list).encode("utf-8")
        self.add_manifest(name, tag, DOCKER_MANIFEST_LIST, data)
        return data

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests if r.url.host != AUTH_HOST]

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if request.url.host == AUTH_HOST:
            with self._lock:
                self.tokens_issued += 1
                token = f"token-{self.tokens_issued}"
            return httpx.Response(200, json={"token": token, "expires_in": 300})

        authorization = request.headers.get("Authorization", "")
        token = authorization.removeprefix("Bearer ")
        if not authorization.startswith("Bearer ") or token in self.rejected:
            return httpx.Response(401, json={"errors": [{"code": "UNAUTHORIZED"}]})

        if request.url.host == STORAGE_HOST:
            return self._blob(request.url.path.rsplit("/", 1)[-1])

        match = ROUTE.match(request.url.path)
        if match is None:
            return httpx.Response(404)
        if match["kind"] == "blobs":
            if self.redirect_blobs:
                return httpx.Response(
                    307, headers={"Location": f"https://{STORAGE_HOST}/{match['reference']}"}
                )
            return self._blob(match["reference"])

        try:
            media_type, data = self.manifests[(match["name"], match["reference"])]
        except KeyError:
            return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
        return httpx.Response(
            200,
            content=data,
            headers={"Content-Type": media_type, "Docker-Content-Digest": digest_of(data)},
        )

    def _blob(self, digest: str) -> httpx.Response:
        try:
            data = self.blobs[digest]
        except KeyError:
            return httpx.Response(404, json={"errors": [{"code": "BLOB_UNKNOWN"}]})
        if digest in self.corrupt:
            data = data[:-1] + bytes([data[-1] ^ 0xFF])
        return httpx.Response(
            200, content=data, headers={"Content-Type": "application/octet-stream"}
        )


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        registry_url=f"https://{REGISTRY_HOST}",
        auth_url=f"https://{AUTH_HOST}",
        auth_service=REGISTRY_HOST,
        cache_dir=tmp_path / "cache",
        max_workers=4,
        max_connections=2,
    )


@pytest.fixture
def cache(config) -> Cache:
    cache = Cache(config.cache_dir)
    cache.init()
    return cache


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
def client(config, registry):
    with Client(config=config, transport=httpx.MockTransport(registry.handler)) as client:
        yield client
