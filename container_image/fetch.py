import logging
import threading
from collections.abc import Callable, Iterable

from container_image.cache import Cache
from container_image.config import Config
from container_image.exceptions import AuthenticationError, Cancelled
from container_image.oci.client import Client
from container_image.oci.descriptor import Descriptor, short_digest
from container_image.oci.image import Image
from container_image.oci.index import Platform, PlatformDescriptor
from container_image.oci.manifest import (
    DockerManifest,
    Manifest,
    OCIManifest,
    parse_manifest,
)
from container_image.oci.walker import ManifestWalker, Path
from container_image.tasks import TaskGroup

logger = logging.getLogger(__name__)

# progress(name, done, total), called as bytes arrive and once on completion
Progress = Callable[[str, int, int], None]


class Fetcher(ManifestWalker):
    """Download an image into the cache

    One token is requested for the whole run. Manifests and blobs already
    in the cache are not requested again. The config and layers of a
    manifest, and the entries of a manifest list, are fetched concurrently;
    the first failure cancels every pending and running transfer.
    """

    def __init__(
        self,
        image: Image,
        cache: Cache,
        client: Client,
        platform: Platform | None = None,
        config: Config | None = None,
        progress: Progress | None = None,
    ):
        super().__init__(platform=platform)
        self.image = image
        self.cache = cache
        self.client = client
        self.config = config or client.config
        self.progress = progress
        self.cancel = threading.Event()
        self._token: str | None = None
        self._token_lock = threading.Lock()
        self._connections = threading.BoundedSemaphore(self.config.max_connections)

    def run(self):
        self._token = self.client.get_token(self.image)
        root = self.get_root_manifest()
        self.walk(root)

    def _call(self, fn: Callable, *args, **kwargs):
        """Call a registry operation with the current token

        A rejected token is replaced once and the call retried.
        """
        token = self._token
        try:
            return fn(*args, token=token, **kwargs)
        except AuthenticationError:
            if not self.config.refresh_token:
                raise
            self._refresh_token(token)
            return fn(*args, token=self._token, **kwargs)

    def _refresh_token(self, stale: str | None):
        with self._token_lock:
            # another branch may have refreshed it already
            if self._token == stale:
                logger.info("Token rejected, requesting a new one")
                self._token = self.client.get_token(self.image)

    def _reporter(self, name: str, total: int) -> Callable[[int], None] | None:
        if self.progress is None:
            return None
        done = 0

        def report(size: int):
            nonlocal done
            done += size
            self.progress(name, done, total)

        return report

    def _done(self, name: str, size: int):
        if self.progress is not None:
            self.progress(name, size, size)

    def get_root_manifest(self) -> Manifest:
        name = f"manifest:{self.image.tag or short_digest(self.image.digest)}"
        if self.cache.manifest_exists(self.image):
            logger.debug("%s: manifest found in cache", self.image)
            manifest = self.cache.get_manifest(self.image)
            self._done(name, manifest.descriptor.size)
            return manifest

        with self._connections:
            media_type, stream = self._call(
                self.client.get_manifest, self.image, cancel=self.cancel
            )
            with stream:
                data = stream.read()
        manifest = parse_manifest(media_type, data)
        self.cache.add_manifest(self.image, manifest)
        self._done(name, len(data))
        logger.debug("%s: %s %s", self.image, media_type, manifest.descriptor.digest)
        return manifest

    def load_manifest(self, descriptor: PlatformDescriptor) -> Manifest:
        """Manifests referenced from a list are stored as plain blobs"""
        name = f"manifest:{descriptor.short_digest}"
        if self.cache.blob_exists(descriptor.digest, descriptor.size):
            logger.debug("%s: manifest found in cache", descriptor.digest)
            self._done(name, descriptor.size)
        else:
            image = self.image.with_digest(descriptor.digest)
            with self._connections:
                _, stream = self._call(
                    self.client.get_manifest,
                    image,
                    cancel=self.cancel,
                    progress=self._reporter(name, descriptor.size),
                )
                with stream:
                    self.cache.add_blob(descriptor.digest, stream)
        data = self.cache.get_blob_string(descriptor.digest)
        return parse_manifest(descriptor.mediaType, data)

    def visit_image(
        self,
        manifest: DockerManifest | OCIManifest,
        path: Path,
        platform: Platform | None,
    ):
        logger.debug(
            "Fetching %s layers of %s (%s)",
            len(manifest.layers),
            manifest.descriptor.digest,
            platform or "default platform",
        )
        with TaskGroup(self.config.max_workers, self.cancel) as group:
            group.map(self.get_blob, [manifest.config, *manifest.layers])

    def map_entries(self, fn: Callable, entries: Iterable):
        with TaskGroup(self.config.max_workers, self.cancel) as group:
            group.map(fn, entries)

    def get_blob(self, descriptor: Descriptor):
        name = descriptor.short_digest
        if self.cache.blob_exists(descriptor.digest, descriptor.size):
            logger.debug("%s: already in cache", descriptor.digest)
            self._done(name, descriptor.size)
            return
        if self.cancel.is_set():
            raise Cancelled(f"{descriptor.digest}: cancelled")
        with self._connections:
            stream = self._call(
                self.client.get_blob,
                self.image,
                descriptor,
                cancel=self.cancel,
                progress=self._reporter(name, descriptor.size),
            )
            with stream:
                self.cache.add_blob(descriptor.digest, stream)
        logger.debug("%s: downloaded %s bytes", descriptor.digest, descriptor.size)


def fetch(
    image: Image,
    platform: Platform | None = None,
    *,
    cache: Cache,
    client: Client,
    progress: Progress | None = None,
):
    """Fetch `image` and everything it references into `cache`"""
    Fetcher(
        image,
        cache=cache,
        client=client,
        platform=platform,
        progress=progress,
    ).run()
