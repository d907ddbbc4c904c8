import logging
from collections.abc import Callable, Iterable
from typing import assert_never

from container_image.oci.index import (
    DockerManifestList,
    OCIIndex,
    Platform,
    PlatformDescriptor,
)
from container_image.oci.manifest import DockerManifest, Manifest, OCIManifest

logger = logging.getLogger(__name__)

# Position of a manifest in the tree, one index per list level.
# A single manifest at the root sits at (0,).
Path = tuple[int, ...]
ROOT: Path = (0,)


class ManifestWalker:
    """Recursive traversal of a manifest tree

    Single image manifests are leaves and handed to `visit_image`, lists and
    indices are expanded into the manifests their descriptors point to.
    When `platform` is set, descriptors for other platforms are skipped
    before anything is loaded.

    Subclasses decide where child manifests come from (`load_manifest`),
    what happens at a leaf (`visit_image`) and how siblings are scheduled
    (`map_entries`).
    """

    def __init__(self, platform: Platform | None = None):
        self.platform = platform

    def walk(
        self,
        manifest: Manifest,
        path: Path = (),
        platform: Platform | None = None,
    ):
        match manifest:
            case DockerManifest() | OCIManifest():
                self.visit_image(manifest, path or ROOT, platform)
            case DockerManifestList() | OCIIndex():
                logger.info(
                    "Supported platforms: %s",
                    ", ".join(str(p) for p in manifest.platforms()) or "unknown",
                )
                entries = [
                    (path + (index,), descriptor)
                    for index, descriptor in enumerate(manifest.manifests)
                    if self.select(descriptor)
                ]
                self.map_entries(lambda entry: self.walk_descriptor(*entry), entries)
            case _:
                assert_never(manifest)

    def walk_descriptor(self, path: Path, descriptor: PlatformDescriptor):
        manifest = self.load_manifest(descriptor)
        self.walk(manifest, path, descriptor.platform)

    def select(self, descriptor: PlatformDescriptor) -> bool:
        if self.platform is None:
            return True
        if self.platform.matches(descriptor.platform):
            logger.info("Selected %s (%s)", descriptor.platform, descriptor.digest)
            return True
        logger.debug("Skipping platform %s", descriptor.platform)
        return False

    def map_entries(self, fn: Callable, entries: Iterable):
        for entry in entries:
            fn(entry)

    def load_manifest(self, descriptor: PlatformDescriptor) -> Manifest:
        raise NotImplementedError

    def visit_image(
        self,
        manifest: DockerManifest | OCIManifest,
        path: Path,
        platform: Platform | None,
    ):
        raise NotImplementedError
