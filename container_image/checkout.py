import logging
from pathlib import Path

from container_image.cache import Cache
from container_image.oci.image import Image
from container_image.oci.index import Platform, PlatformDescriptor
from container_image.oci.layer import extract_layer
from container_image.oci.manifest import (
    DockerManifest,
    Manifest,
    OCIManifest,
    parse_manifest,
)
from container_image.oci.walker import ManifestWalker
from container_image.oci.walker import Path as ManifestPath

logger = logging.getLogger(__name__)


class Checkout(ManifestWalker):
    """Extract the layers of a cached image

    Output layout, one directory per manifest and one per layer:

        <root>/<image>/<manifest>/<layer>/...

    A single manifest image has manifest directory `0`, the entries of a
    manifest list keep their position in the list. Entries that were not
    fetched are skipped.
    """

    def __init__(
        self,
        image: Image,
        cache: Cache,
        root: Path,
        platform: Platform | None = None,
    ):
        super().__init__(platform=platform)
        self.image = image
        self.cache = cache
        self.path = Path(root) / str(image)

    def run(self):
        manifest = self.cache.get_manifest(self.image)
        self.walk(manifest)

    def select(self, descriptor: PlatformDescriptor) -> bool:
        if not super().select(descriptor):
            return False
        if not self.cache.blob_exists(descriptor.digest, descriptor.size):
            logger.warning(
                "Skipping %s (%s): manifest is not in the cache",
                descriptor.platform or "unknown platform",
                descriptor.digest,
            )
            return False
        return True

    def load_manifest(self, descriptor: PlatformDescriptor) -> Manifest:
        data = self.cache.get_blob_string(descriptor.digest)
        return parse_manifest(descriptor.mediaType, data)

    def visit_image(
        self,
        manifest: DockerManifest | OCIManifest,
        path: ManifestPath,
        platform: Platform | None,
    ):
        directory = self.path.joinpath(*(str(i) for i in path))
        for index, layer in enumerate(manifest.layers):
            layer_dir = directory / str(index)
            logger.info("Extracting layer %s into %s", layer.digest, layer_dir)
            with self.cache.get_blob_stream(layer.digest) as f:
                extract_layer(f, layer_dir)


def checkout(
    cache: Cache,
    root: Path,
    image: Image,
    platform: Platform | None = None,
):
    """Extract every layer of the cached `image` below `root`"""
    Checkout(image, cache=cache, root=root, platform=platform).run()
