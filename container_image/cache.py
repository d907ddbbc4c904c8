"""
Content addressed cache of blobs and manifests.

Layout under the cache root:

    blobs/<algorithm>/<hex>                           blob content
    manifests/<repository>/tags/<tag>                 manifest reference
    manifests/<repository>/digests/<algorithm>/<hex>  manifest reference
    tmp/                                              partial downloads

A manifest reference is a small JSON document pointing into the blob store,
the manifest bytes themselves are stored once, as a blob.

Blobs are written to `tmp/` and renamed into place, readers never observe
a partially written blob and concurrent writers of one digest leave a
single complete copy behind.
"""

import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

from pydantic import BaseModel, ValidationError

from container_image.exceptions import CacheError, ParseError
from container_image.oci.descriptor import split_digest
from container_image.oci.image import Image
from container_image.oci.manifest import Manifest, parse_manifest

logger = logging.getLogger(__name__)

DIR_MODE = 0o700


class ManifestRef(BaseModel):
    """Pointer from an image reference into the blob store"""

    mediaType: str
    digest: str
    size: int


class Cache:
    def __init__(self, root: Path):
        self.root = Path(root)

    def __repr__(self):
        return f"Cache(root={str(self.root)!r})"

    @property
    def blobs_path(self) -> Path:
        return self.root / "blobs"

    @property
    def manifests_path(self) -> Path:
        return self.root / "manifests"

    @property
    def tmp_path(self) -> Path:
        return self.root / "tmp"

    def init(self):
        """Create the cache directories, existing directories are left untouched"""
        for path in (self.blobs_path, self.manifests_path, self.tmp_path):
            try:
                path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            except OSError as e:
                raise CacheError(f"Cannot create cache directory {path}: {e}") from e

    # Blobs

    def blob_path(self, digest: str) -> Path:
        try:
            algorithm, encoded = split_digest(digest)
        except ValueError as e:
            raise CacheError(str(e)) from None
        return self.blobs_path / algorithm / encoded

    def blob_exists(self, digest: str, size: int) -> bool:
        try:
            return self.blob_path(digest).stat().st_size == size
        except FileNotFoundError:
            return False

    def add_blob(self, digest: str, data: bytes | Iterable[bytes]):
        """Store `data` under `digest`

        `data` is either the full content or an iterable of chunks,
        if the iterable raises nothing is stored.
        """
        path = self.blob_path(digest)
        if isinstance(data, (bytes, bytearray)):
            data = (data,)
        self._write_atomic(path, data)
        logger.debug("Stored blob %s", digest)

    def get_blob_stream(self, digest: str) -> BinaryIO:
        path = self.blob_path(digest)
        try:
            return path.open("rb")
        except FileNotFoundError:
            raise CacheError(f"Blob {digest} is not in the cache") from None
        except OSError as e:
            raise CacheError(f"Cannot read blob {digest}: {e}") from e

    def get_blob_string(self, digest: str) -> bytes:
        with self.get_blob_stream(digest) as f:
            return f.read()

    def _write_atomic(self, path: Path, chunks: Iterable[bytes]):
        try:
            path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            self.tmp_path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.tmp_path, prefix=path.name[:16])
        except OSError as e:
            raise CacheError(f"Cannot write {path}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException as e:
            Path(tmp_name).unlink(missing_ok=True)
            if isinstance(e, OSError):
                raise CacheError(f"Cannot write {path}: {e}") from e
            raise

    # Manifests

    def manifest_path(self, image: Image) -> Path:
        base = self.manifests_path / image.name
        if image.digest is not None:
            return base / "digests" / self.blob_path(image.digest).relative_to(
                self.blobs_path
            )
        return base / "tags" / image.tag

    def manifest_exists(self, image: Image) -> bool:
        try:
            ref = self._manifest_ref(image)
        except CacheError:
            return False
        return self.blob_exists(ref.digest, ref.size)

    def get_manifest(self, image: Image) -> Manifest:
        ref = self._manifest_ref(image)
        data = self.get_blob_string(ref.digest)
        try:
            return parse_manifest(ref.mediaType, data)
        except ParseError as e:
            raise CacheError(f"Corrupted manifest for {image}: {e}") from e

    def add_manifest(self, image: Image, manifest: Manifest):
        descriptor = manifest.descriptor
        data = manifest.data
        if data is None:
            data = manifest.model_dump_json(exclude_none=True).encode("utf-8")
        self.add_blob(descriptor.digest, data)
        ref = ManifestRef(
            mediaType=descriptor.mediaType,
            digest=descriptor.digest,
            size=descriptor.size,
        )
        self._write_atomic(
            self.manifest_path(image), (ref.model_dump_json().encode("utf-8"),)
        )
        logger.debug("Stored manifest %s -> %s", image, descriptor.digest)

    def _manifest_ref(self, image: Image) -> ManifestRef:
        path = self.manifest_path(image)
        try:
            return ManifestRef.model_validate_json(path.read_bytes())
        except FileNotFoundError:
            raise CacheError(f"Manifest for {image} is not in the cache") from None
        except (OSError, ValidationError) as e:
            raise CacheError(f"Cannot read manifest for {image}: {e}") from e

    def list_images(self) -> list[Image]:
        """Return every image reference with a manifest in the cache"""
        images = []
        for path in self.manifests_path.rglob("*"):
            if not path.is_file():
                continue
            parts = path.relative_to(self.manifests_path).parts
            try:
                if len(parts) >= 3 and parts[-2] == "tags":
                    image = Image("/".join(parts[:-2]), tag=parts[-1])
                elif len(parts) >= 4 and parts[-3] == "digests":
                    digest = f"{parts[-2]}:{parts[-1]}"
                    image = Image("/".join(parts[:-3]), digest=digest)
                else:
                    continue
            except ParseError:
                logger.warning("Ignoring unexpected cache entry %s", path)
                continue
            images.append(image)
        return sorted(images, key=str)
