from pydantic import ValidationError

from container_image.exceptions import ParseError
from container_image.oci.descriptor import Descriptor, Document
from container_image.oci.index import DockerManifestList, OCIIndex

DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"


class _ImageManifest(Document):
    config: Descriptor
    layers: list[Descriptor] = []
    schemaVersion: int = 2
    annotations: dict[str, str] | None = None


class DockerManifest(_ImageManifest):
    """
    ref: https://distribution.github.io/distribution/spec/manifest-v2-2/#image-manifest
    """

    mediaType: str = DOCKER_MANIFEST


class OCIManifest(_ImageManifest):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    artifactType: str | None = None
    subject: Descriptor | None = None
    mediaType: str = OCI_MANIFEST


Manifest = DockerManifest | DockerManifestList | OCIManifest | OCIIndex

MANIFEST_TYPES: dict[str, type[Manifest]] = {
    DOCKER_MANIFEST: DockerManifest,
    DOCKER_MANIFEST_LIST: DockerManifestList,
    OCI_MANIFEST: OCIManifest,
    OCI_INDEX: OCIIndex,
}


def parse_manifest(media_type: str, data: bytes) -> Manifest:
    """Parse `data` as the manifest kind announced by `media_type`

    The raw bytes are kept on the result so the manifest can be stored
    and addressed by its original digest.
    """
    try:
        cls = MANIFEST_TYPES[media_type]
    except KeyError:
        raise ParseError(f"Unsupported manifest media type: {media_type}") from None
    try:
        manifest = cls.model_validate_json(data)
    except ValidationError as e:
        raise ParseError(f"Invalid {media_type} document: {e}") from e
    manifest.mediaType = media_type
    manifest.data = data
    return manifest
