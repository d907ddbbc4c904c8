"""Registry protocol client and image format models

ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md
ref: https://github.com/opencontainers/image-spec
"""

from container_image.oci.client import BlobStream, Client
from container_image.oci.descriptor import Descriptor
from container_image.oci.image import Image
from container_image.oci.index import (
    DockerManifestList,
    OCIIndex,
    Platform,
    PlatformDescriptor,
)
from container_image.oci.manifest import (
    DockerManifest,
    Manifest,
    OCIManifest,
    parse_manifest,
)

__all__ = [
    "BlobStream",
    "Client",
    "Descriptor",
    "DockerManifest",
    "DockerManifestList",
    "Image",
    "Manifest",
    "OCIIndex",
    "OCIManifest",
    "Platform",
    "PlatformDescriptor",
    "parse_manifest",
]
