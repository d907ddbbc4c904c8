from pydantic import BaseModel, ConfigDict, Field

from container_image.exceptions import ParseError
from container_image.oci.descriptor import Descriptor, Document


class Platform(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    architecture: str
    os: str
    osVersion: str | None = Field(default=None, alias="os.version")
    osFeatures: list[str] | None = Field(default=None, alias="os.features")
    variant: str | None = None

    def __str__(self):
        return "/".join(p for p in (self.os, self.architecture, self.variant) if p)

    @classmethod
    def from_string(cls, value: str) -> "Platform":
        """Parse `os/architecture[/variant]`, e.g. `linux/arm64/v8`"""
        parts = value.strip().split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ParseError(
                f"Invalid platform {value!r}, expected os/architecture[/variant]"
            )
        os_name, architecture, *variant = parts
        return cls(
            os=os_name, architecture=architecture, variant=next(iter(variant), None)
        )

    def matches(self, other: "Platform | None") -> bool:
        """Exact match on architecture, os and variant"""
        if other is None:
            return False
        return (self.architecture, self.os, self.variant) == (
            other.architecture,
            other.os,
            other.variant,
        )


class PlatformDescriptor(Descriptor):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    platform: Platform | None = None


class _ManifestIndex(Document):
    manifests: list[PlatformDescriptor] = []
    schemaVersion: int = 2
    annotations: dict[str, str] | None = None

    def platforms(self) -> list[Platform]:
        return [d.platform for d in self.manifests if d.platform is not None]


class DockerManifestList(_ManifestIndex):
    """
    ref: https://distribution.github.io/distribution/spec/manifest-v2-2/#manifest-list
    """

    mediaType: str = "application/vnd.docker.distribution.manifest.list.v2+json"


class OCIIndex(_ManifestIndex):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    artifactType: str | None = None
    subject: Descriptor | None = None
    mediaType: str = "application/vnd.oci.image.index.v1+json"
