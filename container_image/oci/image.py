import re
from dataclasses import dataclass

from container_image.exceptions import ParseError
from container_image.oci.descriptor import split_digest

DEFAULT_TAG = "latest"
_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
NAME_PATTERN = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
TAG_PATTERN = re.compile(r"^\w[\w.-]{0,127}$")


@dataclass(frozen=True, slots=True)
class Image:
    """Reference to an image in a repository, selected by tag or by digest

    ref: https://github.com/distribution/reference/blob/main/reference.go
    """

    name: str
    tag: str | None = None
    digest: str | None = None

    def __post_init__(self):
        if self.tag is not None and self.digest is not None:
            raise ParseError(
                f"{self.name}: a tag and a digest are mutually exclusive"
            )
        if self.tag is None and self.digest is None:
            object.__setattr__(self, "tag", DEFAULT_TAG)
        if not NAME_PATTERN.match(self.name):
            raise ParseError(f"Invalid repository name: {self.name!r}")
        if self.tag is not None and not TAG_PATTERN.match(self.tag):
            raise ParseError(f"Invalid tag: {self.tag!r}")
        if self.digest is not None:
            try:
                split_digest(self.digest)
            except ValueError as e:
                raise ParseError(str(e)) from None

    def __str__(self):
        if self.digest is not None:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"

    @property
    def reference(self) -> str:
        """The manifest reference used in `/v2/<name>/manifests/<reference>`"""
        return self.digest or self.tag

    def with_digest(self, digest: str) -> "Image":
        return Image(self.name, digest=digest)

    @classmethod
    def from_string(cls, value: str, namespace: str = "") -> "Image":
        """Parse `NAME[:TAG|@DIGEST]`

        Single component names are prefixed with `namespace`,
        Docker Hub keeps its official images under `library/`.
        """
        name, tag, digest = value.strip(), None, None
        if "@" in name:
            name, digest = name.split("@", 1)
        if ":" in name.rsplit("/", 1)[-1]:
            name, tag = name.rsplit(":", 1)
        if namespace and "/" not in name:
            name = f"{namespace}/{name}"
        return cls(name, tag=tag, digest=digest)
