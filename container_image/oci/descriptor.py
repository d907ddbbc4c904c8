import hashlib
import re
from functools import cached_property

from pydantic import BaseModel, Field

DIGEST_PATTERN = re.compile(
    r"^(?P<algorithm>[a-z0-9]+(?:[.+_-][a-z0-9]+)*):(?P<hex>[a-zA-Z0-9=_-]+)$"
)


def split_digest(digest: str) -> tuple[str, str]:
    """Split `algorithm:hex` into its two parts, raising ValueError if malformed"""
    match = DIGEST_PATTERN.match(digest)
    if match is None:
        raise ValueError(f"Invalid digest: {digest!r}")
    return match["algorithm"], match["hex"]


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def short_digest(digest: str) -> str:
    return digest.split(":", 1)[-1][:12]


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    mediaType: str
    digest: str
    size: int
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None

    @property
    def short_digest(self) -> str:
        return short_digest(self.digest)


class Document(BaseModel):
    """A JSON document stored as a blob, e.g. a manifest or an index

    `data` holds the bytes as served by the registry, the digest of a
    document is always computed over those bytes.
    """

    mediaType: str
    data: bytes | None = Field(exclude=True, default=None, repr=False)

    @cached_property
    def descriptor(self) -> Descriptor:
        data = self.data
        if data is None:
            data = self.model_dump_json(exclude_none=True).encode("utf-8")
        return Descriptor(
            mediaType=self.mediaType,
            digest=compute_digest(data),
            size=len(data),
        )
