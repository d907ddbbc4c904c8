from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from container_image.config import Config
from container_image.exceptions import (
    AuthenticationError,
    Cancelled,
    IntegrityError,
    ParseError,
    ProtocolError,
)
from container_image.oci.descriptor import Descriptor, split_digest
from container_image.oci.image import Image
from container_image.oci.manifest import (
    DOCKER_MANIFEST,
    DOCKER_MANIFEST_LIST,
    DOCKER_MANIFEST_V1,
    OCI_INDEX,
    OCI_MANIFEST,
)

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = (
    DOCKER_MANIFEST,
    DOCKER_MANIFEST_LIST,
    DOCKER_MANIFEST_V1,
    OCI_MANIFEST,
    OCI_INDEX,
)
MEDIA_TYPE_PATTERN = re.compile(r"^[\w.+-]+/[\w.+-]+$")
CHUNK_SIZE = 64 * 1024
MAX_REDIRECTS = 10


class TokenResponse(BaseModel):
    """
    ref: https://distribution.github.io/distribution/spec/auth/token/#token-response-fields
    """

    token: str = Field(validation_alias=AliasChoices("token", "access_token"))
    expires_in: int | None = None


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


@dataclass(slots=True)
class Response:
    url: str
    content_type: str
    content_length: int | None
    content_digest: str | None
    body: httpx.Response


class BlobStream:
    """Iterate over a response body while checking its size and digest

    The checks run as the last chunk is consumed, a mismatch raises
    `IntegrityError` from the consuming loop so partial content is never
    mistaken for a complete blob.
    """

    def __init__(
        self,
        response: httpx.Response,
        length: int,
        digest: str | None = None,
        cancel: threading.Event | None = None,
        progress: Callable[[int], None] | None = None,
    ):
        self.response = response
        self.length = length
        self.digest = digest
        self.cancel = cancel
        self.progress = progress
        self.algorithm = "sha256"
        if digest is not None:
            self.algorithm, _ = split_digest(digest)
            if self.algorithm not in hashlib.algorithms_available:
                response.close()
                raise IntegrityError(f"{digest}: unsupported digest algorithm")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __iter__(self) -> Iterator[bytes]:
        hasher = hashlib.new(self.algorithm)
        received = 0
        try:
            for chunk in self.response.iter_bytes(CHUNK_SIZE):
                if self.cancel is not None and self.cancel.is_set():
                    raise Cancelled(f"{self.response.url}: transfer cancelled")
                hasher.update(chunk)
                received += len(chunk)
                if received > self.length:
                    raise IntegrityError(
                        f"{self.response.url}: body exceeds {self.length} bytes"
                    )
                if self.progress is not None:
                    self.progress(len(chunk))
                yield chunk
        except httpx.TransportError as e:
            raise ProtocolError(f"{self.response.url}: {e}") from e
        finally:
            self.close()
        if received != self.length:
            raise IntegrityError(
                f"{self.response.url}: received {received} of {self.length} bytes"
            )
        actual = f"{self.algorithm}:{hasher.hexdigest()}"
        if self.digest is not None and actual != self.digest:
            raise IntegrityError(
                f"{self.response.url}: digest {actual} does not match {self.digest}"
            )

    def read(self) -> bytes:
        return b"".join(self)

    def close(self):
        self.response.close()


class Client:
    """Client for the pull side of the registry API."""

    def __init__(
        self,
        config: Config | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config or Config()
        self.transport = transport
        self._session = None
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def session(self) -> httpx.Client:
        with self._lock:
            if self._session is None:
                self._session = httpx.Client(
                    follow_redirects=False,
                    verify=self.config.verify,
                    timeout=self.config.timeout,
                    transport=self.transport,
                    headers={"Accept-Encoding": "identity"},
                )
            return self._session

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None

    def get(
        self,
        url: str,
        token: str | None = None,
        headers: list[tuple[str, str]] | None = None,
        redirects: int = 0,
    ) -> Response:
        """GET `url`, following temporary redirects with the same token and headers"""
        logger.debug("GET %s", url)
        request = self.session.build_request("GET", url, headers=headers)
        auth = BearerAuth(token) if token else None
        try:
            response = self.session.send(request, auth=auth, stream=True)
        except httpx.TransportError as e:
            raise ProtocolError(f"GET {url} failed: {e}", url=url) from e

        if response.status_code == httpx.codes.OK:
            return self._response(url, response)

        try:
            if response.status_code == httpx.codes.TEMPORARY_REDIRECT:
                location = response.headers.get("Location")
                if location is None:
                    raise ProtocolError(
                        f"{url}: redirect without location",
                        url=url,
                        status_code=response.status_code,
                    )
                if redirects >= MAX_REDIRECTS:
                    raise ProtocolError(f"{url}: too many redirects", url=url)
                return self.get(
                    urljoin(url, location),
                    token=token,
                    headers=headers,
                    redirects=redirects + 1,
                )
            body = response.read().decode("utf-8", errors="replace")
        finally:
            response.close()

        error = (
            AuthenticationError
            if response.status_code == httpx.codes.UNAUTHORIZED
            else ProtocolError
        )
        raise error(
            f"{url} error: {response.status_code} {response.reason_phrase}\n{body}",
            url=url,
            status_code=response.status_code,
            body=body,
        )

    @staticmethod
    def _response(url: str, response: httpx.Response) -> Response:
        headers = response.headers
        try:
            content_type = headers.get("Content-Type")
            if content_type is None:
                raise ProtocolError(f"{url}: missing content-type", url=url)
            media_type = content_type.split(";", 1)[0].strip().lower()
            if not MEDIA_TYPE_PATTERN.match(media_type):
                raise ProtocolError(
                    f"{url}: invalid content-type: {content_type}", url=url
                )

            content_length = headers.get("Content-Length")
            if content_length is not None:
                try:
                    content_length = int(content_length)
                except ValueError:
                    raise ProtocolError(
                        f"{url}: invalid content-length: {content_length}", url=url
                    ) from None

            content_digest = headers.get("Docker-Content-Digest")
            if content_digest is not None:
                try:
                    split_digest(content_digest)
                except ValueError:
                    raise ProtocolError(
                        f"{url}: invalid digest header: {content_digest}", url=url
                    ) from None
        except ProtocolError:
            response.close()
            raise

        return Response(
            url=url,
            content_type=media_type,
            content_length=content_length,
            content_digest=content_digest,
            body=response,
        )

    @staticmethod
    def _content_length(response: Response) -> int:
        if response.content_length is None:
            response.body.close()
            raise ProtocolError(
                f"{response.url}: missing content-length", url=response.url
            )
        return response.content_length

    def get_token(self, image: Image) -> str:
        """Request an anonymous pull token for the repository of `image`

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        url = (
            f"{self.config.auth_url}/token?service={self.config.auth_service}"
            f"&scope=repository:{image.name}:pull"
        )
        response = self.get(url)
        try:
            body = response.body.read()
        finally:
            response.body.close()
        try:
            return TokenResponse.model_validate_json(body).token
        except ValidationError as e:
            raise ParseError(f"{self.config.auth_url} parsing errors: {e}") from e

    def get_manifest(
        self,
        image: Image,
        token: str | None,
        cancel: threading.Event | None = None,
        progress: Callable[[int], None] | None = None,
    ) -> tuple[str, BlobStream]:
        """Return the negotiated media type and the manifest body

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-manifests
        """
        url = f"{self.config.registry_url}/v2/{image.name}/manifests/{image.reference}"
        headers = [("Accept", media_type) for media_type in MANIFEST_ACCEPT]
        response = self.get(url, token=token, headers=headers)
        length = self._content_length(response)
        digest = response.content_digest
        if image.digest is not None:
            if digest is not None and digest != image.digest:
                response.body.close()
                raise IntegrityError(
                    f"{url}: digest header {digest} does not match {image.digest}"
                )
            digest = image.digest
        stream = BlobStream(
            response.body,
            length=length,
            digest=digest,
            cancel=cancel,
            progress=progress,
        )
        return response.content_type, stream

    def get_blob(
        self,
        image: Image,
        descriptor: Descriptor,
        token: str | None,
        cancel: threading.Event | None = None,
        progress: Callable[[int], None] | None = None,
    ) -> BlobStream:
        """Return the body of the blob `descriptor` points to

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-blobs
        """
        url = f"{self.config.registry_url}/v2/{image.name}/blobs/{descriptor.digest}"
        response = self.get(url, token=token)
        length = self._content_length(response)
        if length != descriptor.size:
            response.body.close()
            raise IntegrityError(
                f"{url}: invalid length header {length}, expected {descriptor.size}"
            )
        if (
            response.content_digest is not None
            and response.content_digest != descriptor.digest
        ):
            response.body.close()
            raise IntegrityError(
                f"{url}: invalid digest header {response.content_digest}"
            )
        return BlobStream(
            response.body,
            length=length,
            digest=descriptor.digest,
            cancel=cancel,
            progress=progress,
        )
