import threading

import httpx
import pytest
from conftest import REGISTRY_HOST, STORAGE_HOST, build_layer, digest_of, file_entry

from container_image.exceptions import (
    AuthenticationError,
    Cancelled,
    IntegrityError,
    ParseError,
    ProtocolError,
)
from container_image.oci.client import MANIFEST_ACCEPT, Client
from container_image.oci.descriptor import Descriptor
from container_image.oci.image import Image
from container_image.oci.manifest import DOCKER_MANIFEST

IMAGE = Image("library/alpine", tag="latest")


def make_client(config, handler) -> Client:
    return Client(config=config, transport=httpx.MockTransport(handler))


def test_get_token(client, registry):
    assert client.get_token(IMAGE) == "token-1"

    request = registry.requests[0]
    assert request.url.params["service"] == REGISTRY_HOST
    assert request.url.params["scope"] == "repository:library/alpine:pull"
    assert "Authorization" not in request.headers


def test_get_token_access_token_field(config):
    def handler(request):
        return httpx.Response(200, json={"access_token": "secret"})

    with make_client(config, handler) as client:
        assert client.get_token(IMAGE) == "secret"


@pytest.mark.parametrize("body", [b"not json", b'{"expires_in": 60}', b"[]"])
def test_get_token_invalid(config, body):
    def handler(request):
        return httpx.Response(
            200, content=body, headers={"Content-Type": "application/json"}
        )

    with make_client(config, handler) as client, pytest.raises(ParseError):
        client.get_token(IMAGE)


def test_get_manifest(client, registry):
    data = registry.add_image("library/alpine", "latest", [build_layer()])

    media_type, stream = client.get_manifest(IMAGE, token="token-1")
    with stream:
        assert stream.read() == data
    assert media_type == DOCKER_MANIFEST

    request = registry.requests[-1]
    assert request.url.path == "/v2/library/alpine/manifests/latest"
    assert request.headers["Authorization"] == "Bearer token-1"
    assert tuple(request.headers.get_list("Accept")) == MANIFEST_ACCEPT


def test_get_manifest_by_digest_mismatch(client, registry):
    data = registry.add_image("library/alpine", "latest", [build_layer()])
    other = "sha256:" + "f" * 64
    registry.manifests[("library/alpine", other)] = (DOCKER_MANIFEST, data)

    with pytest.raises(IntegrityError):
        client.get_manifest(IMAGE.with_digest(other), token="token-1")


def test_get_blob(client, registry):
    layer = build_layer(file_entry("etc/hostname", b"alpine\n"))
    descriptor = Descriptor.model_validate(registry.add_blob(layer))
    received = []

    with client.get_blob(
        IMAGE, descriptor, token="token-1", progress=received.append
    ) as stream:
        assert b"".join(stream) == layer
    assert sum(received) == len(layer)


def test_get_blob_redirect(client, registry):
    """A temporary redirect is followed with the same token"""
    registry.redirect_blobs = True
    layer = build_layer(file_entry("a", b"a"))
    descriptor = Descriptor.model_validate(registry.add_blob(layer))

    with client.get_blob(IMAGE, descriptor, token="token-1") as stream:
        assert stream.read() == layer

    first, second = registry.requests
    assert first.url.host == REGISTRY_HOST
    assert second.url.host == STORAGE_HOST
    assert second.headers["Authorization"] == "Bearer token-1"


def mirror(registry, path: str | None = None):
    """Redirect every registry request to the same path on a mirror host"""

    def handler(request):
        if request.url.host == REGISTRY_HOST:
            location = f"https://mirror.test{path or request.url.path}"
            return httpx.Response(307, headers={"Location": location})
        return registry.handler(request)

    return handler


def test_get_manifest_redirect(config, registry):
    """A redirected manifest reads the same as one served directly"""
    data = registry.add_image("library/alpine", "latest", [build_layer()])
    image = IMAGE.with_digest(digest_of(data))

    with make_client(config, registry.handler) as client:
        direct_type, stream = client.get_manifest(image, token="token-1")
        with stream:
            direct = stream.read()
    with make_client(config, mirror(registry)) as client:
        media_type, stream = client.get_manifest(image, token="token-1")
        with stream:
            redirected = stream.read()

    assert (media_type, redirected) == (direct_type, direct) == (DOCKER_MANIFEST, data)
    request = registry.requests[-1]
    assert request.url.host == "mirror.test"
    assert request.headers["Authorization"] == "Bearer token-1"
    assert tuple(request.headers.get_list("Accept")) == MANIFEST_ACCEPT


def test_get_manifest_redirect_digest_mismatch(config, registry):
    data = registry.add_image("library/alpine", "latest", [build_layer()])
    registry.add_image("library/alpine", "stale", [build_layer(file_entry("a"))])
    image = IMAGE.with_digest(digest_of(data))

    handler = mirror(registry, "/v2/library/alpine/manifests/stale")
    with make_client(config, handler) as client, pytest.raises(IntegrityError):
        client.get_manifest(image, token="token-1")


def test_redirect_without_location(config):
    def handler(request):
        return httpx.Response(307)

    with make_client(config, handler) as client, pytest.raises(ProtocolError) as e:
        client.get("https://registry.test/v2/")
    assert e.value.status_code == 307


def test_too_many_redirects(config):
    def handler(request):
        return httpx.Response(307, headers={"Location": "/loop"})

    with make_client(config, handler) as client, pytest.raises(ProtocolError):
        client.get("https://registry.test/v2/")


@pytest.mark.parametrize("status_code", [301, 302, 308])
def test_other_redirects_are_errors(config, status_code):
    def handler(request):
        return httpx.Response(status_code, headers={"Location": "/elsewhere"})

    with make_client(config, handler) as client, pytest.raises(ProtocolError) as e:
        client.get("https://registry.test/v2/")
    assert e.value.status_code == status_code


def test_unauthorized(client, registry):
    registry.rejected.add("token-1")
    registry.add_image("library/alpine", "latest", [build_layer()])

    with pytest.raises(AuthenticationError) as e:
        client.get_manifest(IMAGE, token="token-1")
    assert e.value.status_code == 401
    assert "UNAUTHORIZED" in e.value.body


def test_not_found(client):
    with pytest.raises(ProtocolError) as e:
        client.get_manifest(IMAGE, token="token-1")
    assert e.value.status_code == 404
    assert not isinstance(e.value, AuthenticationError)


def test_transport_error(config):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(config, handler) as client, pytest.raises(ProtocolError):
        client.get_token(IMAGE)


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Content-Type": "not a media type"},
        {"Content-Type": "application/json", "Docker-Content-Digest": "sha256"},
    ],
)
def test_invalid_headers(config, headers):
    def handler(request):
        response = httpx.Response(200, content=b"{}")
        response.headers.pop("Content-Type", None)
        response.headers.update(headers)
        return response

    with make_client(config, handler) as client, pytest.raises(ProtocolError):
        client.get("https://registry.test/v2/")


def test_content_type_parameters(config):
    def handler(request):
        return httpx.Response(
            200,
            content=b"{}",
            headers={"Content-Type": "Application/JSON; charset=utf-8"},
        )

    with make_client(config, handler) as client:
        response = client.get("https://registry.test/v2/")
        response.body.close()
    assert response.content_type == "application/json"
    assert response.content_length == 2


def test_blob_length_header_mismatch(client, registry):
    layer = build_layer()
    descriptor = Descriptor.model_validate(registry.add_blob(layer))
    descriptor.size += 1

    with pytest.raises(IntegrityError):
        client.get_blob(IMAGE, descriptor, token="token-1")


def test_blob_digest_header_mismatch(config):
    data = b"layer"

    def handler(request):
        return httpx.Response(
            200,
            content=data,
            headers={
                "Content-Type": "application/octet-stream",
                "Docker-Content-Digest": digest_of(b"other"),
            },
        )

    descriptor = Descriptor(
        mediaType="application/octet-stream", digest=digest_of(data), size=len(data)
    )
    with make_client(config, handler) as client, pytest.raises(IntegrityError):
        client.get_blob(IMAGE, descriptor, token="token-1")


def test_blob_body_mismatch(client, registry):
    """A corrupted body is detected once the stream is consumed"""
    layer = build_layer(file_entry("a", b"a"))
    descriptor = Descriptor.model_validate(registry.add_blob(layer))
    registry.corrupt.add(descriptor.digest)

    stream = client.get_blob(IMAGE, descriptor, token="token-1")
    with pytest.raises(IntegrityError):
        stream.read()


def test_blob_cancelled(client, registry):
    layer = build_layer(file_entry("a", b"a"))
    descriptor = Descriptor.model_validate(registry.add_blob(layer))
    cancel = threading.Event()
    cancel.set()

    stream = client.get_blob(IMAGE, descriptor, token="token-1", cancel=cancel)
    with pytest.raises(Cancelled):
        stream.read()
