"""
Runtime configuration.

Values are passed explicitly to the registry client and the cache,
`Config.from_env()` builds one from environment variables:

    CONTAINER_IMAGE_REGISTRY: Registry base URL. Default: https://registry-1.docker.io
    CONTAINER_IMAGE_AUTH_URL: Token service base URL. Default: https://auth.docker.io
    CONTAINER_IMAGE_AUTH_SERVICE: Token service name. Default: registry.docker.io
    CONTAINER_IMAGE_CACHE: Cache root. Default: $XDG_CACHE_HOME/container-image
    CONTAINER_IMAGE_TIMEOUT: HTTP timeout in seconds. Default: 30
    CONTAINER_IMAGE_MAX_WORKERS: Concurrent tasks per scope. Default: 8
"""

import os
from pathlib import Path
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, Field, field_validator

APP_NAME = "container-image"
DOCKER_HUB = "registry-1.docker.io"


def default_cache_dir() -> Path:
    xdg_cache = os.getenv("XDG_CACHE_HOME") or Path.home() / ".cache"
    return Path(xdg_cache) / APP_NAME


def _clean_url(url: str) -> str:
    if "://" not in url:
        url = f"https://{url}"
    parts = urlparse(url)
    if parts.netloc == "docker.io":
        parts = parts._replace(netloc=DOCKER_HUB)
    return urlunparse(parts).rstrip("/")


class Config(BaseModel):
    registry_url: str = f"https://{DOCKER_HUB}"
    auth_url: str = "https://auth.docker.io"
    auth_service: str = "registry.docker.io"
    cache_dir: Path = Field(default_factory=default_cache_dir)
    verify: bool = True
    timeout: float = 30.0
    max_workers: int = Field(default=8, ge=1)
    max_connections: int = Field(default=8, ge=1)
    refresh_token: bool = True

    @field_validator("registry_url", "auth_url")
    @classmethod
    def clean_url(cls, value: str) -> str:
        return _clean_url(value)

    @property
    def is_docker_hub(self) -> bool:
        return urlparse(self.registry_url).netloc == DOCKER_HUB

    @property
    def namespace(self) -> str:
        """Namespace for single component image names"""
        return "library" if self.is_docker_hub else ""

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """Build a config from the environment, `overrides` set to None are ignored"""
        env = {
            "registry_url": os.getenv("CONTAINER_IMAGE_REGISTRY"),
            "auth_url": os.getenv("CONTAINER_IMAGE_AUTH_URL"),
            "auth_service": os.getenv("CONTAINER_IMAGE_AUTH_SERVICE"),
            "cache_dir": os.getenv("CONTAINER_IMAGE_CACHE"),
            "timeout": os.getenv("CONTAINER_IMAGE_TIMEOUT"),
            "max_workers": os.getenv("CONTAINER_IMAGE_MAX_WORKERS"),
        }
        values = {k: v for k, v in (env | overrides).items() if v is not None}
        return cls.model_validate(values)
