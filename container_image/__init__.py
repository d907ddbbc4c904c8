"""Container image puller

Fetches images from a registry speaking the distribution API into a local,
content addressed cache and checks their layers out onto disk.
"""

import logging

from container_image.cache import Cache
from container_image.checkout import checkout
from container_image.config import Config
from container_image.exceptions import ContainerImageError
from container_image.fetch import fetch
from container_image.oci import Client, Image, Platform

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def open_cache(config: Config) -> Cache:
    """Return the initialized cache configured by `config`"""
    cache = Cache(config.cache_dir)
    cache.init()
    logger.debug("Using %r", cache)
    return cache


def list_images(cache: Cache) -> list[Image]:
    """List the images with a manifest in the cache"""
    return cache.list_images()


__all__ = [
    "Cache",
    "Client",
    "Config",
    "ContainerImageError",
    "Image",
    "Platform",
    "checkout",
    "fetch",
    "list_images",
    "open_cache",
]
