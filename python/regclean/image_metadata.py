"""Cache-backed lookup of image creation time and size"""

import logging
from typing import Optional

from regclean.metadata_cache import CacheError, ImageMetadata, MetadataCache

logger = logging.getLogger(__name__)


class ImageMetadataService:
    """Look up ImageMetadata, consulting the cache before the registry.

    Cache failures (lock timeout, corrupt entry) are logged and treated as
    misses; the registry answer is then written back. Registry failures
    propagate so callers can decide what an unknown age means.
    """

    def __init__(self, registry, cache: Optional[MetadataCache] = None):
        self.registry = registry
        self.cache = cache
        self.hits = 0
        self.misses = 0

    def _cached(self, key: str) -> Optional[ImageMetadata]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Ignoring cache entry {key}: {e}")
            return None

    def _store(self, key: str, metadata: ImageMetadata) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(key, metadata)
        except CacheError as e:
            logger.warning(f"Unable to cache metadata for {key}: {e}")

    def lookup(self, repository: str, tag: str) -> ImageMetadata:
        """Return metadata for repository:tag

        Raises:
            RegistryError: when the entry is not cached and the registry lookup fails
        """
        key = f"{repository}:{tag}"
        metadata = self._cached(key)
        if metadata is not None:
            self.hits += 1
            logger.debug(f"Cache hit for {key}")
            return metadata

        self.misses += 1
        logger.debug(f"Cache miss for {key}, querying registry")
        metadata = self.registry.fetch_manifest_metadata(repository, tag).image_metadata
        self._store(key, metadata)
        return metadata

    __call__ = lookup
