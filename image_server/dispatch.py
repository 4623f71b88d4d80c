from __future__ import annotations

import logging

from common.types import CacheValue
from image_server.state import ServerState

log = logging.getLogger(__name__)


class ImageNotFound(LookupError):
    """No image could be served for this request."""


async def random_image(state: ServerState) -> CacheValue:
    """Uniformly random cached image. Concurrent callers share the read lock."""
    async with state.lock.read():
        image = state.cache.get_random()
    if image is None:
        raise ImageNotFound("Failed to retrieve a random image, perhaps no images are configured")
    return image


async def sequential_image(state: ServerState) -> CacheValue:
    """
    Next image in round-robin order.

    Holds the write lock across read-and-advance of the cursor so two
    concurrent callers never get the same slot. If the key at the cursor no
    longer has a value (e.g. it failed an integrity check) it is evicted and
    this call fails; the next call continues with the following key.
    """
    async with state.lock.write():
        if not state.order:
            raise ImageNotFound("No image sources configured")

        # cursor may be stale if keys were evicted since the last call
        index = state.cursor % len(state.order)
        key = state.order[index]
        state.cursor = (index + 1) % len(state.order)

        image = state.cache.get(key)
        if image is None:
            state.evict(key)
            # the following key shifted into this slot
            state.cursor = index
            raise ImageNotFound(f"Image not found in cache: {key.describe()}")
        return image
