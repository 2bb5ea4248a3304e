"""Object-caching slab allocator over a simulated kernel address space.

Objects handed out by a cache are integer addresses.  Each slab owns a
contiguous address range, a byte buffer for its objects and a LIFO free
list.  Slabs move between the full, partial and free lists of their cache
as objects are allocated and released.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

PAGE_SIZE = 4096
CACHE_LINE_SIZE = 64
WORD_SIZE = 4
SLAB_HEADER_SIZE = 40
SLAB_NUM_COLORS = 8
SLAB_BATCH_COUNT = 16
SLAB_MAX_ORDER = 5
KMALLOC_MAX_SIZE = PAGE_SIZE * 2

SLAB_CACHE_DMA = 2
SLAB_CACHE_DESTROY = 4
SLAB_PANIC = 8
SLAB_DEBUG = 1
SLAB_STATS = 2
SLAB_RED_ZONE = 4
SLAB_POISON = 8
SLAB_HWCACHE_ALIGN = 16

SLAB_RED_MAGIC1 = 0x5A5A5A5A
SLAB_RED_MAGIC2 = 0xA5A5A5A5
SLAB_POISON_BYTE = 0x5A
SLAB_POISON_END = 0xA5

KMALLOC_SIZES = (8, 16, 32, 64, 128, 256, 512, 1024, 2048, 4096, 8192, 16384)
_KMALLOC_SEARCH_LIMIT = 11
_ARENA_BASE = 0x00100000

ObjectHook = Callable[[memoryview], None]


class SlabError(Exception):
    """Raised when a cache cannot be created or an object is misused."""


def calculate_objects(order: int, size: int, align: int, flags: int) -> int:
    """Number of objects of ``size`` bytes that a slab of ``2**order`` pages holds."""
    usable = PAGE_SIZE * (1 << order) - SLAB_HEADER_SIZE
    objects = usable // size
    if flags & SLAB_HWCACHE_ALIGN and usable % size >= WORD_SIZE:
        objects += 1
    return objects


def calculate_colours(object_size: int, flags: int) -> tuple[int, int]:
    """Return ``(colour, colour_off)`` for cache-line colouring."""
    if flags & SLAB_HWCACHE_ALIGN:
        off = object_size % CACHE_LINE_SIZE
        if off:
            return CACHE_LINE_SIZE // off, off
    return 0, 0


def _round_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


@dataclass
class _CacheStats:
    allocated: int = 0
    freed: int = 0
    errors: int = 0
    max_active: int = 0
    active: int = 0


class _Arena:
    """Hands out address ranges for slabs and maps addresses back to slabs."""

    def __init__(self, base: int = _ARENA_BASE) -> None:
        self._next = base
        self._bases: List[int] = []
        self._slabs: dict[int, Slab] = {}

    def reserve(self, length: int) -> int:
        base = self._next
        self._next += _round_up(length, PAGE_SIZE)
        return base

    def attach(self, slab: Slab) -> None:
        bisect.insort(self._bases, slab.base)
        self._slabs[slab.base] = slab

    def detach(self, slab: Slab) -> None:
        self._bases.remove(slab.base)
        del self._slabs[slab.base]

    def find(self, address: int) -> Optional[Slab]:
        pos = bisect.bisect_right(self._bases, address) - 1
        if pos < 0:
            return None
        slab = self._slabs[self._bases[pos]]
        return slab if address < slab.end else None


class Slab:
    """A run of equally sized objects carved from one address range."""

    def __init__(self, cache: KmemCache, base: int, span: int) -> None:
        self.cache = cache
        self.base = base
        self.colouroff = cache.colour_off
        self.s_mem = base + SLAB_HEADER_SIZE + self.colouroff
        self.end = base + span
        self.objects = cache.num
        self.inuse = 0
        self.magic = SLAB_RED_MAGIC1
        self.data = bytearray(self.objects * cache.object_size)
        self.freelist: List[int] = list(range(self.objects - 1, -1, -1))
        self._allocated = [False] * self.objects

    def _address(self, index: int) -> int:
        return self.s_mem + index * self.cache.object_size

    def _index_of(self, address: int) -> Optional[int]:
        offset = address - self.s_mem
        size = self.cache.object_size
        if offset < 0 or offset % size:
            return None
        index = offset // size
        return index if index < self.objects else None

    def _view(self, index: int) -> memoryview:
        size = self.cache.object_size
        return memoryview(self.data)[index * size:(index + 1) * size]

    def _take(self) -> int:
        index = self.freelist.pop()
        self._allocated[index] = True
        self.inuse += 1
        return index

    def _give_back(self, index: int) -> None:
        self._allocated[index] = False
        self.freelist.append(index)
        self.inuse -= 1


class KmemCache:
    """A cache of equally sized objects backed by slabs."""

    def __init__(
        self,
        owner: SlabAllocator,
        name: str,
        size: int,
        align: int = 0,
        flags: int = 0,
        ctor: Optional[ObjectHook] = None,
        dtor: Optional[ObjectHook] = None,
    ) -> None:
        if not name or size <= 0 or size > owner.max_size:
            raise SlabError(f"invalid cache parameters: name={name!r}, size={size}")
        self._owner = owner
        self.name = name
        self.object_size = size
        self.align = align
        self.flags = flags
        self.ctor = ctor
        self.dtor = dtor
        self.slabs_full: List[Slab] = []
        self.slabs_partial: List[Slab] = []
        self.slabs_free: List[Slab] = []
        self.gfporder = 0
        self.num = calculate_objects(self.gfporder, size, align, flags)
        self.colour, self.colour_off = calculate_colours(size, flags)
        self.colour_next = 0
        self.batchcount = SLAB_BATCH_COUNT
        self.limit = self.num * 2
        self.stats = _CacheStats()
        self._destroyed = False
        if self.num == 0:
            raise SlabError(f"cache '{name}': no object of {size} bytes fits in a slab")

    def _check_alive(self) -> None:
        if self._destroyed:
            raise SlabError(f"cache '{self.name}' has been destroyed")

    def _grow(self) -> Slab:
        needed = SLAB_HEADER_SIZE + self.colour_off + self.num * self.object_size
        span = max(PAGE_SIZE << self.gfporder, _round_up(needed, PAGE_SIZE))
        slab = Slab(self, self._owner._arena.reserve(span), span)
        if self.flags & SLAB_POISON:
            slab.data[:] = bytes([SLAB_POISON_BYTE]) * len(slab.data)
        if self.ctor is not None:
            for index in range(slab.objects):
                self.ctor(slab._view(index))
        self.stats.allocated += slab.objects
        self._owner._arena.attach(slab)
        self.slabs_free.insert(0, slab)
        return slab

    def _release_slab(self, slab: Slab) -> None:
        if self.dtor is not None:
            for index in range(slab.objects):
                self.dtor(slab._view(index))
        self._owner._arena.detach(slab)
        self.stats.freed += slab.objects

    @staticmethod
    def _move(slab: Slab, source: List[Slab], target: List[Slab]) -> None:
        source.remove(slab)
        target.insert(0, slab)

    def _slab_of(self, obj: int) -> tuple[Slab, int]:
        slab = self._owner._arena.find(obj)
        if slab is None or slab.magic != SLAB_RED_MAGIC1 or slab.cache is not self:
            raise SlabError("Invalid object passed to kmem_cache_free")
        index = slab._index_of(obj)
        if index is None or not slab._allocated[index]:
            raise SlabError("Invalid object passed to kmem_cache_free")
        return slab, index

    def alloc(self) -> int:
        """Allocate one object and return its address."""
        self._check_alive()
        if self.slabs_partial:
            slab, source = self.slabs_partial[0], self.slabs_partial
        elif self.slabs_free:
            slab, source = self.slabs_free[0], self.slabs_free
        else:
            slab, source = self._grow(), self.slabs_free
        if not slab.freelist:
            self.stats.errors += 1
            raise SlabError(f"cache '{self.name}': slab has no free object")
        index = slab._take()
        if slab.inuse == self.num:
            self._move(slab, source, self.slabs_full)
        elif slab.inuse == 1:
            self._move(slab, source, self.slabs_partial)
        if self.flags & SLAB_POISON:
            slab._view(index)[:] = bytes(self.object_size)
        self.stats.active += 1
        self.stats.max_active = max(self.stats.max_active, self.stats.active)
        return slab._address(index)

    def free(self, obj: Optional[int]) -> None:
        """Return an object to the cache."""
        self._check_alive()
        if obj is None:
            return
        slab, index = self._slab_of(obj)
        if self.flags & SLAB_POISON:
            slab._view(index)[:] = bytes([SLAB_POISON_BYTE]) * self.object_size
        was_full = slab.inuse == self.num
        slab._give_back(index)
        source = self.slabs_full if was_full else self.slabs_partial
        if slab.inuse == 0:
            self._move(slab, source, self.slabs_free)
        elif slab.inuse == self.num - 1:
            self._move(slab, source, self.slabs_partial)
        self.stats.active -= 1

    def alloc_bulk(self, count: int) -> List[int]:
        """Allocate ``count`` objects; on failure release those already taken."""
        objs: List[int] = []
        try:
            for _ in range(count):
                objs.append(self.alloc())
        except SlabError:
            for obj in reversed(objs):
                self.free(obj)
            raise
        return objs

    def free_bulk(self, objs) -> None:
        """Free every object in ``objs``."""
        for obj in objs:
            self.free(obj)

    def memory(self, obj: int) -> memoryview:
        """Writable view of an allocated object's bytes."""
        self._check_alive()
        slab, index = self._slab_of(obj)
        return slab._view(index)

    def destroy(self) -> None:
        """Release every slab and remove the cache from its allocator."""
        self._check_alive()
        for slabs in (self.slabs_full, self.slabs_partial, self.slabs_free):
            for slab in list(slabs):
                self._release_slab(slab)
            slabs.clear()
        self._destroyed = True
        self._owner._forget(self)
        logger.info("Destroyed cache '%s'", self.name)

    def info(self) -> str:
        """Human-readable summary of the cache and its statistics."""
        return (
            f"Cache: {self.name}\n"
            f"  Object size: {self.object_size}\n"
            f"  Objects per slab: {self.num}\n"
            f"  Active objects: {self.stats.active}\n"
            f"  Max active: {self.stats.max_active}\n"
            f"  Total allocated: {self.stats.allocated}\n"
            f"  Total freed: {self.stats.freed}\n"
            f"  Errors: {self.stats.errors}\n"
        )


class SlabAllocator:
    """Owns the cache chain, the address space and the kmalloc size classes."""

    def __init__(self, max_size: int = KMALLOC_MAX_SIZE) -> None:
        self.max_size = max_size
        self.caches: List[KmemCache] = []
        self.kmalloc_caches: List[Optional[KmemCache]] = [None] * len(KMALLOC_SIZES)
        self._arena = _Arena()

    def create_cache(
        self,
        name: str,
        size: int,
        align: int = 0,
        flags: int = 0,
        ctor: Optional[ObjectHook] = None,
        dtor: Optional[ObjectHook] = None,
    ) -> KmemCache:
        """Create a cache and put it at the head of the chain."""
        cache = KmemCache(self, name, size, align, flags, ctor, dtor)
        self.caches.insert(0, cache)
        logger.info(
            "Created cache '%s': objsize=%d, objs=%d, order=%d",
            name, size, cache.num, cache.gfporder,
        )
        return cache

    def destroy_cache(self, cache: KmemCache) -> None:
        """Destroy ``cache`` and drop it from the chain."""
        cache.destroy()

    def _forget(self, cache: KmemCache) -> None:
        if cache in self.caches:
            self.caches.remove(cache)
        self.kmalloc_caches = [None if c is cache else c for c in self.kmalloc_caches]

    def init_kmalloc_caches(self) -> None:
        """Create the ``kmalloc-N`` size-class caches."""
        logger.info("Initializing SLAB allocator")
        for slot, size in enumerate(KMALLOC_SIZES):
            try:
                self.kmalloc_caches[slot] = self.create_cache(
                    f"kmalloc-{size}", size, 0, SLAB_HWCACHE_ALIGN
                )
            except SlabError as exc:
                raise SlabError("Failed to create kmalloc cache") from exc
        logger.info("SLAB allocator initialized successfully")

    def kmalloc(self, size: int) -> Optional[int]:
        """Allocate from the smallest size class that fits; ``None`` for size 0."""
        if size < 0:
            raise ValueError("size must not be negative")
        if size == 0:
            return None
        for cache in self.kmalloc_caches[:_KMALLOC_SEARCH_LIMIT]:
            if cache is None:
                break
            if size <= cache.object_size:
                return cache.alloc()
        raise SlabError(f"no kmalloc cache for {size} bytes")

    def kfree(self, obj: Optional[int]) -> None:
        """Free an object returned by any cache of this allocator."""
        if obj is None:
            return
        slab = self._arena.find(obj)
        if slab is None:
            raise SlabError("Invalid object passed to kmem_cache_free")
        slab.cache.free(obj)

    def debug_info(self) -> str:
        """Summary of every cache in the chain, newest first."""
        return "\n=== SLAB Allocator Debug Info ===\n" + "".join(
            cache.info() for cache in self.caches
        )