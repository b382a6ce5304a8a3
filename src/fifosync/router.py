"""Partition routing over the consistent-hash ring.

A ring is a list of slots sorted ascending by slice. Each slot owns the
keyspace interval `(slice, next_slice]`; the highest slot additionally owns
the wrap-around range `[0, lowest_slice]`.
"""
import random
from dataclasses import dataclass

import xxhash

RING_SIZE = 2 ** 32


@dataclass(frozen=True, order=True)
class Slot:
    """Ring entry: a uint32 boundary owned by a queue.
    """
    slice: int
    queue: str

    def encode(self) -> str:
        """Legacy `<slice>#<queue>` record.
        """
        return f'{self.slice}#{self.queue}'

    @classmethod
    def decode(cls, record: str) -> 'Slot':
        slice_, queue = record.split('#', 1)
        return cls(int(slice_), queue)


def compute_index(key: str) -> int:
    """Hash routing key to a ring index in [0, 2^32).

    >>> compute_index('') == xxhash.xxh32_intdigest(b'')
    True
    """
    return xxhash.xxh32_intdigest(str(key).encode())


def route(ring: list[Slot], key: str, pending_queue: str) -> str:
    """Map routing key to its destination queue for a ring snapshot.

    Args:
        ring: Slots sorted ascending by slice
        key: Producer supplied routing key
        pending_queue: Destination used while the ring is empty

    Returns
        Queue name owning the key
    """
    return route_index(ring, compute_index(key), pending_queue)


def route_index(ring: list[Slot], index: int, pending_queue: str) -> str:
    """Map a precomputed ring index to its destination queue.

    >>> ring = [Slot(100, 'A'), Slot(5000, 'B'), Slot(90000, 'C')]
    >>> [route_index(ring, i, 'p') for i in (200, 6000, 95000, 50)]
    ['A', 'B', 'C', 'C']
    """
    if not ring:
        return pending_queue

    for slot in reversed(ring):
        if slot.slice < index:
            return slot.queue

    return ring[-1].queue


def generate_slice() -> int:
    """Random ring point, uniform over the keyspace.
    """
    return xxhash.xxh32_intdigest(str(random.randint(0, RING_SIZE)).encode())


def split_neighbor(ring: list[Slot], new_slice: int) -> tuple[int | None, str | None]:
    """Locate where a new slice goes and whose range it shrinks.

    Returns
        Tuple of (index of the slot to insert before or None to append,
        queue whose ownership range is split or None for an empty ring)
    """
    if not ring:
        return None, None

    prev_queue = ring[-1].queue
    for i, slot in enumerate(ring):
        if new_slice < slot.slice:
            return i, prev_queue
        prev_queue = slot.queue

    return None, ring[-1].queue


if __name__ == '__main__':
    __import__('doctest').testmod()
