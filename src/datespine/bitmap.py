"""
Per-security date bitmaps keyed by registry ordinal.

A ``DateBitmap`` is a fixed-capacity bit vector: bit ``i`` is set when the
security has at least one qualifying fact row on the date with ordinal
``i``. Bits are packed into a Python ``int`` so a union is a single
``|`` over ``capacity / 64`` machine words, and scanning set bits costs
one step per set bit.

Manifesto:
    - **Immutable:** Published bitmaps are shared by concurrent readers
    - **Grow, never shrink:** Capacity tracks the registry size
    - **Exact:** No false positives, no false negatives

Examples:
    >>> bm = DateBitmap.from_ordinals([0, 2], capacity=3)
    >>> list(bm.ordinals())
    [0, 2]
    >>> (bm | DateBitmap.from_ordinals([1], capacity=3)).count()
    3

Tags:
    bitmap, bitset, union, ordinal, datespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

WORD_BITS = 64


def iter_set_bits(bits: int) -> Iterator[int]:
    """Yield the positions of set bits in *bits*, lowest first."""
    while bits:
        low = bits & -bits
        yield low.bit_length() - 1
        bits ^= low


class DateBitmap:
    """Immutable bit vector with an explicit capacity (number of ordinals)."""

    __slots__ = ("_bits", "_capacity")

    def __init__(self, bits: int = 0, capacity: int = 0):
        if bits < 0:
            raise ValueError("bitmap bits must be non-negative")
        if capacity < 0:
            raise ValueError("bitmap capacity must be non-negative")
        if bits.bit_length() > capacity:
            raise ValueError(
                f"bit {bits.bit_length() - 1} set beyond capacity {capacity}"
            )
        self._bits = bits
        self._capacity = capacity

    @classmethod
    def empty(cls, capacity: int = 0) -> DateBitmap:
        return cls(0, capacity)

    @classmethod
    def from_ordinals(cls, ordinals: Iterable[int], capacity: int) -> DateBitmap:
        bits = 0
        for ordinal in ordinals:
            if ordinal < 0:
                raise ValueError(f"negative ordinal {ordinal}")
            bits |= 1 << ordinal
        return cls(bits, capacity)

    @property
    def bits(self) -> int:
        return self._bits

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def words(self) -> int:
        """Number of 64-bit words covering the capacity."""
        return -(-self._capacity // WORD_BITS)

    def test(self, ordinal: int) -> bool:
        if ordinal < 0:
            return False
        return bool((self._bits >> ordinal) & 1)

    def ordinals(self) -> Iterator[int]:
        """Set ordinals in ascending order."""
        return iter_set_bits(self._bits)

    def count(self) -> int:
        return self._bits.bit_count()

    def grow(self, capacity: int) -> DateBitmap:
        """Same bits with a larger capacity."""
        if capacity < self._capacity:
            raise ValueError(f"cannot shrink bitmap from {self._capacity} to {capacity}")
        if capacity == self._capacity:
            return self
        return DateBitmap(self._bits, capacity)

    def to_bytes(self) -> bytes:
        """Little-endian packed representation, ``words * 8`` bytes long."""
        return self._bits.to_bytes(self.words * 8, "little")

    def __or__(self, other: DateBitmap) -> DateBitmap:
        if not isinstance(other, DateBitmap):
            return NotImplemented
        return DateBitmap(self._bits | other._bits, max(self._capacity, other._capacity))

    def __bool__(self) -> bool:
        return self._bits != 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DateBitmap):
            return NotImplemented
        return self._bits == other._bits and self._capacity == other._capacity

    def __hash__(self) -> int:
        return hash((self._bits, self._capacity))

    def __repr__(self) -> str:
        return f"DateBitmap(count={self.count()}, capacity={self._capacity})"


class BitmapBuilder:
    """Mutable accumulator used while a security's rows are streamed."""

    __slots__ = ("_bits",)

    def __init__(self) -> None:
        self._bits = 0

    def set(self, ordinal: int) -> None:
        if ordinal < 0:
            raise ValueError(f"negative ordinal {ordinal}")
        self._bits |= 1 << ordinal

    def freeze(self, capacity: int) -> DateBitmap:
        return DateBitmap(self._bits, capacity)


__all__ = ["DateBitmap", "BitmapBuilder", "iter_set_bits", "WORD_BITS"]
