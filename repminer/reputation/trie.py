"""Authenticated reputation map: a path-compressed sparse binary Merkle trie.

Keys are 256-bit hashes, so the trie is conceptually 256 levels deep. Only
branches where keys actually diverge are materialized; a subtree holding a
single leaf carries that leaf's digest, and an empty subtree has the
all-zero digest. The root digest therefore depends only on the set of
(key, value) pairs, never on the order they were written.

Nodes are immutable. A put rebuilds the root-to-leaf path and shares every
other subtree, which makes copy() O(1) and lets readers hold an old root
while a writer builds the next one.

Proofs are (branch_mask, siblings): bit ``255 - level`` of the mask is set
for every level where the path to the key passes a non-empty sibling, and
siblings lists those digests top to bottom.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, Iterator, Union

from .errors import KeyNotFound
from .keys import KEY_BITS, KEY_BYTES, VALUE_BYTES

EMPTY_ROOT = bytes(32)

_LEAF_PREFIX = b"\x00"
_BRANCH_PREFIX = b"\x01"


def leaf_digest(key: bytes, value: bytes) -> bytes:
    return hashlib.sha256(_LEAF_PREFIX + key + value).digest()


def branch_digest(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(_BRANCH_PREFIX + left + right).digest()


def key_bit(key: bytes, level: int) -> int:
    """Bit of ``key`` at ``level`` (0 = most significant)."""
    return (key[level >> 3] >> (7 - (level & 7))) & 1


def _first_diff(a: bytes, b: bytes) -> int:
    """First level at which two keys differ (KEY_BITS if equal)."""
    x = int.from_bytes(a, "big") ^ int.from_bytes(b, "big")
    return KEY_BITS - x.bit_length()


@dataclass(frozen=True)
class _Leaf:
    key: bytes
    value: bytes
    digest: bytes


@dataclass(frozen=True)
class _Branch:
    level: int
    prefix: bytes  # any key below this branch; bits [0, level) are shared
    left: "_Node"
    right: "_Node"
    digest: bytes


_Node = Union[_Leaf, _Branch]


def _make_leaf(key: bytes, value: bytes) -> _Leaf:
    return _Leaf(key, value, leaf_digest(key, value))


def _make_branch(level: int, prefix: bytes, left: _Node, right: _Node) -> _Branch:
    return _Branch(level, prefix, left, right, branch_digest(left.digest, right.digest))


def _split(level: int, existing: _Node, leaf: _Leaf) -> _Branch:
    if key_bit(leaf.key, level):
        return _make_branch(level, leaf.key, existing, leaf)
    return _make_branch(level, leaf.key, leaf, existing)


def _insert(node: _Node | None, key: bytes, value: bytes) -> _Node:
    if node is None:
        return _make_leaf(key, value)

    if isinstance(node, _Leaf):
        if node.key == key:
            return _make_leaf(key, value)
        return _split(_first_diff(node.key, key), node, _make_leaf(key, value))

    diff = _first_diff(node.prefix, key)
    if diff < node.level:
        # Key leaves this subtree above the branch point
        return _split(diff, node, _make_leaf(key, value))

    if key_bit(key, node.level):
        return _make_branch(node.level, node.prefix, node.left, _insert(node.right, key, value))
    return _make_branch(node.level, node.prefix, _insert(node.left, key, value), node.right)


@dataclass(frozen=True)
class Proof:
    """Inclusion proof for a single key/value pair."""

    key: bytes
    value: bytes
    branch_mask: int
    siblings: tuple[bytes, ...]

    def levels(self) -> list[int]:
        """Trie levels (top to bottom) that contributed a sibling."""
        return [
            level for level in range(KEY_BITS)
            if (self.branch_mask >> (KEY_BITS - 1 - level)) & 1
        ]

    def compute_root(self) -> bytes:
        """Replay the proof from the leaf up to a root digest.

        Raises ValueError if the proof is structurally malformed.
        """
        if len(self.key) != KEY_BYTES or len(self.value) != VALUE_BYTES:
            raise ValueError("malformed proof: bad key or value length")
        if self.branch_mask < 0 or self.branch_mask >> KEY_BITS:
            raise ValueError("malformed proof: branch mask out of range")
        levels = self.levels()
        if len(levels) != len(self.siblings):
            raise ValueError(
                f"malformed proof: mask marks {len(levels)} levels, "
                f"got {len(self.siblings)} siblings"
            )

        digest = leaf_digest(self.key, self.value)
        for level, sibling in zip(reversed(levels), reversed(self.siblings)):
            if len(sibling) != 32:
                raise ValueError("malformed proof: sibling is not 32 bytes")
            if key_bit(self.key, level):
                digest = branch_digest(sibling, digest)
            else:
                digest = branch_digest(digest, sibling)
        return digest

    def verify(self, root: bytes) -> bool:
        try:
            return self.compute_root() == root
        except ValueError:
            return False


def verify_proof(proof: Proof, root: bytes) -> bool:
    """True if ``proof`` replays to ``root``."""
    return proof.verify(root)


class ReputationTrie:
    """Mutable handle over an immutable trie.

    Not thread-safe for concurrent writers; take a copy() to hand a stable
    view to readers.
    """

    def __init__(self, items: Iterable[tuple[bytes, bytes]] = ()):
        self._root: _Node | None = None
        self._size = 0
        for key, value in items:
            self.put(key, value)

    @property
    def root(self) -> bytes:
        return EMPTY_ROOT if self._root is None else self._root.digest

    def __len__(self) -> int:
        return self._size

    def __contains__(self, key: bytes) -> bool:
        return self.get(key) is not None

    def copy(self) -> ReputationTrie:
        clone = ReputationTrie()
        clone._root = self._root
        clone._size = self._size
        return clone

    def get(self, key: bytes) -> bytes | None:
        node = self._root
        while isinstance(node, _Branch):
            node = node.right if key_bit(key, node.level) else node.left
        if node is None or node.key != key:
            return None
        return node.value

    def put(self, key: bytes, value: bytes) -> bytes:
        """Insert or overwrite ``key``; returns the new root digest."""
        if len(key) != KEY_BYTES:
            raise ValueError(f"key must be {KEY_BYTES} bytes, got {len(key)}")
        if len(value) != VALUE_BYTES:
            raise ValueError(f"value must be {VALUE_BYTES} bytes, got {len(value)}")
        if self.get(key) is None:
            self._size += 1
        self._root = _insert(self._root, key, value)
        return self._root.digest

    def prove(self, key: bytes) -> Proof:
        """Build an inclusion proof for ``key`` against the current root."""
        node = self._root
        mask = 0
        siblings: list[bytes] = []
        while isinstance(node, _Branch):
            level = node.level
            if key_bit(key, level):
                sibling, node = node.left, node.right
            else:
                sibling, node = node.right, node.left
            mask |= 1 << (KEY_BITS - 1 - level)
            siblings.append(sibling.digest)

        if node is None or node.key != key:
            raise KeyNotFound(key)
        return Proof(key=key, value=node.value, branch_mask=mask, siblings=tuple(siblings))

    def items(self) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs in ascending key order."""
        stack: list[_Node] = [self._root] if self._root is not None else []
        while stack:
            node = stack.pop()
            if isinstance(node, _Leaf):
                yield node.key, node.value
            else:
                stack.append(node.right)
                stack.append(node.left)


__all__ = [
    "EMPTY_ROOT",
    "Proof",
    "ReputationTrie",
    "branch_digest",
    "key_bit",
    "leaf_digest",
    "verify_proof",
]
