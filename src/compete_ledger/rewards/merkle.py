"""Keccak Merkle tree over reward leaves.

Leaves are ``keccak256("rl" ++ address ++ uint256 amount)``, packed the way
the rewards contract encodes them. Each tree also carries a faux leaf
derived from the competition id so two competitions paying identical
rewards still commit to different roots. Leaves and each hashed pair are
sorted; an odd node at the end of a layer is promoted unchanged.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from web3 import AsyncWeb3

from compete_ledger.storage.coders import ADDRESS_LENGTH, HASH_LENGTH, address_to_bytes

if TYPE_CHECKING:
    from compete_ledger.rewards.allocation import Reward

LEAF_PREFIX = b"rl"


class MerkleProofError(Exception):
    """Raised when a leaf is not part of the tree."""


def keccak(data: bytes) -> bytes:
    return bytes(AsyncWeb3.keccak(primitive=data))


def leaf_hash(address: str, amount: int) -> bytes:
    if amount < 0:
        raise ValueError("Reward amount must not be negative")
    return keccak(LEAF_PREFIX + address_to_bytes(address) + amount.to_bytes(32, "big"))


def faux_leaf(competition_id: str) -> bytes:
    return keccak(competition_id.encode("utf-8") + bytes(ADDRESS_LENGTH) + bytes(32))


def hash_pair(a: bytes, b: bytes) -> bytes:
    return keccak(min(a, b) + max(a, b))


def build_layers(leaves: Iterable[bytes]) -> list[list[bytes]]:
    """All layers of the tree, leaves first and the root layer last."""
    layer = sorted(bytes(leaf) for leaf in leaves)
    if not layer:
        raise ValueError("Cannot build a Merkle tree without leaves")
    for leaf in layer:
        if len(leaf) != HASH_LENGTH:
            raise ValueError(f"Leaf must be {HASH_LENGTH} bytes, got {len(leaf)}")

    layers = [layer]
    while len(layer) > 1:
        layer = [
            hash_pair(layer[i], layer[i + 1]) if i + 1 < len(layer) else layer[i]
            for i in range(0, len(layer), 2)
        ]
        layers.append(layer)
    return layers


def proof_for(layers: Sequence[Sequence[bytes]], leaf: bytes) -> list[bytes]:
    """Sibling hashes from ``leaf`` up to the root; promoted nodes contribute none."""
    if not layers:
        raise MerkleProofError("Tree is empty")
    try:
        idx = list(layers[0]).index(leaf)
    except ValueError as e:
        raise MerkleProofError(f"Leaf 0x{leaf.hex()} is not in the tree") from e

    proof: list[bytes] = []
    for layer in layers[:-1]:
        sibling = idx ^ 1
        if sibling < len(layer):
            proof.append(bytes(layer[sibling]))
        idx //= 2
    return proof


def verify_proof(leaf: bytes, proof: Iterable[bytes], root: bytes) -> bool:
    node = leaf
    for sibling in proof:
        node = hash_pair(node, sibling)
    return node == root


@dataclass(frozen=True)
class RewardsTree:
    competition_id: str
    layers: list[list[bytes]]

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    def proof(self, address: str, amount: int) -> list[bytes]:
        return proof_for(self.layers, leaf_hash(address, amount))


def build_rewards_tree(competition_id: str, rewards: Iterable[Reward]) -> RewardsTree:
    leaves = [faux_leaf(competition_id)] + [leaf_hash(r.address, r.amount) for r in rewards]
    return RewardsTree(competition_id=competition_id, layers=build_layers(leaves))


def build_tree_from_leaf_hashes(competition_id: str, leaf_hashes: Iterable[bytes]) -> RewardsTree:
    """Tree over already-hashed reward leaves, as stored with each reward row."""
    leaves = [faux_leaf(competition_id), *leaf_hashes]
    return RewardsTree(competition_id=competition_id, layers=build_layers(leaves))
