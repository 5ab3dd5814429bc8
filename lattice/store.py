"""
Canonical Node Store
====================

Id-keyed arena of canonical nodes.

RESPONSIBILITY: Hold nodes; hand out per-node locks
OUTPUTS: Detached Node snapshots

WHAT THIS LAYER MUST NOT DO:
============================
- Decide whether a mutation is allowed (LatticeOps + GateChain do)
- Delete nodes (status flags only)

Live node objects are reachable only through `live()`, which callers use
while holding `lock(node_id)`.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple
import threading

from .concurrency import KeyedLocks
from .contracts.base import ErrorKind, Result, fail
from .contracts.model import Node


class NodeStore:
    """Flat map of node id -> Node plus per-node commit locks."""

    def __init__(self):
        self._nodes: Dict[str, Node] = {}
        self._guard = threading.RLock()
        self._locks = KeyedLocks()

    @contextmanager
    def lock(self, node_id: str) -> Iterator[None]:
        """Serialize mutations of one node."""
        with self._locks.hold(node_id):
            yield

    def insert(self, node: Node) -> Result[Node]:
        with self._guard:
            if node.node_id in self._nodes:
                return fail(ErrorKind.DUPLICATE, "duplicate_node", f"Node {node.node_id} already exists")
            self._nodes[node.node_id] = node
        return Result.success(node.snapshot())

    def live(self, node_id: str) -> Optional[Node]:
        """The stored object itself. Hold `lock(node_id)` while mutating it."""
        with self._guard:
            return self._nodes.get(node_id)

    def read(self, node_id: str) -> Result[Node]:
        with self._locks.hold(node_id):
            node = self.live(node_id)
            if node is None:
                return fail(ErrorKind.NOT_FOUND, "node_not_found", f"Node {node_id} not found")
            return Result.success(node.snapshot())

    def exists(self, node_id: str) -> bool:
        with self._guard:
            return node_id in self._nodes

    def select(self, predicate: Callable[[Node], bool], limit: int) -> Tuple[Node, ...]:
        """Snapshots of up to `limit` nodes in insertion order."""
        with self._guard:
            ids = list(self._nodes)
        out: List[Node] = []
        for node_id in ids:
            with self._locks.hold(node_id):
                node = self.live(node_id)
                if node is not None and predicate(node):
                    out.append(node.snapshot())
            if len(out) >= limit:
                break
        return tuple(out)

    def all_nodes(self) -> Tuple[Node, ...]:
        return self.select(lambda node: True, limit=max(1, len(self)))

    def __len__(self) -> int:
        with self._guard:
            return len(self._nodes)
