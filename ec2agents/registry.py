"""In-memory registry of agents the controller currently knows about."""

from __future__ import annotations

from collections.abc import Iterator

from ec2agents.types import KnownNode


class NodeRegistry:
    """Live set of known nodes, keyed by node name.

    Nodes are registered as soon as the provider returns an instance (or a
    spot request) and removed by the external node-lifecycle manager.
    """

    def __init__(self, nodes: list[KnownNode] | None = None) -> None:
        self._nodes: dict[str, KnownNode] = {n.name: n for n in nodes or ()}

    def register(self, node: KnownNode) -> None:
        self._nodes[node.name] = node

    def remove(self, name: str) -> KnownNode | None:
        return self._nodes.pop(name, None)

    def nodes(self, template: str | None = None) -> list[KnownNode]:
        """Snapshot of registered nodes, optionally for one template."""
        return [n for n in self._nodes.values() if template is None or n.template == template]

    def __iter__(self) -> Iterator[KnownNode]:
        return iter(self.nodes())

    def __len__(self) -> int:
        return len(self._nodes)
