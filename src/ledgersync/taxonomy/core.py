from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True)
class CategoryNode:
    key: str
    name: str
    description: str | None
    parent_key: str | None
    provider_codes: tuple[str, ...] = ()


class Taxonomy:
    """Two-level category tree plus the provider codes each category absorbs."""

    @staticmethod
    def _node_sort_key(node: CategoryNode) -> str:
        return node.key

    def __init__(self, nodes: Sequence[CategoryNode]) -> None:
        self._nodes_by_key: dict[str, CategoryNode] = {}
        for node in nodes:
            if node.key in self._nodes_by_key:
                raise ValueError(f"Category key '{node.key}' is defined twice")
            self._nodes_by_key[node.key] = node

        self._children: dict[str, list[CategoryNode]] = {}
        for node in nodes:
            if node.parent_key is None:
                continue
            if node.parent_key not in self._nodes_by_key:
                raise ValueError(
                    f"Category '{node.key}' references unknown parent "
                    f"'{node.parent_key}'"
                )
            if self._nodes_by_key[node.parent_key].parent_key is not None:
                raise ValueError(
                    f"Category '{node.key}' must have a root category as parent"
                )
            self._children.setdefault(node.parent_key, []).append(node)
        for key in list(self._children.keys()):
            self._children[key].sort(key=self._node_sort_key)

        self._code_index: dict[str, str] = {}
        for node in nodes:
            for code in node.provider_codes:
                owner = self._code_index.get(code)
                if owner is not None and owner != node.key:
                    raise ValueError(
                        f"Provider code '{code}' is mapped to both "
                        f"'{owner}' and '{node.key}'"
                    )
                self._code_index[code] = node.key

    @classmethod
    def from_nodes(cls, nodes: Sequence[CategoryNode]) -> Taxonomy:
        return cls(sorted(nodes, key=cls._node_sort_key))

    def children(self, key: str) -> list[CategoryNode]:
        return list(self._children.get(key, []))

    def parents(self) -> list[CategoryNode]:
        roots = [n for n in self._nodes_by_key.values() if n.parent_key is None]
        roots.sort(key=lambda n: n.key)
        return roots

    def all_nodes(self) -> list[CategoryNode]:
        """Return nodes with every parent before its children."""
        ordered: list[CategoryNode] = []
        for root in self.parents():
            ordered.append(root)
            ordered.extend(self.children(root.key))
        return ordered

    def provider_code_index(self) -> dict[str, str]:
        """Return provider code -> category key."""
        return dict(self._code_index)
