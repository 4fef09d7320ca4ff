"""The immutable result of a successful resolution."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from packaging.specifiers import SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from ..errors import ParseError
from ..registry.models import Candidate
from ..versioning.models import Environment, RegistrySource, Requirement, SourceSpec

LOCK_VERSION = 1


@dataclass(frozen=True)
class Node:
    """One selected distribution."""

    name: str
    version: Version
    extras: frozenset = frozenset()
    source: SourceSpec = field(default_factory=RegistrySource)
    candidate: Optional[Candidate] = field(default=None, compare=False, hash=False, repr=False)

    @property
    def pinned(self) -> Requirement:
        """A requirement selecting exactly this node."""
        if isinstance(self.source, RegistrySource):
            return Requirement(self.name, SpecifierSet(f"=={self.version}"), self.extras)
        return Requirement(self.name, extras=self.extras, source=self.source)

    def __str__(self) -> str:
        return f"{self.name}=={self.version}"


@dataclass(frozen=True)
class Edge:
    """``parent`` (None for the root requirements) requires ``child`` via ``requirement``."""

    parent: Optional[str]
    child: str
    requirement: Requirement

    @property
    def marker(self):
        return self.requirement.marker


def _edge_key(edge: Edge):
    return (edge.parent or "", edge.child, str(edge.requirement))


class ResolutionGraph:
    """Selected nodes (at most one per name) and the requirement edges between them."""

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge], environment: Optional[Environment] = None):
        by_name: Dict[str, Node] = {}
        for node in nodes:
            if node.name in by_name:
                raise ValueError(f"{node.name} selected twice")
            by_name[node.name] = node
        self._nodes: Tuple[Node, ...] = tuple(by_name[name] for name in sorted(by_name))
        self._by_name = by_name
        self._edges: Tuple[Edge, ...] = tuple(sorted(set(edges), key=_edge_key))
        self.environment = environment

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return self._edges

    def __getitem__(self, name: str) -> Node:
        return self._by_name[canonicalize_name(name)]

    def get(self, name: str) -> Optional[Node]:
        return self._by_name.get(canonicalize_name(name))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and canonicalize_name(name) in self._by_name

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResolutionGraph):
            return NotImplemented
        return self._nodes == other._nodes and self._edges == other._edges

    def __hash__(self) -> int:
        return hash((self._nodes, self._edges))

    def versions(self) -> Dict[str, Version]:
        return {node.name: node.version for node in self._nodes}

    def dependencies(self, name: Optional[str]) -> List[Edge]:
        """Outgoing edges of ``name``; ``None`` gives the root requirements."""
        key = canonicalize_name(name) if name else None
        return [edge for edge in self._edges if edge.parent == key]

    def dependents(self, name: str) -> List[Edge]:
        key = canonicalize_name(name)
        return [edge for edge in self._edges if edge.child == key]

    def install_order(self) -> List[Node]:
        """Dependencies before dependents; cycles are broken alphabetically."""
        order: List[Node] = []
        state: Dict[str, int] = {}

        def visit(name: str) -> None:
            stack = [(name, iter(sorted({e.child for e in self.dependencies(name)})))]
            state[name] = 1
            while stack:
                current, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    state[current] = 2
                    order.append(self._by_name[current])
                elif child in self._by_name and child not in state:
                    state[child] = 1
                    stack.append((child, iter(sorted({e.child for e in self.dependencies(child)}))))

        for node in self._nodes:
            if node.name not in state:
                visit(node.name)
        return order

    def to_requirements(self) -> str:
        """Pinned requirements listing with ``# via`` annotations."""
        lines = []
        for node in self._nodes:
            lines.append(str(node.pinned))
            parents = sorted({edge.parent or "-r requirements" for edge in self.dependents(node.name)})
            if parents:
                lines.append(f"    # via {', '.join(parents)}")
        return "\n".join(lines) + ("\n" if lines else "")

    def to_lock(self) -> dict:
        packages = []
        for node in self._nodes:
            entry = {
                "name": node.name,
                "version": str(node.version),
                "extras": sorted(node.extras),
                "dependencies": sorted({str(edge.requirement) for edge in self.dependencies(node.name)}),
            }
            if not isinstance(node.source, RegistrySource):
                entry["source"] = node.source.to_url()
            elif node.source.index_url:
                entry["index"] = node.source.index_url
            packages.append(entry)
        lock = {
            "version": LOCK_VERSION,
            "requirements": sorted({str(edge.requirement) for edge in self.dependencies(None)}),
            "packages": packages,
        }
        if self.environment is not None:
            lock["environment"] = self.environment.fingerprint()
        return lock

    def to_json(self) -> str:
        return json.dumps(self.to_lock(), indent=2, sort_keys=True) + "\n"

    def __repr__(self) -> str:
        return f"<ResolutionGraph {', '.join(map(str, self._nodes))}>"


def preferences_from_lock(data: Mapping) -> Dict[str, str]:
    """``name -> version`` from a lock document written by ``to_lock``."""
    return {canonicalize_name(p["name"]): p["version"] for p in data.get("packages", [])}


def read_preferences(path: str) -> Dict[str, str]:
    """Preferred versions from a JSON lock or a pinned requirements listing."""
    text = Path(path).read_text(encoding="utf-8")
    if text.lstrip().startswith("{"):
        try:
            return preferences_from_lock(json.loads(text))
        except (ValueError, KeyError, TypeError) as exc:
            raise ParseError(path, f"invalid lock file: {exc}") from exc
    preferences: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if "==" not in line or line.startswith("-"):
            continue
        name, _, version = line.partition("==")
        name = name.split("[", 1)[0].strip()
        version = version.split(";", 1)[0].strip()
        try:
            Version(version)
        except InvalidVersion:
            continue
        preferences[canonicalize_name(name)] = version
    return preferences

