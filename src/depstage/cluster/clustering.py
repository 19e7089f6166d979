"""Clustering of generated code trees into parameterized templates.

Specializations of one function often generate trees that are identical
except for literal values at a few positions. Those trees are grouped into
clusters sharing one template; each position where the literals differ
becomes a hole, and holes whose values agree for every member share a
parameter. Call sites then pass their own values for each parameter.

The engine works over any tree through a ``TreeAdapter``. Two adapters are
provided: ``DataclassTreeAdapter`` for frozen-dataclass trees (``EXPR_ADAPTER``
covers residual expressions, with ``Lit`` nodes as leaves) and
``JsonTreeAdapter`` for plain dict/list/scalar trees.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterator, Protocol, Sequence

from loguru import logger

from depstage.config.settings import load_settings
from depstage.core.ast import Expr, Lit, Var

PathSegment = str | int
Path = tuple[PathSegment, ...]


class TreeAdapter(Protocol):
    """How the engine sees a tree."""

    def leaf_key(self, node: Any) -> Hashable | None:
        """Comparison key of a leaf, or ``None`` if ``node`` is not a leaf."""
        ...

    def leaf_value(self, node: Any) -> Any: ...

    def label(self, node: Any) -> Hashable:
        """Everything structural about ``node`` except its children."""
        ...

    def children(self, node: Any) -> list[tuple[Path, Any]]: ...

    def rebuild(self, node: Any, children: list[Any]) -> Any:
        """A copy of ``node`` with its children replaced, in ``children()`` order."""
        ...

    def parameter(self, name: str) -> Any:
        """A reference to the template parameter ``name``."""
        ...


# =============================================================================
# Adapters
# =============================================================================


class DataclassTreeAdapter:
    """Adapter for trees made of frozen dataclass nodes.

    Fields holding nodes, or tuples containing nodes, are children. All other
    field values are part of the node's structure: two nodes only match if
    they agree on them.
    """

    def __init__(
        self,
        node_type: type,
        leaf_type: type,
        parameter: Callable[[str], Any],
        leaf_field: str = "value",
    ) -> None:
        self.node_type = node_type
        self.leaf_type = leaf_type
        self.leaf_field = leaf_field
        self._parameter = parameter

    def leaf_key(self, node: Any) -> Hashable | None:
        return node if isinstance(node, self.leaf_type) else None

    def leaf_value(self, node: Any) -> Any:
        return getattr(node, self.leaf_field)

    def label(self, node: Any) -> Hashable:
        return (type(node).__name__, tuple(self._shape(getattr(node, f.name)) for f in dataclasses.fields(node)))

    def children(self, node: Any) -> list[tuple[Path, Any]]:
        found: list[tuple[Path, Any]] = []
        for f in dataclasses.fields(node):
            found.extend(self._collect(getattr(node, f.name), (f.name,)))
        return found

    def rebuild(self, node: Any, children: list[Any]) -> Any:
        replacements = iter(children)
        changes = {f.name: self._fill(getattr(node, f.name), replacements) for f in dataclasses.fields(node)}
        return dataclasses.replace(node, **changes)

    def parameter(self, name: str) -> Any:
        return self._parameter(name)

    def _shape(self, value: Any) -> Hashable:
        if isinstance(value, self.node_type):
            return "*"
        if isinstance(value, tuple):
            return tuple(self._shape(v) for v in value)
        return value

    def _collect(self, value: Any, path: Path) -> Iterator[tuple[Path, Any]]:
        if isinstance(value, self.node_type):
            yield path, value
        elif isinstance(value, tuple):
            for i, item in enumerate(value):
                yield from self._collect(item, (*path, i))

    def _fill(self, value: Any, replacements: Iterator[Any]) -> Any:
        if isinstance(value, self.node_type):
            return next(replacements)
        if isinstance(value, tuple):
            return tuple(self._fill(v, replacements) for v in value)
        return value


class JsonTreeAdapter:
    """Adapter for JSON-style trees: dicts, lists and scalars.

    Every scalar is a leaf. Dicts match when they have the same keys and
    lists when they have the same length.
    """

    def __init__(self, parameter: Callable[[str], Any] | None = None) -> None:
        self._parameter = parameter if parameter is not None else (lambda name: {"$param": name})

    def leaf_key(self, node: Any) -> Hashable | None:
        if isinstance(node, (dict, list)):
            return None
        # 1 and True must not compare equal
        return (type(node).__name__, node)

    def leaf_value(self, node: Any) -> Any:
        return node

    def label(self, node: Any) -> Hashable:
        if isinstance(node, dict):
            return ("dict", tuple(sorted(node)))
        return ("list", len(node))

    def children(self, node: Any) -> list[tuple[Path, Any]]:
        if isinstance(node, dict):
            return [((key,), node[key]) for key in sorted(node)]
        return [((i,), item) for i, item in enumerate(node)]

    def rebuild(self, node: Any, children: list[Any]) -> Any:
        if isinstance(node, dict):
            return dict(zip(sorted(node), children))
        return list(children)

    def parameter(self, name: str) -> Any:
        return self._parameter(name)


EXPR_ADAPTER = DataclassTreeAdapter(Expr, Lit, Var)
JSON_ADAPTER = JsonTreeAdapter()


# =============================================================================
# Structural comparison
# =============================================================================


def signature(tree: Any, adapter: TreeAdapter = EXPR_ADAPTER) -> str:
    """Fingerprint of a tree's shape. All leaves render the same."""
    if adapter.leaf_key(tree) is not None:
        return "L"
    parts = ",".join(f"{'.'.join(map(str, path))}={signature(child, adapter)}" for path, child in adapter.children(tree))
    return f"{adapter.label(tree)!r}({parts})"


def compare(a: Any, b: Any, adapter: TreeAdapter = EXPR_ADAPTER, path: Path = ()) -> list[Path] | None:
    """Paths where two trees differ in leaf value.

    Returns ``None`` when the trees differ anywhere else, so no template can
    cover both.
    """
    key_a, key_b = adapter.leaf_key(a), adapter.leaf_key(b)
    if key_a is not None or key_b is not None:
        if key_a is None or key_b is None:
            return None
        return [] if key_a == key_b else [path]

    if adapter.label(a) != adapter.label(b):
        return None
    children_a, children_b = adapter.children(a), adapter.children(b)
    if len(children_a) != len(children_b):
        return None

    diffs: list[Path] = []
    for (sub_a, child_a), (sub_b, child_b) in zip(children_a, children_b):
        if sub_a != sub_b:
            return None
        found = compare(child_a, child_b, adapter, (*path, *sub_a))
        if found is None:
            return None
        diffs.extend(found)
    return diffs


def leaf_paths(tree: Any, adapter: TreeAdapter = EXPR_ADAPTER, path: Path = ()) -> list[Path]:
    """Paths of all leaves of ``tree``, in pre-order."""
    if adapter.leaf_key(tree) is not None:
        return [path]
    return [found for sub, child in adapter.children(tree) for found in leaf_paths(child, adapter, (*path, *sub))]


def node_at(tree: Any, path: Path, adapter: TreeAdapter = EXPR_ADAPTER) -> Any:
    node = tree
    remaining = path
    while remaining:
        for sub, child in adapter.children(node):
            if remaining[: len(sub)] == sub:
                node, remaining = child, remaining[len(sub) :]
                break
        else:
            raise KeyError(f"No node at path {'.'.join(map(str, path))}")
    return node


def value_at(tree: Any, path: Path, adapter: TreeAdapter = EXPR_ADAPTER) -> Any:
    """Leaf value at ``path``."""
    node = node_at(tree, path, adapter)
    if adapter.leaf_key(node) is None:
        raise KeyError(f"Expected a leaf at path {'.'.join(map(str, path))}")
    return adapter.leaf_value(node)


# =============================================================================
# Clustering
# =============================================================================


@dataclass(frozen=True)
class Specialization:
    """One generated tree to cluster, identified by ``key``."""

    key: Hashable
    tree: Any


@dataclass
class Cluster:
    """Specializations sharing one parameterized template."""

    signature: str
    members: list[Specialization]
    holes: list[Path] = field(default_factory=list)
    # hole index -> parameter index
    mapping: list[int] = field(default_factory=list)
    parameters: list[str] = field(default_factory=list)
    template: Any = None
    arguments: dict[Hashable, list[Any]] = field(default_factory=dict)

    @property
    def is_singleton(self) -> bool:
        return len(self.members) == 1


class _DisjointSet:
    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, i: int) -> int:
        while self._parent[i] != i:
            self._parent[i] = self._parent[self._parent[i]]
            i = self._parent[i]
        return i

    def union(self, i: int, j: int) -> None:
        root_i, root_j = self.find(i), self.find(j)
        if root_i != root_j:
            # keep the earliest hole as representative
            self._parent[max(root_i, root_j)] = min(root_i, root_j)


def consolidate_parameters(columns: Sequence[Sequence[Hashable]]) -> tuple[list[int], int]:
    """Assign holes to parameters, sharing one wherever the values always agree.

    ``columns[i]`` holds the value keys of hole ``i`` for every member.
    Returns the hole-to-parameter mapping and the number of parameters,
    numbered by first occurrence.
    """
    groups = _DisjointSet(len(columns))
    first_seen: dict[tuple[Hashable, ...], int] = {}
    for i, column in enumerate(columns):
        key = tuple(column)
        if key in first_seen:
            groups.union(first_seen[key], i)
        else:
            first_seen[key] = i

    numbering: dict[int, int] = {}
    mapping = []
    for i in range(len(columns)):
        root = groups.find(i)
        if root not in numbering:
            numbering[root] = len(numbering)
        mapping.append(numbering[root])
    return mapping, len(numbering)


def apply_template(
    tree: Any,
    holes: Sequence[Path],
    mapping: Sequence[int],
    parameters: Sequence[str],
    adapter: TreeAdapter = EXPR_ADAPTER,
) -> Any:
    """Replace the leaves at ``holes`` with references to their parameters."""
    by_path = {hole: parameters[mapping[i]] for i, hole in enumerate(holes)}
    return _replace_holes(tree, (), by_path, adapter)


def _replace_holes(tree: Any, path: Path, by_path: dict[Path, str], adapter: TreeAdapter) -> Any:
    if adapter.leaf_key(tree) is not None:
        name = by_path.get(path)
        return adapter.parameter(name) if name is not None else tree
    children = adapter.children(tree)
    if not children:
        return tree
    return adapter.rebuild(tree, [_replace_holes(child, (*path, *sub), by_path, adapter) for sub, child in children])


def parameter_values(tree: Any, cluster: Cluster, adapter: TreeAdapter = EXPR_ADAPTER) -> list[Any]:
    """Arguments a member passes to its cluster's template, one per parameter."""
    values: list[Any] = [None] * len(cluster.parameters)
    for hole, param in zip(cluster.holes, cluster.mapping):
        values[param] = value_at(tree, hole, adapter)
    return values


def cluster(
    specs: Sequence[Specialization],
    adapter: TreeAdapter = EXPR_ADAPTER,
    param_prefix: str | None = None,
) -> list[Cluster]:
    """Group specializations into clusters sharing a parameterized template.

    Each cluster's template is its first member with every hole replaced by
    a parameter reference; ``arguments`` maps each member's key to the
    values it passes.
    """
    prefix = param_prefix if param_prefix is not None else load_settings().param_prefix
    clusters: list[Cluster] = []
    diffs: dict[int, set[Path]] = {}

    for spec in specs:
        sig = signature(spec.tree, adapter)
        for index, candidate in enumerate(clusters):
            if candidate.signature != sig:
                continue
            diff = compare(candidate.members[0].tree, spec.tree, adapter)
            if diff is not None:
                candidate.members.append(spec)
                diffs[index].update(diff)
                break
        else:
            diffs[len(clusters)] = set()
            clusters.append(Cluster(sig, [spec]))

    for index, group in enumerate(clusters):
        _finish(group, diffs[index], adapter, prefix)

    logger.debug("cluster.done specs={} groups={}", len(specs), len(clusters))
    return clusters


def _finish(group: Cluster, hole_set: set[Path], adapter: TreeAdapter, prefix: str) -> None:
    first = group.members[0].tree
    group.holes = [path for path in leaf_paths(first, adapter) if path in hole_set]
    columns = [[adapter.leaf_key(node_at(m.tree, hole, adapter)) for m in group.members] for hole in group.holes]
    group.mapping, count = consolidate_parameters(columns)
    group.parameters = [f"{prefix}{i}" for i in range(count)]
    group.template = apply_template(first, group.holes, group.mapping, group.parameters, adapter)
    group.arguments = {m.key: parameter_values(m.tree, group, adapter) for m in group.members}
