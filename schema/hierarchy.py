"""
Dimension Hierarchy Management.

Represents one categorical dimension's roll-up structure (e.g. region -> county)
as an arena of nodes addressed by stable integer index. Index 0 is always the
root, which stands for the dimension's grand total.

Hierarchies can be defined three ways, all normalizing to the same tree:
- explicit: create_root() followed by attach_children()
- adjacency list: {parent: [children, ...]}
- tabular: (parent, child) rows, from memory or a two-column CSV file
"""

import csv
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from core.errors import (
    DuplicateNameError,
    HierarchyError,
    HierarchyFrozenError,
    UnknownNodeError,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HierarchyNode:
    """Read-only view of one node."""
    index: int
    name: str
    parent: Optional[str]
    children: Tuple[str, ...]
    depth: int

    @property
    def is_leaf(self) -> bool:
        return not self.children


class HierarchyView:
    """
    Lazy pre-order listing of (depth, name) pairs.

    Iterating twice walks the tree twice; the view never mutates it.
    """

    def __init__(self, tree: "HierarchyTree"):
        self._tree = tree

    def __iter__(self) -> Iterator[Tuple[int, str]]:
        tree = self._tree
        stack = [0]
        while stack:
            idx = stack.pop()
            yield tree.depth_of(idx), tree.name_of(idx)
            stack.extend(reversed(tree.children_of(idx)))

    def __len__(self) -> int:
        return len(self._tree)

    def to_text(self, indent: str = "  ") -> str:
        return "\n".join(f"{indent * depth}{name}" for depth, name in self)


class HierarchyTree:
    """
    Manages one dimension hierarchy.

    Parent/child edges are stored as index lists, with a name -> index mapping
    for lookups. The tree is mutable until freeze() is called (TableBuilder
    freezes every hierarchy it consumes).
    """

    ROOT = 0

    def __init__(self, name: str = ""):
        self.name = name
        self._names: List[str] = []
        self._parent: List[int] = []
        self._children: List[List[int]] = []
        self._depth: List[int] = []
        self._index: Dict[str, int] = {}
        self._frozen = False
        self._preorder: Optional[Tuple[int, ...]] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create_root(
        cls,
        root_name: str,
        child_names: Sequence[str] = (),
        name: Optional[str] = None
    ) -> "HierarchyTree":
        """
        Create a hierarchy with a root and its direct children.

        Args:
            root_name: Name of the total category
            child_names: Names of the root's children, in display order
            name: Dimension name (defaults to the root name)

        Raises:
            DuplicateNameError: if any name repeats
        """
        tree = cls(name if name is not None else root_name)
        tree._add_node(root_name, -1)
        tree.attach_children(root_name, child_names)
        return tree

    def attach_children(self, parent_name: str, child_names: Sequence[str]) -> None:
        """
        Attach new children under an existing node.

        The operation is atomic: on error the tree is left unchanged.

        Raises:
            UnknownNodeError: if parent_name is not in the tree
            DuplicateNameError: if a child name repeats or already exists
            HierarchyFrozenError: if the tree has been frozen
        """
        if self._frozen:
            raise HierarchyFrozenError(
                f"Hierarchy {self.name!r} is frozen; build a new tree instead"
            )
        if parent_name not in self._index:
            raise UnknownNodeError(parent_name, f"hierarchy {self.name!r}")

        seen = set()
        for child in child_names:
            if child in self._index or child in seen:
                raise DuplicateNameError(child, f"hierarchy {self.name!r}")
            seen.add(child)

        parent = self._index[parent_name]
        for child in child_names:
            self._add_node(child, parent)
        self._preorder = None

    def _add_node(self, name: str, parent: int) -> int:
        idx = len(self._names)
        self._names.append(name)
        self._parent.append(parent)
        self._children.append([])
        self._depth.append(0 if parent < 0 else self._depth[parent] + 1)
        self._index[name] = idx
        if parent >= 0:
            self._children[parent].append(idx)
        return idx

    @classmethod
    def from_adjacency(
        cls,
        adjacency: Dict[str, Sequence[str]],
        name: Optional[str] = None
    ) -> "HierarchyTree":
        """
        Build a hierarchy from a parent -> children mapping.

        The root is the only parent that never appears as a child.

        Raises:
            HierarchyError: if there is no unique root or some nodes are
                unreachable from it (a cycle)
            DuplicateNameError: if a child is listed twice
        """
        children_seen = set()
        for kids in adjacency.values():
            children_seen.update(kids)
        roots = [p for p in adjacency if p not in children_seen]
        if len(roots) != 1:
            raise HierarchyError(
                f"Adjacency list must have exactly one root, found {sorted(roots)}"
            )

        tree = cls.create_root(roots[0], adjacency.get(roots[0], ()), name=name)
        queue = list(adjacency.get(roots[0], ()))
        while queue:
            parent = queue.pop(0)
            kids = adjacency.get(parent, ())
            if kids:
                tree.attach_children(parent, kids)
                queue.extend(kids)

        unreachable = (set(adjacency) | children_seen) - set(tree._index)
        if unreachable:
            raise HierarchyError(
                f"Nodes unreachable from root {roots[0]!r} (cycle?): {sorted(unreachable)}"
            )
        return tree

    @classmethod
    def from_pairs(
        cls,
        pairs: Iterable[Tuple[Optional[str], str]],
        name: Optional[str] = None
    ) -> "HierarchyTree":
        """
        Build a hierarchy from (parent, child) rows.

        A row with an empty parent names the root explicitly; otherwise the
        root is inferred as for from_adjacency().
        """
        adjacency: Dict[str, List[str]] = {}
        explicit_root = None
        for parent, child in pairs:
            child = child.strip()
            parent = parent.strip() if parent else ""
            if not parent:
                if explicit_root is not None and explicit_root != child:
                    raise HierarchyError(
                        f"Two explicit roots: {explicit_root!r} and {child!r}"
                    )
                explicit_root = child
                adjacency.setdefault(child, [])
                continue
            adjacency.setdefault(parent, []).append(child)

        if explicit_root is not None and len(adjacency) == 1 and not adjacency[explicit_root]:
            # Single-node hierarchy
            return cls.create_root(explicit_root, (), name=name)
        return cls.from_adjacency(adjacency, name=name)

    @classmethod
    def from_csv(
        cls,
        filepath: str,
        parent_column: str = "parent",
        child_column: str = "child",
        encoding: str = "utf-8-sig",
        name: Optional[str] = None
    ) -> "HierarchyTree":
        """
        Load a hierarchy from a two-column parent/child CSV file.

        Expected format:
        parent,child
        ,Connaught
        Connaught,Galway
        ...

        Args:
            filepath: Path to the CSV file
            parent_column: Header of the parent column
            child_column: Header of the child column
            encoding: File encoding (default utf-8-sig to handle BOM)
            name: Dimension name (defaults to the root name)
        """
        with open(filepath, "r", encoding=encoding, newline="") as f:
            reader = csv.DictReader(f)
            rows = []
            for row in reader:
                # Handle potential BOM or whitespace in column names
                row = {k.strip().lstrip("\ufeff"): v for k, v in row.items()}
                rows.append((row.get(parent_column) or "", row[child_column]))

        tree = cls.from_pairs(rows, name=name)
        logger.info(f"Loaded hierarchy {tree.name!r} from {filepath}: "
                    f"{len(tree)} nodes, {len(tree.leaves())} leaves")
        return tree

    def freeze(self) -> "HierarchyTree":
        """Make the tree read-only and cache its traversal order."""
        if not self._names:
            raise HierarchyError("Cannot freeze an empty hierarchy")
        self._preorder = tuple(self._walk_preorder())
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __repr__(self) -> str:
        return f"HierarchyTree({self.name!r}, nodes={len(self)})"

    @property
    def root_name(self) -> str:
        return self._names[self.ROOT]

    @property
    def names(self) -> List[str]:
        """All node names in pre-order."""
        return [self._names[i] for i in self.preorder()]

    def index_of(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise UnknownNodeError(name, f"hierarchy {self.name!r}") from None

    def name_of(self, idx: int) -> str:
        return self._names[idx]

    def parent_of(self, idx: int) -> Optional[int]:
        parent = self._parent[idx]
        return None if parent < 0 else parent

    def children_of(self, idx: int) -> Tuple[int, ...]:
        return tuple(self._children[idx])

    def depth_of(self, idx: int) -> int:
        return self._depth[idx]

    def is_leaf(self, idx: int) -> bool:
        return not self._children[idx]

    def node(self, name: str) -> HierarchyNode:
        idx = self.index_of(name)
        parent = self.parent_of(idx)
        return HierarchyNode(
            index=idx,
            name=name,
            parent=None if parent is None else self._names[parent],
            children=tuple(self._names[c] for c in self._children[idx]),
            depth=self._depth[idx],
        )

    def preorder(self) -> Tuple[int, ...]:
        """Node indices in pre-order (parent before children, siblings in order)."""
        if self._preorder is None:
            return tuple(self._walk_preorder())
        return self._preorder

    def _walk_preorder(self) -> Iterator[int]:
        stack = [self.ROOT]
        while stack:
            idx = stack.pop()
            yield idx
            stack.extend(reversed(self._children[idx]))

    def postorder(self) -> List[int]:
        """Node indices with every child before its parent."""
        return list(reversed(list(self._walk_reverse_preorder())))

    def _walk_reverse_preorder(self) -> Iterator[int]:
        # Pre-order with children visited last-to-first; reversed it is a post-order
        stack = [self.ROOT]
        while stack:
            idx = stack.pop()
            yield idx
            stack.extend(self._children[idx])

    def leaves(self) -> List[int]:
        return [i for i in self.preorder() if not self._children[i]]

    def interior(self) -> List[int]:
        """Non-leaf nodes in pre-order."""
        return [i for i in self.preorder() if self._children[i]]

    def ancestors(self, idx: int) -> List[int]:
        """Strict ancestors, nearest first."""
        result = []
        parent = self._parent[idx]
        while parent >= 0:
            result.append(parent)
            parent = self._parent[parent]
        return result

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True if `ancestor` lies strictly above `descendant`."""
        a = self.index_of(ancestor)
        d = self.index_of(descendant)
        if self._depth[a] >= self._depth[d]:
            return False
        while self._depth[d] > self._depth[a]:
            d = self._parent[d]
        return d == a

    def display(self) -> HierarchyView:
        """Restartable pre-order sequence of (depth, name) pairs."""
        return HierarchyView(self)

    def to_adjacency(self) -> Dict[str, List[str]]:
        return {
            self._names[i]: [self._names[c] for c in self._children[i]]
            for i in self.preorder() if self._children[i]
        }

    def summary(self) -> str:
        """Generate a summary of the hierarchy."""
        lines = [
            "=" * 60,
            f"Hierarchy Summary: {self.name}",
            "=" * 60,
            f"Total Nodes: {len(self)}",
            f"Leaves: {len(self.leaves())}",
            f"Depth: {max(self._depth) if self._depth else 0}",
            "",
            self.display().to_text(),
            "=" * 60,
        ]
        return "\n".join(lines)
