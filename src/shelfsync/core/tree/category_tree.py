"""Category tree invariants: level/path derivation, validation and cascades.

All operations read the flat CategoryCatalog mirror and return new
Category values; none of them mutate the mirror. Persisting the results
is the caller's job (see CatalogService).
"""

import dataclasses
from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from shelfsync.config import MAX_CATEGORY_LEVEL, UNCATEGORIZED_ID
from shelfsync.core.catalog.mirror import CategoryCatalog
from shelfsync.core.tree.colors import color_for, icon_for
from shelfsync.errors import (
    CycleDetected,
    DepthExceeded,
    DuplicateSibling,
    NotFound,
    ValidationFailure,
)
from shelfsync.models.records import Book, Category


@dataclass
class CategoryNode:
    """A category with its materialized children, for presentation."""

    category: Category
    children: list["CategoryNode"] = field(default_factory=list)


@dataclass(frozen=True)
class CascadePlan:
    """What a cascading delete has to do.

    ``category_ids`` is ordered deepest first, so children are removed
    before their parents.
    """

    category_ids: tuple[str, ...]
    book_ids: tuple[str, ...]


class CategoryTree:
    """Hierarchy rules over a CategoryCatalog."""

    def __init__(self, categories: CategoryCatalog, *, max_level: int = MAX_CATEGORY_LEVEL) -> None:
        self.categories = categories
        self.max_level = max_level

    # --- Derivation ---

    def _ancestors(self, parent_id: str | None) -> list[Category]:
        """Ancestor chain starting at ``parent_id``, nearest first."""
        by_id = self.categories.as_map()
        chain: list[Category] = []
        seen: set[str] = set()
        current = parent_id
        while current is not None:
            if current in seen:
                msg = f"Category loop detected at {current!r}"
                raise CycleDetected(msg)
            seen.add(current)
            category = by_id.get(current)
            if category is None:
                msg = f"Parent category {current!r} not found"
                raise NotFound(msg)
            chain.append(category)
            current = category.parent_id
        return chain

    def compute_level(self, parent_id: str | None) -> int:
        """Level of a node placed under ``parent_id`` (0 for roots)."""
        return len(self._ancestors(parent_id))

    def compute_path(self, parent_id: str | None, name: str) -> str:
        """Slash-joined ancestor names ending in ``name``, e.g. ``/Fiction/Sci-Fi``."""
        names = [c.name for c in reversed(self._ancestors(parent_id))]
        return "/" + "/".join([*names, name])

    # --- Validation ---

    def _check_sibling_name(
        self, name: str, parent_id: str | None, *, exclude_id: str | None = None
    ) -> None:
        for sibling in self.categories.siblings(parent_id):
            if sibling.id != exclude_id and sibling.name == name:
                msg = f"Category {name!r} already exists at this level"
                raise DuplicateSibling(msg)

    def validate_create(self, name: str, parent_id: str | None) -> None:
        """Raise if a category ``name`` can not be created under ``parent_id``."""
        self._check_sibling_name(name, parent_id)
        level = self.compute_level(parent_id)
        if level > self.max_level:
            msg = f"Categories can not be nested deeper than {self.max_level + 1} levels"
            raise DepthExceeded(msg)

    def validate_rename(self, category_id: str, new_name: str) -> None:
        category = self.categories.require(category_id)
        self._check_sibling_name(new_name, category.parent_id, exclude_id=category_id)

    # --- Traversal ---

    def _children_index(self) -> dict[str | None, list[Category]]:
        index: dict[str | None, list[Category]] = defaultdict(list)
        for category in self.categories.all():
            index[category.parent_id].append(category)
        return index

    def descendants_of(self, category_id: str) -> list[Category]:
        """All categories transitively under ``category_id``, parents before children."""
        index = self._children_index()
        result: list[Category] = []
        seen = {category_id}
        todo: deque[str] = deque([category_id])
        while todo:
            for child in index.get(todo.popleft(), ()):
                if child.id in seen:
                    continue
                seen.add(child.id)
                result.append(child)
                todo.append(child.id)
        return result

    def build_forest(self) -> list[CategoryNode]:
        """Materialize the parent -> children tree, children sorted by name.

        Categories whose parent is missing are promoted to roots.
        """
        nodes = {c.id: CategoryNode(category=c) for c in self.categories.all()}
        roots: list[CategoryNode] = []
        for node in nodes.values():
            parent = nodes.get(node.category.parent_id) if node.category.parent_id else None
            if parent is None:
                roots.append(node)
            else:
                parent.children.append(node)

        for node in nodes.values():
            node.children.sort(key=lambda n: n.category.name.lower())
        roots.sort(key=lambda n: n.category.name.lower())
        return roots

    # --- Cascading mutations ---

    def _rederive(self, subtree_root: Category) -> list[Category]:
        """Recompute level/path for ``subtree_root`` (already changed) and its descendants.

        Returns only the categories whose derived fields or own values changed.
        """
        index = self._children_index()
        updated = [subtree_root]
        seen = {subtree_root.id}
        todo: deque[Category] = deque([subtree_root])
        while todo:
            parent = todo.popleft()
            for child in index.get(parent.id, ()):
                if child.id in seen:
                    continue
                seen.add(child.id)
                new_child = dataclasses.replace(
                    child, level=parent.level + 1, path=f"{parent.path}/{child.name}"
                )
                if new_child.level > self.max_level:
                    msg = (
                        f"Moving would place {child.name!r} at level {new_child.level}, "
                        f"maximum is {self.max_level}"
                    )
                    raise DepthExceeded(msg)
                if new_child != child:
                    updated.append(new_child)
                todo.append(new_child)
        return updated

    def rename(self, category_id: str, new_name: str) -> list[Category]:
        """Rename a category; returns it and every descendant with updated paths."""
        self.validate_rename(category_id, new_name)
        category = self.categories.require(category_id)
        renamed = dataclasses.replace(
            category, name=new_name, path=self.compute_path(category.parent_id, new_name)
        )
        return self._rederive(renamed)

    def reparent(self, category_id: str, new_parent_id: str | None) -> list[Category]:
        """Move a category under ``new_parent_id``.

        Returns the moved category and its descendants with recomputed
        level and path. Raises without side effects on any violation.
        """
        category = self.categories.require(category_id)
        if category_id == UNCATEGORIZED_ID and new_parent_id is not None:
            msg = "The uncategorized category must stay at the root"
            raise ValidationFailure(msg)

        if new_parent_id is not None:
            if new_parent_id == category_id or new_parent_id in {
                d.id for d in self.descendants_of(category_id)
            }:
                msg = f"Can not move {category.name!r} under itself or its descendants"
                raise CycleDetected(msg)
            self.categories.require(new_parent_id)

        self._check_sibling_name(category.name, new_parent_id, exclude_id=category_id)
        level = self.compute_level(new_parent_id)
        if level > self.max_level:
            msg = f"Categories can not be nested deeper than {self.max_level + 1} levels"
            raise DepthExceeded(msg)

        moved = dataclasses.replace(
            category,
            parent_id=new_parent_id,
            level=level,
            path=self.compute_path(new_parent_id, category.name),
        )
        return self._rederive(moved)

    def cascade_delete(self, category_id: str, books: Iterable[Book]) -> CascadePlan:
        """Plan deletion of a category subtree and reassignment of its books."""
        if category_id == UNCATEGORIZED_ID:
            msg = "The uncategorized category can not be deleted"
            raise ValidationFailure(msg)
        self.categories.require(category_id)

        descendants = self.descendants_of(category_id)
        ids = [category_id, *(d.id for d in descendants)]
        doomed = set(ids)
        book_ids = tuple(b.id for b in books if b.category in doomed)
        return CascadePlan(category_ids=tuple(reversed(ids)), book_ids=book_ids)


def render_forest(forest: list[CategoryNode], *, show_ids: bool = False) -> str:
    """Render a category forest as an indented bullet list."""

    lines: list[str] = []
    todo: list[tuple[CategoryNode, int]] = [(node, 0) for node in forest]
    while todo:
        node, depth = todo.pop(0)
        category = node.category
        badge = f"{icon_for(category.name)} {color_for(category.name)}"
        line = f"{'    ' * depth}- {category.name} [{badge}]"
        if show_ids:
            line += f"  id={category.id}"
        lines.append(line)
        todo = [(child, depth + 1) for child in node.children] + todo
    return "\n".join(lines) + ("\n" if lines else "")
