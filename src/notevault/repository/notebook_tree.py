"""Notebook hierarchy integrity.

Notebooks form a forest through ``parent_id``. Data written by older
clients or merged from another replica can contain orphans (missing
parent), self-parenting or longer cycles; these helpers detect and
repair them.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from notevault.models.schema import Notebook

logger = logging.getLogger(__name__)

_IN_PROGRESS = 1
_DONE = 2


def would_create_cycle(
    notebook_id: str, parent_id: Optional[str], notebooks: Mapping[str, Notebook]
) -> bool:
    """True if giving ``notebook_id`` the parent ``parent_id`` closes a loop."""
    seen = set()
    current = parent_id
    while current is not None:
        if current == notebook_id:
            return True
        if current in seen:
            # An existing loop that does not pass through notebook_id
            return False
        seen.add(current)
        parent = notebooks.get(current)
        current = parent.parent_id if parent is not None else None
    return False


def has_sibling_named(
    name: str,
    parent_id: Optional[str],
    notebooks: Iterable[Notebook],
    exclude_id: Optional[str] = None,
) -> bool:
    """Case-insensitive name clash among notebooks sharing ``parent_id``."""
    wanted = name.strip().lower()
    return any(
        nb.parent_id == parent_id
        and nb.id != exclude_id
        and nb.name.strip().lower() == wanted
        for nb in notebooks
    )


def repair_notebook_tree(
    notebooks: Iterable[Notebook],
) -> Tuple[List[Notebook], List[str]]:
    """Make the parent links of ``notebooks`` a forest.

    Orphans and self-parented notebooks become roots. In a longer cycle the
    notebook whose parent link closes the loop (in input order) becomes a
    root. Input models are not modified.

    Returns:
        The repaired notebooks in input order and the ids whose
        ``parent_id`` was cleared.
    """
    repaired: Dict[str, Notebook] = {nb.id: nb.model_copy() for nb in notebooks}
    cleared: List[str] = []

    for nb in repaired.values():
        if nb.parent_id is None:
            continue
        if nb.parent_id == nb.id:
            logger.warning(f"Notebook '{nb.name}' ({nb.id}) is its own parent, making it a root")
        elif nb.parent_id not in repaired:
            logger.warning(
                f"Notebook '{nb.name}' ({nb.id}) has missing parent {nb.parent_id}, "
                "making it a root"
            )
        else:
            continue
        nb.parent_id = None
        cleared.append(nb.id)

    state: Dict[str, int] = {}
    for start in list(repaired):
        path: List[str] = []
        current: Optional[str] = start
        while current is not None and current not in state:
            state[current] = _IN_PROGRESS
            path.append(current)
            parent_id = repaired[current].parent_id
            if parent_id is not None and state.get(parent_id) == _IN_PROGRESS:
                logger.warning(
                    f"Circular notebook reference at '{repaired[current].name}' "
                    f"({current}), making it a root"
                )
                repaired[current].parent_id = None
                cleared.append(current)
                break
            current = parent_id
        for notebook_id in path:
            state[notebook_id] = _DONE

    return list(repaired.values()), cleared


@dataclass
class NotebookNode:
    """A notebook placed in the hierarchy."""

    notebook: Notebook
    level: int = 0
    path: str = ""
    children: List["NotebookNode"] = field(default_factory=list)


def build_notebook_tree(notebooks: Iterable[Notebook]) -> List[NotebookNode]:
    """Repair the hierarchy and return its roots, children sorted by name."""
    repaired, _ = repair_notebook_tree(notebooks)
    nodes = {nb.id: NotebookNode(notebook=nb) for nb in repaired}
    roots: List[NotebookNode] = []
    for node in nodes.values():
        parent_id = node.notebook.parent_id
        if parent_id is None:
            roots.append(node)
        else:
            nodes[parent_id].children.append(node)

    def _place(node: NotebookNode, level: int, prefix: str) -> None:
        node.level = level
        node.path = f"{prefix}/{node.notebook.name}" if prefix else node.notebook.name
        node.children.sort(key=lambda n: n.notebook.name.lower())
        for child in node.children:
            _place(child, level + 1, node.path)

    roots.sort(key=lambda n: n.notebook.name.lower())
    for root in roots:
        _place(root, 0, "")
    return roots
