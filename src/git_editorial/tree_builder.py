"""
Building nested trees from changed files and patching them onto host trees.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Set

from .host_interface import HostApi
from .models import BLOB_MODE, FileItem, Leaf, PersistedTree, Subtree, TreeEntry, TreeNode


logger = logging.getLogger(__name__)


def split_path(path: str) -> List[str]:
    return [part for part in path.split("/") if part]


def compose_tree(files: Iterable[FileItem]) -> Subtree:
    """
    Turn a flat list of files into a nested tree.

    Files already uploaded are skipped. Directories are created on demand and
    the last path segment holds the file itself.

    Raises:
        ValueError: if a path is used both as a file and as a directory
    """
    root = Subtree()
    for item in files:
        if item.uploaded:
            continue
        parts = split_path(item.path)
        if not parts:
            raise ValueError(f"Cannot place file with empty path: {item.path!r}")
        *dirs, filename = parts
        subtree = root
        for part in dirs:
            node = subtree.children.setdefault(part, Subtree())
            if isinstance(node, Leaf):
                raise ValueError(f"{item.path}: '{part}' is already a file")
            subtree = node
        if isinstance(subtree.children.get(filename), Subtree):
            raise ValueError(f"{item.path}: '{filename}' is already a directory")
        subtree.children[filename] = Leaf(item)
    return root


def iter_leaves(node: TreeNode, prefix: str = ""):
    """Yield (path, FileItem) for every leaf below ``node``."""
    if isinstance(node, Leaf):
        yield prefix, node.item
        return
    for name, child in node.children.items():
        yield from iter_leaves(child, f"{prefix}/{name}" if prefix else name)


class TreeBuilder:
    """Patches composed trees onto trees stored on the host."""

    def __init__(self, host: HostApi) -> None:
        self.host = host

    async def merge_tree(
        self, base_sha: Optional[str], path: str, overlay: Subtree
    ) -> PersistedTree:
        """
        Patch ``overlay`` onto the tree at ``base_sha`` and persist the result.

        Leaves replace base entries of the same name, subtrees are merged
        recursively, new names are inserted and untouched base entries are
        kept as they are.

        Args:
            base_sha: Tree-ish to patch, or None for an empty base
            path: Name of this tree inside its parent ("" for the root)
            overlay: Composed tree of changes

        Returns:
            PersistedTree with the new address and ``base_sha`` for chaining
        """
        base = await self.host.get_tree(base_sha)
        updates: List[TreeEntry] = []
        seen: Set[str] = set()

        for existing in base.entries:
            node = overlay.children.get(existing.path)
            if node is None:
                continue
            seen.add(existing.path)
            if isinstance(node, Leaf):
                # Keep the executable bit of a replaced blob
                mode = existing.mode if existing.type == "blob" else BLOB_MODE
                updates.append(self._leaf_entry(existing.path, node, mode))
            else:
                sub_base = existing.sha if existing.type == "tree" else None
                subtree = await self.merge_tree(sub_base, existing.path, node)
                updates.append(subtree.as_entry())

        for name, node in overlay.children.items():
            if name in seen:
                continue
            if isinstance(node, Leaf):
                updates.append(self._leaf_entry(name, node))
            else:
                subtree = await self.merge_tree(None, name, node)
                updates.append(subtree.as_entry())

        tree = await self.host.create_tree(base.sha, updates)
        logger.debug(f"Merged {len(updates)} entries into tree '{path or '/'}' -> {tree.sha[:8]}")
        return PersistedTree(path=path, sha=tree.sha, base_sha=base_sha)

    def _leaf_entry(self, name: str, leaf: Leaf, mode: str = BLOB_MODE) -> TreeEntry:
        if not leaf.item.sha:
            raise ValueError(f"File {leaf.item.path} has no content address; upload it first")
        return TreeEntry(path=name, mode=mode, type="blob", sha=leaf.item.sha)

    async def get_blob_in_tree(self, tree_sha: str, path: str) -> Optional[TreeEntry]:
        """Find the blob entry at ``path``, fetching one subtree per directory."""
        *dirs, filename = split_path(path)
        tree = await self.host.get_tree(tree_sha)
        for segment in dirs:
            entry = tree.find(segment)
            if entry is None or entry.type != "tree":
                return None
            tree = await self.host.get_tree(entry.sha)
        entry = tree.find(filename)
        if entry is None or entry.type != "blob":
            return None
        return entry
