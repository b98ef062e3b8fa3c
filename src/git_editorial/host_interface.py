"""
Transport-agnostic interface to a Git-like content host.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import (
    BranchInfo,
    ChangeKind,
    CommitInfo,
    MergeMethod,
    RefInfo,
    ReviewInfo,
    Signature,
    TreeEntry,
    TreeInfo,
)


class HostApi(ABC):
    """Abstract asynchronous capability over a Git-like host.

    Ref names are given without the leading ``refs/`` (``heads/master``).
    Branch names are given without ``heads/``. Missing objects raise
    ``NotFound``; any other host failure raises ``HostUnavailable``.
    """

    @abstractmethod
    async def get_ref(self, name: str) -> Optional[RefInfo]:
        """Return the ref, or None if it does not exist."""
        pass

    @abstractmethod
    async def create_ref(self, name: str, sha: str) -> RefInfo:
        """Create a new ref; fails if it already exists."""
        pass

    @abstractmethod
    async def update_ref(
        self, name: str, sha: str, force: bool = False, old_sha: Optional[str] = None
    ) -> RefInfo:
        """
        Move an existing ref.

        Args:
            name: Ref name, e.g. ``heads/cms/post-1``
            sha: New target commit
            force: Allow a non fast-forward update
            old_sha: If given, the update only succeeds while the ref still points here

        Returns:
            The updated ref
        """
        pass

    @abstractmethod
    async def delete_ref(self, name: str) -> None:
        pass

    @abstractmethod
    async def get_tree(self, sha: Optional[str]) -> TreeInfo:
        """Return a tree (any tree-ish is accepted); None yields an empty tree."""
        pass

    @abstractmethod
    async def create_tree(self, base_sha: Optional[str], entries: List[TreeEntry]) -> TreeInfo:
        """
        Create a tree from ``base_sha`` with ``entries`` applied on top.

        Entries not mentioned are kept. Entry paths may be nested (``a/b/c.md``);
        intermediate subtrees are created or updated. An entry whose ``sha`` is
        None removes that path.
        """
        pass

    @abstractmethod
    async def create_blob(self, content: bytes) -> str:
        """Store content and return its address."""
        pass

    @abstractmethod
    async def get_blob(self, sha: str) -> bytes:
        pass

    @abstractmethod
    async def read_file(self, path: str, branch: str) -> bytes:
        """Read a file from the head of ``branch``."""
        pass

    @abstractmethod
    async def create_blob_commit(
        self,
        branch: str,
        path: str,
        content: Optional[bytes],
        message: str,
        change_kind: ChangeKind,
        author: Optional[Signature] = None,
    ) -> CommitInfo:
        """
        Commit a single blob change onto ``branch``.

        An ``ADD`` onto a missing branch creates the branch with a root commit.
        ``ADD`` on an existing path, or ``EDIT``/``DELETE`` on a missing one,
        is rejected by the host.
        """
        pass

    @abstractmethod
    async def create_commit(
        self,
        message: str,
        tree_sha: str,
        parents: List[str],
        author: Optional[Signature] = None,
        committer: Optional[Signature] = None,
    ) -> CommitInfo:
        pass

    @abstractmethod
    async def get_commit(self, sha: str) -> CommitInfo:
        pass

    @abstractmethod
    async def get_branch(self, name: str) -> BranchInfo:
        pass

    async def create_branch(self, name: str, sha: str) -> BranchInfo:
        await self.create_ref(f"heads/{name}", sha)
        return await self.get_branch(name)

    @abstractmethod
    async def create_review(
        self, title: str, body: str, source_branch: str, target_branch: str
    ) -> ReviewInfo:
        pass

    @abstractmethod
    async def get_review(self, review_id: int) -> ReviewInfo:
        """Return a review request in any state (``open``, ``merged`` or ``closed``)."""
        pass

    @abstractmethod
    async def get_review_commits(self, review_id: int) -> List[CommitInfo]:
        """Commits of the review's source branch not on its target, oldest first."""
        pass

    @abstractmethod
    async def merge_review(
        self,
        review_id: int,
        head_sha: Optional[str],
        method: MergeMethod,
        message: str,
    ) -> CommitInfo:
        """
        Merge a review request into its target branch.

        Raises:
            MergeConflict: if the host reports the review as not mergeable
        """
        pass

    @abstractmethod
    async def close_review(self, review_id: int) -> None:
        pass

    @abstractmethod
    async def list_reviews(
        self, target_branch: Optional[str] = None, state: Optional[str] = "open"
    ) -> List[ReviewInfo]:
        pass
