"""
Rebasing chains of single-file commits onto a new base commit.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .host_interface import HostApi
from .models import CommitInfo, TreeEntry, UnexpectedBranchState
from .tree_builder import TreeBuilder


logger = logging.getLogger(__name__)


def assert_head_reachable(commits: List[CommitInfo], expected_head: CommitInfo) -> List[CommitInfo]:
    """
    Reconcile a review's commit listing with the head the workflow just wrote.

    The host may list a review's commits before a freshly pushed head shows up.
    The head is appended when its parent is the last listed commit, the list is
    returned as is when the head is already last, and anything else means the
    branch was changed behind the workflow's back.

    Raises:
        UnexpectedBranchState: if the head is neither the last commit nor its child
    """
    if not commits:
        return [expected_head]

    last = commits[-1]
    if expected_head.first_parent == last.sha:
        logger.debug(f"Head {expected_head.sha[:8]} missing from listing; appending")
        return commits + [expected_head]
    if expected_head.sha == last.sha:
        return commits

    raise UnexpectedBranchState(
        f"Editorial workflow branch changed unexpectedly: expected head {expected_head.sha[:8]}, "
        f"last listed commit is {last.sha[:8]}"
    )


class RebaseEngine:
    """Re-creates single-file commits on top of a new base, keeping authorship."""

    def __init__(self, host: HostApi, tree_builder: Optional[TreeBuilder] = None) -> None:
        self.host = host
        self.tree_builder = tree_builder or TreeBuilder(host)
        self.commit_mappings: Dict[str, str] = {}  # old_sha -> new_sha of the last rebase

    async def rebase_single_file_commits(
        self, base_commit: CommitInfo, commits: List[CommitInfo], path: str
    ) -> CommitInfo:
        """
        Rebase ``commits`` (oldest first, each touching only ``path``) onto ``base_commit``.

        If the first commit already sits on ``base_commit`` nothing is rewritten
        and the last commit is returned. An empty list rebases to the base itself.

        Returns:
            The new head commit
        """
        self.commit_mappings = {}
        if not commits:
            return base_commit
        if commits[0].first_parent == base_commit.sha:
            logger.debug(f"Commits already based on {base_commit.sha[:8]}; nothing to rebase")
            return commits[-1]

        self._assert_linear(commits)

        logger.info(f"Rebasing {len(commits)} commit(s) touching {path} onto {base_commit.sha[:8]}")
        parent = base_commit
        for commit in commits:
            tree_sha = await self._rebased_tree(parent, commit, path)
            if tree_sha == parent.tree:
                # Nothing left to replay for this path (e.g. a commit that only touched media)
                logger.debug(f"Skipping commit {commit.sha[:8]}: no change to {path}")
                self.commit_mappings[commit.sha] = parent.sha
                continue
            rebased = await self.host.create_commit(
                commit.message, tree_sha, [parent.sha], commit.author, commit.committer
            )
            self.commit_mappings[commit.sha] = rebased.sha
            logger.debug(f"Rebased commit {commit.sha[:8]} -> {rebased.sha[:8]}")
            parent = rebased
        return parent

    async def rebase_single_file_commit(
        self, parent: CommitInfo, commit: CommitInfo, path: str
    ) -> CommitInfo:
        """Re-create ``commit`` on ``parent``, carrying over only the blob at ``path``."""
        tree_sha = await self._rebased_tree(parent, commit, path)
        return await self.host.create_commit(
            commit.message, tree_sha, [parent.sha], commit.author, commit.committer
        )

    async def _rebased_tree(self, parent: CommitInfo, commit: CommitInfo, path: str) -> str:
        blob = await self.tree_builder.get_blob_in_tree(commit.tree, path)
        if blob is None:
            raise UnexpectedBranchState(f"Commit {commit.sha[:8]} does not contain {path}")

        tree = await self.host.create_tree(
            parent.tree, [TreeEntry(path=path, mode=blob.mode, type="blob", sha=blob.sha)]
        )
        return tree.sha

    def _assert_linear(self, commits: List[CommitInfo]) -> None:
        for previous, current in zip(commits, commits[1:]):
            if current.first_parent != previous.sha:
                raise UnexpectedBranchState(
                    f"Commit {current.sha[:8]} does not follow {previous.sha[:8]}; "
                    "commits must form a linear chain, oldest first"
                )

    def get_new_sha(self, old_sha: str) -> Optional[str]:
        return self.commit_mappings.get(old_sha)
