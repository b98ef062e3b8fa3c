"""
Editorial workflow orchestration: open, update, publish and discard unpublished entries.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from .config import WorkflowConfig
from .host_interface import HostApi
from .metadata_store import MetadataStore
from .models import (
    BranchInfo,
    ChangeKind,
    CommitInfo,
    ConfigurationError,
    EditorialWorkflowError,
    Entry,
    FileItem,
    MergeConflict,
    MetadataRecord,
    NotFound,
    PersistOptions,
    RefInfo,
    ReviewRef,
    Subtree,
    TrackedObject,
    UnpublishedEntry,
    WorkflowStatus,
    merge_tracked_files,
)
from .rebase_engine import RebaseEngine, assert_head_reachable
from .tree_builder import TreeBuilder, compose_tree


logger = logging.getLogger(__name__)


MERGE_MESSAGE = "Automatically generated. Merged by the editorial workflow."


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EditorialWorkflow:
    """Drives unpublished entries through review branches, review requests and metadata."""

    def __init__(
        self,
        host: HostApi,
        config: Optional[WorkflowConfig] = None,
        metadata_store: Optional[MetadataStore] = None,
        tree_builder: Optional[TreeBuilder] = None,
        rebase_engine: Optional[RebaseEngine] = None,
    ) -> None:
        self.host = host
        self.config = config or WorkflowConfig()
        self.metadata = metadata_store or MetadataStore(host, self.config)
        self.tree_builder = tree_builder or TreeBuilder(host)
        self.rebase_engine = rebase_engine or RebaseEngine(host, self.tree_builder)

    def generate_branch_name(self, key: str) -> str:
        return f"{self.config.branch_prefix}{key}"

    def is_cms_branch(self, branch_name: str) -> bool:
        return branch_name.startswith(self.config.branch_prefix)

    # --- Persisting ---

    async def persist_entry(
        self, entry: Entry, files: List[FileItem], options: PersistOptions
    ) -> Optional[MetadataRecord]:
        """
        Persist an entry and its attached files.

        With the workflow enabled this opens a review for a new entry or updates
        the existing one; otherwise the change is committed onto the base branch.

        Returns:
            The stored metadata record, or None for a direct commit
        """
        all_files = list(files) + [entry.file]
        overlay = compose_tree(all_files)
        await self.upload_files(all_files)

        if not options.use_workflow:
            await self.commit_to_base(overlay, options.commit_message)
            return None

        record = await self.metadata.retrieve(entry.slug)
        if record is None or record.status is WorkflowStatus.PUBLISHED:
            return await self._open_review(entry, files, overlay, options)
        return await self._update_review(entry, files, overlay, options, record)

    async def upload_files(self, files: List[FileItem]) -> None:
        """Upload pending files concurrently; each item gets its address and is marked uploaded."""
        pending = [item for item in files if not item.uploaded]
        if not pending:
            return
        shas = await asyncio.gather(*(self.host.create_blob(item.content_bytes()) for item in pending))
        for item, sha in zip(pending, shas):
            item.sha = sha
            item.uploaded = True
        logger.debug(f"Uploaded {len(pending)} file(s)")

    async def commit_to_base(self, overlay: Subtree, message: str) -> CommitInfo:
        branch = await self.host.get_branch(self.config.base_branch)
        commit = await self._commit_overlay(branch, overlay, message)
        await self.patch_branch(self.config.base_branch, commit.sha)
        logger.info(f"Committed {commit.sha[:8]} directly onto {self.config.base_branch}")
        return commit

    async def _commit_overlay(self, branch: BranchInfo, overlay: Subtree, message: str) -> CommitInfo:
        tree = await self.tree_builder.merge_tree(branch.commit.tree, "", overlay)
        return await self.host.create_commit(
            message, tree.sha, [branch.commit.sha], self.config.author, self.config.author
        )

    async def _open_review(
        self, entry: Entry, files: List[FileItem], overlay: Subtree, options: PersistOptions
    ) -> MetadataRecord:
        key = entry.slug
        branch_name = self.generate_branch_name(key)
        logger.info(f"Opening editorial review for {key} on {branch_name}")

        base = await self.host.get_branch(self.config.base_branch)
        commit = await self._commit_overlay(base, overlay, options.commit_message)
        await self.host.create_branch(branch_name, commit.sha)
        review = await self.host.create_review(
            options.commit_message, self.config.review_body, branch_name, self.config.base_branch
        )

        record = MetadataRecord(
            key=key,
            status=WorkflowStatus.PENDING_REVIEW,
            review=ReviewRef(id=review.id, head=commit.sha),
            branch=branch_name,
            collection=options.collection_name,
            title=options.title,
            description=options.description,
            entry=TrackedObject(path=entry.path, sha=entry.file.sha),
            files=[TrackedObject(path=f.path, sha=f.sha) for f in files],
            timestamp=_now(),
            user=self.config.author_name,
        )
        await self.metadata.store(key, record)
        return record

    async def _update_review(
        self,
        entry: Entry,
        files: List[FileItem],
        overlay: Subtree,
        options: PersistOptions,
        record: MetadataRecord,
    ) -> MetadataRecord:
        key = entry.slug
        logger.info(f"Updating editorial review for {key} on {record.branch}")

        branch = await self.host.get_branch(record.branch)
        new_head = await self._commit_overlay(branch, overlay, options.commit_message)

        record.review = ReviewRef(id=record.review.id, head=new_head.sha)
        record.title = options.title
        record.description = options.description
        record.entry = TrackedObject(path=entry.path, sha=entry.file.sha)
        record.files = merge_tracked_files(
            record.files, [TrackedObject(path=f.path, sha=f.sha) for f in files]
        )
        record.timestamp = _now()

        has_asset_store = (
            self.config.has_asset_store if options.has_asset_store is None else options.has_asset_store
        )
        if has_asset_store:
            # Assets live elsewhere, so the branch only needs to move forward
            await self.metadata.store(key, record)
            await self.patch_branch(record.branch, new_head.sha)
            return record

        return await self.rebase_review(record, new_head)

    async def rebase_review(self, record: MetadataRecord, head: CommitInfo) -> MetadataRecord:
        """
        Rebase a review branch onto the latest base branch head.

        Only the entry file is replayed commit by commit; tracked media files are
        re-attached on top afterwards so they stay reachable from the review.
        """
        base = await self.host.get_branch(self.config.base_branch)
        commits = await self.host.get_review_commits(record.review.id)
        final_commits = assert_head_reachable(commits, head)

        rebased = await self.rebase_engine.rebase_single_file_commits(
            base.commit, final_commits, record.entry.path
        )
        if rebased.sha != head.sha:
            rebased = await self._restore_tracked_files(rebased, record)

        record.review = ReviewRef(id=record.review.id, head=rebased.sha)
        record.timestamp = _now()
        await self.metadata.store(record.key, record)
        await self.patch_branch(record.branch, rebased.sha, force=True)
        return record

    async def _restore_tracked_files(self, head: CommitInfo, record: MetadataRecord) -> CommitInfo:
        media = [FileItem(path=f.path, sha=f.sha) for f in record.files if f.sha]
        if not media:
            return head
        tree = await self.tree_builder.merge_tree(head.tree, "", compose_tree(media))
        if tree.sha == head.tree:
            return head
        logger.debug(f"Re-attaching {len(media)} tracked file(s) to {record.branch}")
        return await self.host.create_commit(
            f"Restore tracked files of “{record.key}”",
            tree.sha,
            [head.sha],
            head.author,
            head.committer,
        )

    # --- Status transitions ---

    async def set_status(self, key: str, status: WorkflowStatus) -> MetadataRecord:
        if status is WorkflowStatus.PUBLISHED:
            raise EditorialWorkflowError("Use publish() to publish an entry")
        record = await self._require_record(key)
        record.status = status
        await self.metadata.store(key, record)
        logger.info(f"Set status of {key} to {status.value}")
        return record

    async def publish(self, key: str) -> MetadataRecord:
        """
        Merge the entry's review into the base branch, forcing the merge on conflict.

        A publish that failed after its merge can be repeated: an already merged
        review is not merged again, and a closed one goes through the forced merge,
        which is a no-op when the base branch already holds the tracked files.
        """
        record = await self._require_record(key)
        review = await self.host.get_review(record.review.id)
        if review.state == "merged":
            logger.info(f"Review #{review.id} for {key} already merged; finishing publish")
        elif review.state == "open":
            try:
                await self.host.merge_review(
                    record.review.id, record.review.head, self.config.merge_method, MERGE_MESSAGE
                )
                logger.info(f"Merged review #{record.review.id} for {key}")
            except MergeConflict:
                logger.warning(f"Automatic merge of {key} not possible; forcing merge")
                await self.force_merge(record)
        else:
            logger.warning(f"Review #{review.id} for {key} is {review.state}; forcing merge")
            await self.force_merge(record)

        try:
            await self.delete_branch(record.branch)
        except NotFound:
            logger.debug(f"Branch {record.branch} already deleted")

        record.status = WorkflowStatus.PUBLISHED
        record.timestamp = _now()
        await self.metadata.store(key, record)
        return record

    async def force_merge(self, record: MetadataRecord) -> CommitInfo:
        """Commit every tracked file directly onto the base branch and close the review."""
        tracked = record.files + [record.entry]
        files = [FileItem(path=t.path, sha=t.sha) for t in tracked]
        message = "Automatically generated. Merged by the editorial workflow\n\nForce merge of:"
        for item in files:
            message += f'\n* "{item.path}"'

        base = await self.host.get_branch(self.config.base_branch)
        tree = await self.tree_builder.merge_tree(base.commit.tree, "", compose_tree(files))
        if tree.sha == base.commit.tree:
            logger.info(f"{self.config.base_branch} already holds the tracked files of {record.key}")
            commit = base.commit
        else:
            commit = await self.host.create_commit(
                message, tree.sha, [base.commit.sha], self.config.author, self.config.author
            )
            # The commit is a child of the base head, so a fast-forward is enough
            await self.patch_branch(self.config.base_branch, commit.sha)

        try:
            await self.host.close_review(record.review.id)
        except NotFound:
            pass
        return commit

    async def discard(self, key: str) -> None:
        """Close the review and drop its branch and metadata. Safe to call repeatedly."""
        record = await self.metadata.retrieve(key)
        branch_name = record.branch if record else self.generate_branch_name(key)

        if record is not None and record.status is not WorkflowStatus.PUBLISHED:
            try:
                await self.host.close_review(record.review.id)
            except NotFound:
                logger.debug(f"Review for {key} already closed")
        try:
            await self.delete_branch(branch_name)
        except NotFound:
            logger.debug(f"Branch {branch_name} already deleted")

        if record is not None:
            await self.metadata.delete(key)
        logger.info(f"Discarded unpublished entry {key}")

    # --- Reading ---

    async def read_draft(self, key: str) -> UnpublishedEntry:
        """Read an unpublished entry from its review branch."""
        record = await self.metadata.retrieve(key)
        if record is None or record.status is WorkflowStatus.PUBLISHED or not record.entry.path:
            raise EditorialWorkflowError("content is not under editorial workflow", True)
        try:
            raw = await self.host.read_file(record.entry.path, record.branch)
        except NotFound as e:
            raise EditorialWorkflowError("content is not under editorial workflow", True) from e
        return UnpublishedEntry(
            slug=key,
            path=record.entry.path,
            raw=raw,
            files=list(record.files),
            is_modification=await self.is_entry_modification(record.entry.path),
            metadata=record,
        )

    async def is_entry_modification(self, path: str) -> bool:
        """Whether ``path`` already exists on the base branch."""
        try:
            await self.host.read_file(path, self.config.base_branch)
        except NotFound:
            return False
        return True

    async def list_unpublished_entries(self) -> List[str]:
        """Keys of entries with an open review from a workflow branch."""
        reviews = await self.host.list_reviews(target_branch=self.config.base_branch, state="open")
        prefix = self.config.branch_prefix
        return [r.source_branch[len(prefix):] for r in reviews if r.source_branch.startswith(prefix)]

    # --- Files and branches ---

    async def delete_file(self, path: str, message: str, branch: Optional[str] = None) -> CommitInfo:
        return await self.host.create_blob_commit(
            branch or self.config.base_branch,
            path,
            None,
            message,
            ChangeKind.DELETE,
            author=self.config.author,
        )

    async def patch_branch(self, branch_name: str, sha: str, force: bool = False) -> RefInfo:
        """Move a branch; only workflow branches may be force-updated."""
        if force and not self.is_cms_branch(branch_name):
            raise ConfigurationError(
                f"Only workflow branches can be force updated, cannot force update {branch_name}"
            )
        return await self.host.update_ref(f"heads/{branch_name}", sha, force=force)

    async def delete_branch(self, branch_name: str) -> None:
        await self.host.delete_ref(f"heads/{branch_name}")

    async def _require_record(self, key: str) -> MetadataRecord:
        record = await self.metadata.retrieve(key)
        if record is None or record.status is WorkflowStatus.PUBLISHED:
            raise EditorialWorkflowError(f"{key} is not under editorial workflow", True)
        return record
