"""
A local Git repository acting as the content host.

Objects, trees, commits and refs are handled through GitPython. Review requests
have no Git equivalent, so they are kept in a JSON file inside the git dir.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
import threading
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from git import Actor, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import BadName, BadObject, GitCommandError
from git.objects import Commit, Tree
from git.util import hex_to_bin

from .host_interface import HostApi
from .models import (
    BLOB_MODE,
    TREE_MODE,
    BranchInfo,
    ChangeKind,
    CommitInfo,
    ConfigurationError,
    HostUnavailable,
    MergeConflict,
    MergeMethod,
    NotFound,
    RefInfo,
    ReviewInfo,
    Signature,
    TreeEntry,
    TreeInfo,
)
from .tree_builder import split_path


logger = logging.getLogger(__name__)


NULL_SHA = "0" * 40
REVIEWS_FILE = "editorial-reviews.json"


def _git_date(date: Optional[datetime]) -> Optional[str]:
    """Format a datetime in Git's internal ``<epoch> <+hhmm>`` form."""
    if date is None:
        return None
    offset = date.utcoffset() or timedelta(0)
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    hours, minutes = divmod(abs(minutes), 60)
    return f"{int(date.timestamp())} {sign}{hours:02d}{minutes:02d}"


class GitHost(HostApi):
    """Implements the host API on top of a (usually bare) local repository."""

    def __init__(self, repo_path: Optional[Path] = None, default_author: Optional[Signature] = None) -> None:
        self.repo_path = Path(repo_path or Path.cwd()).resolve()
        self.default_author = default_author or Signature("Editorial Workflow", "editorial@localhost")
        self._repo: Optional[Repo] = None
        self._repo_lock = threading.Lock()
        self._reviews_lock = threading.Lock()

    @property
    def repo(self) -> Repo:
        """Get the Git repository instance."""
        # Host calls run in worker threads; open the repository only once
        with self._repo_lock:
            if self._repo is None:
                try:
                    self._repo = Repo(self.repo_path)
                except (InvalidGitRepositoryError, NoSuchPathError) as e:
                    raise ConfigurationError(f"No Git repository found at {self.repo_path}") from e
                logger.debug(f"Opened content repository at {self.repo_path}")
        return self._repo

    @classmethod
    def init(
        cls,
        repo_path: Path,
        base_branch: str = "master",
        bare: bool = True,
        default_author: Optional[Signature] = None,
    ) -> GitHost:
        """Create a repository whose base branch holds a single README commit."""
        repo = Repo.init(repo_path, bare=bare)
        repo.git.symbolic_ref("HEAD", f"refs/heads/{base_branch}")
        host = cls(repo_path, default_author)
        host._repo = repo
        host._create_blob_commit_sync(
            base_branch, "README.md", b"# Content\n", "Initial commit", ChangeKind.ADD, None
        )
        logger.info(f"Initialized content repository at {repo_path} on {base_branch}")
        return host

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except GitCommandError as e:
            logger.error(f"Git command failed in {self.repo_path}: {e}")
            raise HostUnavailable(f"Git command failed: {e}") from e

    # --- Conversion helpers ---

    def _resolve(self, name: str) -> Optional[str]:
        """Return the commit a ref points to, or None if it does not exist."""
        try:
            return self.repo.git.rev_parse("--verify", "--quiet", f"refs/{name}^{{commit}}")
        except GitCommandError:
            return None

    def _commit(self, sha: str) -> Commit:
        try:
            return self.repo.commit(sha)
        except (BadName, BadObject, ValueError) as e:
            raise NotFound(f"Commit {sha} not found") from e

    def _commit_info(self, commit: Commit) -> CommitInfo:
        return CommitInfo(
            sha=commit.hexsha,
            message=commit.message,
            tree=commit.tree.hexsha,
            parents=[parent.hexsha for parent in commit.parents],
            author=Signature(commit.author.name, commit.author.email, commit.authored_datetime),
            committer=Signature(commit.committer.name, commit.committer.email, commit.committed_datetime),
        )

    def _actor(self, signature: Optional[Signature]) -> Actor:
        signature = signature or self.default_author
        return Actor(signature.name, signature.email)

    # --- Refs ---

    def _get_ref_sync(self, name: str) -> Optional[RefInfo]:
        sha = self._resolve(name)
        return RefInfo(name=name, sha=sha) if sha else None

    def _create_ref_sync(self, name: str, sha: str) -> RefInfo:
        self._commit(sha)
        if self._resolve(name) is not None:
            raise HostUnavailable(f"Reference already exists: {name}", status=422)
        self.repo.git.update_ref(f"refs/{name}", sha, NULL_SHA)
        logger.info(f"Created ref {name} -> {sha[:8]}")
        return RefInfo(name=name, sha=sha)

    def _update_ref_sync(self, name: str, sha: str, force: bool, old_sha: Optional[str]) -> RefInfo:
        current = self._resolve(name)
        if current is None:
            raise NotFound(f"Reference does not exist: {name}")
        if old_sha and current != old_sha:
            raise HostUnavailable(f"Reference {name} moved from {old_sha[:8]} to {current[:8]}", status=409)
        self._commit(sha)
        if not force and not self.repo.is_ancestor(current, sha):
            raise HostUnavailable(f"Update of {name} is not a fast forward", status=422)
        self.repo.git.update_ref(f"refs/{name}", sha, current)
        logger.info(f"Updated ref {name}: {current[:8]} -> {sha[:8]}{' (forced)' if force else ''}")
        return RefInfo(name=name, sha=sha)

    def _delete_ref_sync(self, name: str) -> None:
        current = self._resolve(name)
        if current is None:
            raise NotFound(f"Reference does not exist: {name}")
        self.repo.git.update_ref("-d", f"refs/{name}", current)
        logger.info(f"Deleted ref {name}")

    async def get_ref(self, name: str) -> Optional[RefInfo]:
        return await self._run(self._get_ref_sync, name)

    async def create_ref(self, name: str, sha: str) -> RefInfo:
        return await self._run(self._create_ref_sync, name, sha)

    async def update_ref(
        self, name: str, sha: str, force: bool = False, old_sha: Optional[str] = None
    ) -> RefInfo:
        return await self._run(self._update_ref_sync, name, sha, force, old_sha)

    async def delete_ref(self, name: str) -> None:
        await self._run(self._delete_ref_sync, name)

    # --- Trees and blobs ---

    def _get_tree_sync(self, sha: Optional[str]) -> TreeInfo:
        if not sha:
            return TreeInfo(sha=None, entries=[])
        try:
            resolved = self.repo.tree(sha)
        except (BadName, BadObject, ValueError) as e:
            raise NotFound(f"Tree {sha} not found") from e
        # A tree looked up by name has no path, which iteration needs
        tree = Tree(self.repo, resolved.binsha, path="")
        entries = []
        for item in tree:
            type_ = "commit" if item.type == "submodule" else item.type
            entries.append(TreeEntry(path=item.name, mode=f"{item.mode:06o}", type=type_, sha=item.hexsha))
        return TreeInfo(sha=tree.hexsha, entries=entries)

    def _write_tree(self, entries: Dict[str, TreeEntry]) -> str:
        payload = b"".join(
            f"{entry.mode} {entry.type} {entry.sha}\t{name}".encode("utf-8") + b"\0"
            for name, entry in entries.items()
        )
        with tempfile.TemporaryFile() as fh:
            fh.write(payload)
            fh.seek(0)
            return self.repo.git.mktree("-z", istream=fh)

    def _create_tree_sync(self, base_sha: Optional[str], entries: List[TreeEntry]) -> TreeInfo:
        current: Dict[str, TreeEntry] = {e.path: e for e in self._get_tree_sync(base_sha).entries}
        nested: Dict[str, List[TreeEntry]] = {}

        for entry in entries:
            parts = split_path(entry.path)
            if not parts:
                raise HostUnavailable(f"Invalid tree entry path: {entry.path!r}", status=422)
            name = parts[0]
            if len(parts) > 1:
                rest = "/".join(parts[1:])
                nested.setdefault(name, []).append(TreeEntry(rest, entry.mode, entry.type, entry.sha))
            elif entry.sha is None:
                current.pop(name, None)
            else:
                current[name] = TreeEntry(name, entry.mode or BLOB_MODE, entry.type, entry.sha)

        for name, children in nested.items():
            existing = current.get(name)
            sub_base = existing.sha if existing is not None and existing.type == "tree" else None
            subtree = self._create_tree_sync(sub_base, children)
            if subtree.entries:
                current[name] = TreeEntry(name, TREE_MODE, "tree", subtree.sha)
            else:
                current.pop(name, None)

        sha = self._write_tree(current)
        return TreeInfo(sha=sha, entries=list(current.values()))

    def _create_blob_sync(self, content: bytes) -> str:
        with tempfile.TemporaryFile() as fh:
            fh.write(content)
            fh.seek(0)
            return self.repo.git.hash_object("-w", "--stdin", istream=fh)

    def _get_blob_sync(self, sha: str) -> bytes:
        try:
            return self.repo.odb.stream(hex_to_bin(sha)).read()
        except (BadName, BadObject, ValueError) as e:
            raise NotFound(f"Blob {sha} not found") from e

    def _read_file_sync(self, path: str, branch: str) -> bytes:
        head = self._resolve(f"heads/{branch}")
        if head is None:
            raise NotFound(f"Branch {branch} not found")
        try:
            item = self._commit(head).tree / "/".join(split_path(path))
        except KeyError as e:
            raise NotFound(f"{path} not found on {branch}") from e
        if item.type != "blob":
            raise NotFound(f"{path} on {branch} is not a file")
        return item.data_stream.read()

    async def get_tree(self, sha: Optional[str]) -> TreeInfo:
        return await self._run(self._get_tree_sync, sha)

    async def create_tree(self, base_sha: Optional[str], entries: List[TreeEntry]) -> TreeInfo:
        return await self._run(self._create_tree_sync, base_sha, entries)

    async def create_blob(self, content: bytes) -> str:
        return await self._run(self._create_blob_sync, content)

    async def get_blob(self, sha: str) -> bytes:
        return await self._run(self._get_blob_sync, sha)

    async def read_file(self, path: str, branch: str) -> bytes:
        return await self._run(self._read_file_sync, path, branch)

    # --- Commits and branches ---

    def _create_commit_sync(
        self,
        message: str,
        tree_sha: str,
        parents: List[str],
        author: Optional[Signature],
        committer: Optional[Signature],
    ) -> CommitInfo:
        author = author or self.default_author
        committer = committer or author
        try:
            tree = self.repo.tree(tree_sha)
        except (BadName, BadObject, ValueError) as e:
            raise NotFound(f"Tree {tree_sha} not found") from e
        commit = Commit.create_from_tree(
            self.repo,
            tree,
            message,
            parent_commits=[self._commit(parent) for parent in parents],
            head=False,
            author=self._actor(author),
            committer=self._actor(committer),
            author_date=_git_date(author.date),
            commit_date=_git_date(committer.date),
        )
        logger.debug(f"Created commit {commit.hexsha[:8]} on tree {tree_sha[:8]}")
        return self._commit_info(commit)

    def _path_exists(self, head: Optional[str], path: str) -> bool:
        if head is None:
            return False
        try:
            item = self._commit(head).tree / path
        except KeyError:
            return False
        return item.type == "blob"

    def _create_blob_commit_sync(
        self,
        branch: str,
        path: str,
        content: Optional[bytes],
        message: str,
        change_kind: ChangeKind,
        author: Optional[Signature],
    ) -> CommitInfo:
        path = "/".join(split_path(path))
        head = self._resolve(f"heads/{branch}")
        exists = self._path_exists(head, path)
        if change_kind is ChangeKind.ADD and exists:
            raise HostUnavailable(f"{path} already exists on {branch}", status=409)
        if change_kind is not ChangeKind.ADD and not exists:
            raise NotFound(f"{path} not found on {branch}")

        if change_kind is ChangeKind.DELETE:
            entry = TreeEntry(path=path, sha=None)
        else:
            entry = TreeEntry(path=path, sha=self._create_blob_sync(content or b""))
        base_tree = self._commit(head).tree.hexsha if head else None
        tree = self._create_tree_sync(base_tree, [entry])
        commit = self._create_commit_sync(message, tree.sha, [head] if head else [], author, author)

        self.repo.git.update_ref(f"refs/heads/{branch}", commit.sha, head or NULL_SHA)
        logger.debug(f"{change_kind.value} {path} on {branch} -> {commit.sha[:8]}")
        return commit

    def _get_branch_sync(self, name: str) -> BranchInfo:
        head = self._resolve(f"heads/{name}")
        if head is None:
            raise NotFound(f"Branch {name} not found")
        return BranchInfo(name=name, commit=self._commit_info(self._commit(head)))

    async def create_blob_commit(
        self,
        branch: str,
        path: str,
        content: Optional[bytes],
        message: str,
        change_kind: ChangeKind,
        author: Optional[Signature] = None,
    ) -> CommitInfo:
        return await self._run(
            self._create_blob_commit_sync, branch, path, content, message, change_kind, author
        )

    async def create_commit(
        self,
        message: str,
        tree_sha: str,
        parents: List[str],
        author: Optional[Signature] = None,
        committer: Optional[Signature] = None,
    ) -> CommitInfo:
        return await self._run(self._create_commit_sync, message, tree_sha, parents, author, committer)

    async def get_commit(self, sha: str) -> CommitInfo:
        return await self._run(lambda: self._commit_info(self._commit(sha)))

    async def get_branch(self, name: str) -> BranchInfo:
        return await self._run(self._get_branch_sync, name)

    # --- Review requests ---

    @property
    def reviews_path(self) -> Path:
        return Path(self.repo.git_dir) / REVIEWS_FILE

    def _load_reviews(self) -> Dict[str, dict]:
        if not self.reviews_path.exists():
            return {}
        return json.loads(self.reviews_path.read_text(encoding="utf-8"))

    def _save_reviews(self, reviews: Dict[str, dict]) -> None:
        self.reviews_path.write_text(json.dumps(reviews, indent=2), encoding="utf-8")

    def _get_review(self, review_id: int) -> ReviewInfo:
        data = self._load_reviews().get(str(review_id))
        if data is None:
            raise NotFound(f"Review #{review_id} not found")
        return ReviewInfo(**data)

    def _set_review_state(self, review_id: int, state: str) -> None:
        with self._reviews_lock:
            reviews = self._load_reviews()
            reviews[str(review_id)]["state"] = state
            self._save_reviews(reviews)

    def _create_review_sync(self, title: str, body: str, source: str, target: str) -> ReviewInfo:
        head = self._resolve(f"heads/{source}")
        if head is None:
            raise NotFound(f"Branch {source} not found")
        if self._resolve(f"heads/{target}") is None:
            raise NotFound(f"Branch {target} not found")

        with self._reviews_lock:
            reviews = self._load_reviews()
            for data in reviews.values():
                if data["source_branch"] == source and data["target_branch"] == target and data["state"] == "open":
                    raise HostUnavailable(f"A review from {source} to {target} is already open", status=422)
            review_id = max((int(k) for k in reviews), default=0) + 1
            review = ReviewInfo(
                id=review_id,
                title=title,
                body=body,
                source_branch=source,
                target_branch=target,
                state="open",
                head=head,
            )
            reviews[str(review_id)] = asdict(review)
            self._save_reviews(reviews)
        logger.info(f"Opened review #{review_id}: {source} -> {target}")
        return review

    def _get_review_commits_sync(self, review_id: int) -> List[CommitInfo]:
        review = self._get_review(review_id)
        for branch in (review.source_branch, review.target_branch):
            if self._resolve(f"heads/{branch}") is None:
                raise NotFound(f"Branch {branch} not found")
        commits = self.repo.iter_commits(
            f"refs/heads/{review.target_branch}..refs/heads/{review.source_branch}", reverse=True
        )
        return [self._commit_info(commit) for commit in commits]

    def _merge_review_sync(
        self, review_id: int, head_sha: Optional[str], method: MergeMethod, message: str
    ) -> CommitInfo:
        review = self._get_review(review_id)
        if review.state != "open":
            raise HostUnavailable(f"Review #{review_id} is {review.state}", status=422)
        source = self._resolve(f"heads/{review.source_branch}")
        target = self._resolve(f"heads/{review.target_branch}")
        if source is None or target is None:
            raise NotFound(f"Branches of review #{review_id} not found")
        if head_sha and head_sha != source:
            raise HostUnavailable(f"Head branch of review #{review_id} was modified", status=409)

        try:
            output = self.repo.git.merge_tree("--write-tree", target, source)
        except GitCommandError as e:
            if e.status == 1:
                raise MergeConflict(f"Review #{review_id} is not mergeable") from e
            raise
        tree_sha = output.splitlines()[0].strip()

        parents = [target, source] if method is MergeMethod.MERGE else [target]
        commit = self._create_commit_sync(message, tree_sha, parents, None, None)
        self.repo.git.update_ref(f"refs/heads/{review.target_branch}", commit.sha, target)
        self._set_review_state(review_id, "merged")
        logger.info(f"Merged review #{review_id} into {review.target_branch} as {commit.sha[:8]}")
        return commit

    def _close_review_sync(self, review_id: int) -> None:
        review = self._get_review(review_id)
        if review.state == "open":
            self._set_review_state(review_id, "closed")
            logger.info(f"Closed review #{review_id}")

    def _list_reviews_sync(self, target_branch: Optional[str], state: Optional[str]) -> List[ReviewInfo]:
        reviews = [ReviewInfo(**data) for data in self._load_reviews().values()]
        return [
            r
            for r in reviews
            if (target_branch is None or r.target_branch == target_branch)
            and (state is None or r.state == state)
        ]

    async def create_review(
        self, title: str, body: str, source_branch: str, target_branch: str
    ) -> ReviewInfo:
        return await self._run(self._create_review_sync, title, body, source_branch, target_branch)

    async def get_review(self, review_id: int) -> ReviewInfo:
        return await self._run(self._get_review, review_id)

    async def get_review_commits(self, review_id: int) -> List[CommitInfo]:
        return await self._run(self._get_review_commits_sync, review_id)

    async def merge_review(
        self,
        review_id: int,
        head_sha: Optional[str],
        method: MergeMethod,
        message: str,
    ) -> CommitInfo:
        return await self._run(self._merge_review_sync, review_id, head_sha, method, message)

    async def close_review(self, review_id: int) -> None:
        await self._run(self._close_review_sync, review_id)

    async def list_reviews(
        self, target_branch: Optional[str] = None, state: Optional[str] = "open"
    ) -> List[ReviewInfo]:
        return await self._run(self._list_reviews_sync, target_branch, state)
