"""
Shared fixtures: an in-memory host implementing the host API.
"""

from __future__ import annotations

import hashlib
from typing import Dict, List, Optional, Set

import pytest

from git_editorial.config import WorkflowConfig
from git_editorial.host_interface import HostApi
from git_editorial.metadata_store import MetadataCache, MetadataStore
from git_editorial.models import (
    BLOB_MODE,
    TREE_MODE,
    BranchInfo,
    ChangeKind,
    CommitInfo,
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
from git_editorial.tree_builder import split_path
from git_editorial.workflow import EditorialWorkflow


def _address(kind: str, payload: bytes) -> str:
    return hashlib.sha1(kind.encode("utf-8") + b"\0" + payload).hexdigest()


class FakeHost(HostApi):
    """Content-addressed in-memory host with call counters for assertions."""

    def __init__(self, base_branch: str = "master") -> None:
        self.blobs: Dict[str, bytes] = {}
        self.trees: Dict[str, Dict[str, TreeEntry]] = {}
        self.commits: Dict[str, CommitInfo] = {}
        self.refs: Dict[str, str] = {}
        self.reviews: Dict[int, ReviewInfo] = {}
        self.calls: Dict[str, int] = {}
        self.conflicting_reviews: Set[int] = set()
        self.failures: Dict[str, List[Exception]] = {}
        self._clock = 0

        readme = self._put_blob(b"# Content\n")
        tree = self._put_tree({"README.md": TreeEntry("README.md", BLOB_MODE, "blob", readme)})
        root = self._put_commit("Initial commit", tree, [], None, None)
        self.refs[f"heads/{base_branch}"] = root.sha

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def fail_next(self, name: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of host method ``name`` raise ``error``."""
        self.failures.setdefault(name, []).extend([error] * times)

    # --- Storage helpers ---

    def _put_blob(self, content: bytes) -> str:
        sha = _address("blob", content)
        self.blobs[sha] = content
        return sha

    def _put_tree(self, entries: Dict[str, TreeEntry]) -> str:
        payload = "\n".join(
            f"{e.mode} {e.type} {e.sha} {name}" for name, e in sorted(entries.items())
        ).encode("utf-8")
        sha = _address("tree", payload)
        self.trees[sha] = dict(entries)
        return sha

    def _put_commit(
        self,
        message: str,
        tree: str,
        parents: List[str],
        author: Optional[Signature],
        committer: Optional[Signature],
    ) -> CommitInfo:
        self._clock += 1
        author = author or Signature("Fake Author", "fake@example.com")
        committer = committer or author
        payload = f"{tree}|{','.join(parents)}|{author}|{committer}|{message}|{self._clock}".encode("utf-8")
        commit = CommitInfo(
            sha=_address("commit", payload),
            message=message,
            tree=tree,
            parents=list(parents),
            author=author,
            committer=committer,
        )
        self.commits[commit.sha] = commit
        return commit

    def _tree_of(self, sha: Optional[str]) -> Dict[str, TreeEntry]:
        if not sha:
            return {}
        if sha in self.commits:
            sha = self.commits[sha].tree
        if sha not in self.trees:
            raise NotFound(f"Tree {sha} not found")
        return dict(self.trees[sha])

    def _apply(self, base_sha: Optional[str], entries: List[TreeEntry]) -> str:
        current = self._tree_of(base_sha)
        nested: Dict[str, List[TreeEntry]] = {}
        for entry in entries:
            name, *rest = split_path(entry.path)
            if rest:
                nested.setdefault(name, []).append(
                    TreeEntry("/".join(rest), entry.mode, entry.type, entry.sha)
                )
            elif entry.sha is None:
                current.pop(name, None)
            else:
                current[name] = TreeEntry(name, entry.mode, entry.type, entry.sha)
        for name, children in nested.items():
            existing = current.get(name)
            sub_base = existing.sha if existing is not None and existing.type == "tree" else None
            sub_sha = self._apply(sub_base, children)
            if self.trees[sub_sha]:
                current[name] = TreeEntry(name, TREE_MODE, "tree", sub_sha)
            else:
                current.pop(name, None)
        return self._put_tree(current)

    def flatten(self, tree_sha: Optional[str], prefix: str = "") -> Dict[str, str]:
        """Map every blob path below a tree (or commit) to its address."""
        files: Dict[str, str] = {}
        for name, entry in self._tree_of(tree_sha).items():
            path = f"{prefix}{name}"
            if entry.type == "tree":
                files.update(self.flatten(entry.sha, f"{path}/"))
            else:
                files[path] = entry.sha
        return files

    def _ancestors(self, sha: str) -> Set[str]:
        seen: Set[str] = set()
        stack = [sha]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.commits[current].parents)
        return seen

    def head(self, branch: str) -> Optional[str]:
        return self.refs.get(f"heads/{branch}")

    def file_at(self, branch: str, path: str) -> Optional[bytes]:
        sha = self.flatten(self.head(branch)).get(path)
        return self.blobs[sha] if sha else None

    # --- HostApi ---

    async def get_ref(self, name: str) -> Optional[RefInfo]:
        self._count("get_ref")
        sha = self.refs.get(name)
        return RefInfo(name, sha) if sha else None

    async def create_ref(self, name: str, sha: str) -> RefInfo:
        self._count("create_ref")
        if name in self.refs:
            raise HostUnavailable(f"Reference already exists: {name}", status=422)
        self.refs[name] = sha
        return RefInfo(name, sha)

    async def update_ref(
        self, name: str, sha: str, force: bool = False, old_sha: Optional[str] = None
    ) -> RefInfo:
        self._count("update_ref")
        current = self.refs.get(name)
        if current is None:
            raise NotFound(f"Reference does not exist: {name}")
        if old_sha and old_sha != current:
            raise HostUnavailable(f"Reference {name} moved", status=409)
        if not force and current not in self._ancestors(sha):
            raise HostUnavailable(f"Update of {name} is not a fast forward", status=422)
        self.refs[name] = sha
        return RefInfo(name, sha)

    async def delete_ref(self, name: str) -> None:
        self._count("delete_ref")
        if name not in self.refs:
            raise NotFound(f"Reference does not exist: {name}")
        del self.refs[name]

    async def get_tree(self, sha: Optional[str]) -> TreeInfo:
        self._count("get_tree")
        entries = self._tree_of(sha)
        resolved = self.commits[sha].tree if sha in self.commits else sha
        return TreeInfo(resolved, list(entries.values()))

    async def create_tree(self, base_sha: Optional[str], entries: List[TreeEntry]) -> TreeInfo:
        self._count("create_tree")
        sha = self._apply(base_sha, entries)
        return TreeInfo(sha, list(self.trees[sha].values()))

    async def create_blob(self, content: bytes) -> str:
        self._count("create_blob")
        return self._put_blob(content)

    async def get_blob(self, sha: str) -> bytes:
        self._count("get_blob")
        if sha not in self.blobs:
            raise NotFound(f"Blob {sha} not found")
        return self.blobs[sha]

    async def read_file(self, path: str, branch: str) -> bytes:
        self._count("read_file")
        head = self.head(branch)
        if head is None:
            raise NotFound(f"Branch {branch} not found")
        sha = self.flatten(head).get("/".join(split_path(path)))
        if sha is None:
            raise NotFound(f"{path} not found on {branch}")
        return self.blobs[sha]

    async def create_blob_commit(
        self,
        branch: str,
        path: str,
        content: Optional[bytes],
        message: str,
        change_kind: ChangeKind,
        author: Optional[Signature] = None,
    ) -> CommitInfo:
        self._count("create_blob_commit")
        head = self.head(branch)
        exists = head is not None and path in self.flatten(head)
        if change_kind is ChangeKind.ADD and exists:
            raise HostUnavailable(f"{path} already exists on {branch}", status=409)
        if change_kind is not ChangeKind.ADD and not exists:
            raise NotFound(f"{path} not found on {branch}")
        sha = None if change_kind is ChangeKind.DELETE else self._put_blob(content or b"")
        tree = self._apply(self.commits[head].tree if head else None, [TreeEntry(path, sha=sha)])
        commit = self._put_commit(message, tree, [head] if head else [], author, author)
        self.refs[f"heads/{branch}"] = commit.sha
        return commit

    async def create_commit(
        self,
        message: str,
        tree_sha: str,
        parents: List[str],
        author: Optional[Signature] = None,
        committer: Optional[Signature] = None,
    ) -> CommitInfo:
        self._count("create_commit")
        if tree_sha not in self.trees:
            raise NotFound(f"Tree {tree_sha} not found")
        return self._put_commit(message, tree_sha, parents, author, committer)

    async def get_commit(self, sha: str) -> CommitInfo:
        self._count("get_commit")
        if sha not in self.commits:
            raise NotFound(f"Commit {sha} not found")
        return self.commits[sha]

    async def get_branch(self, name: str) -> BranchInfo:
        self._count("get_branch")
        head = self.head(name)
        if head is None:
            raise NotFound(f"Branch {name} not found")
        return BranchInfo(name, self.commits[head])

    async def create_review(
        self, title: str, body: str, source_branch: str, target_branch: str
    ) -> ReviewInfo:
        self._count("create_review")
        review = ReviewInfo(
            id=len(self.reviews) + 1,
            title=title,
            body=body,
            source_branch=source_branch,
            target_branch=target_branch,
            head=self.head(source_branch),
        )
        self.reviews[review.id] = review
        return review

    async def get_review(self, review_id: int) -> ReviewInfo:
        self._count("get_review")
        if review_id not in self.reviews:
            raise NotFound(f"Review #{review_id} not found")
        return self.reviews[review_id]

    async def get_review_commits(self, review_id: int) -> List[CommitInfo]:
        self._count("get_review_commits")
        review = self.reviews[review_id]
        excluded = self._ancestors(self.head(review.target_branch))
        chain = []
        current = self.head(review.source_branch)
        while current and current not in excluded:
            chain.append(self.commits[current])
            current = self.commits[current].first_parent
        return list(reversed(chain))

    async def merge_review(
        self,
        review_id: int,
        head_sha: Optional[str],
        method: MergeMethod,
        message: str,
    ) -> CommitInfo:
        self._count("merge_review")
        if review_id in self.conflicting_reviews:
            raise MergeConflict(f"Review #{review_id} is not mergeable")
        review = self.reviews[review_id]
        source = self.head(review.source_branch)
        target = self.head(review.target_branch)
        common = self._ancestors(target)
        base = source
        while base not in common:
            base = self.commits[base].first_parent
        base_files = self.flatten(base)
        changes = [
            TreeEntry(path, sha=sha)
            for path, sha in self.flatten(source).items()
            if base_files.get(path) != sha
        ]
        tree = self._apply(self.commits[target].tree, changes)
        parents = [target, source] if method is MergeMethod.MERGE else [target]
        commit = self._put_commit(message, tree, parents, None, None)
        self.refs[f"heads/{review.target_branch}"] = commit.sha
        review.state = "merged"
        return commit

    async def close_review(self, review_id: int) -> None:
        self._count("close_review")
        if review_id not in self.reviews:
            raise NotFound(f"Review #{review_id} not found")
        if self.reviews[review_id].state == "open":
            self.reviews[review_id].state = "closed"

    async def list_reviews(
        self, target_branch: Optional[str] = None, state: Optional[str] = "open"
    ) -> List[ReviewInfo]:
        self._count("list_reviews")
        return [
            r
            for r in self.reviews.values()
            if (target_branch is None or r.target_branch == target_branch)
            and (state is None or r.state == state)
        ]


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture()
def config() -> WorkflowConfig:
    return WorkflowConfig()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(host: FakeHost, config: WorkflowConfig, clock: FakeClock) -> MetadataStore:
    return MetadataStore(host, config, MetadataCache(ttl=config.cache_ttl, clock=clock))


@pytest.fixture()
def workflow(host: FakeHost, config: WorkflowConfig, store: MetadataStore) -> EditorialWorkflow:
    return EditorialWorkflow(host, config, metadata_store=store)
