"""
Data models for the Git editorial workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class WorkflowStatus(Enum):
    """Editorial status of an unpublished entry."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    PENDING_PUBLISH = "pending_publish"
    PUBLISHED = "published"


class ChangeKind(Enum):
    """Kind of change applied by a single-blob commit."""

    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"


class MergeMethod(Enum):
    """How a review request is merged into its target branch."""

    MERGE = "merge"
    SQUASH = "squash"


@dataclass
class FileItem:
    """A changed file handed over by the calling application."""

    path: str
    raw: Optional[Union[bytes, str]] = None
    is_binary: bool = False
    sha: Optional[str] = None
    uploaded: bool = False

    def content_bytes(self) -> bytes:
        if self.raw is None:
            return b""
        if isinstance(self.raw, bytes):
            return self.raw
        return self.raw.encode("utf-8")


@dataclass
class Leaf:
    """Tree node holding a single file."""

    item: FileItem


@dataclass
class Subtree:
    """Tree node holding named children (files or directories)."""

    children: Dict[str, "TreeNode"] = field(default_factory=dict)


TreeNode = Union[Leaf, Subtree]


BLOB_MODE = "100644"
TREE_MODE = "040000"


@dataclass
class TreeEntry:
    """One row of a host tree object.

    In a ``create_tree`` request ``path`` may contain slashes and a ``sha`` of
    ``None`` removes the path.
    """

    path: str
    mode: str = BLOB_MODE
    type: str = "blob"
    sha: Optional[str] = None


@dataclass
class TreeInfo:
    """A tree object as read from or written to the host."""

    sha: Optional[str]
    entries: List[TreeEntry] = field(default_factory=list)

    def find(self, name: str) -> Optional[TreeEntry]:
        for entry in self.entries:
            if entry.path == name:
                return entry
        return None


@dataclass
class PersistedTree:
    """Result of patching an overlay onto a base tree."""

    path: str
    sha: str
    base_sha: Optional[str] = None

    def as_entry(self) -> TreeEntry:
        return TreeEntry(path=self.path, mode=TREE_MODE, type="tree", sha=self.sha)


@dataclass
class Signature:
    """Author or committer identity."""

    name: str
    email: str
    date: Optional[datetime] = None


@dataclass
class CommitInfo:
    """Information about a commit on the host."""

    sha: str
    message: str
    tree: str
    parents: List[str] = field(default_factory=list)
    author: Optional[Signature] = None
    committer: Optional[Signature] = None

    @property
    def first_parent(self) -> Optional[str]:
        return self.parents[0] if self.parents else None


@dataclass
class RefInfo:
    """A named reference and the object it points to."""

    name: str
    sha: str


@dataclass
class BranchInfo:
    """A branch and its head commit."""

    name: str
    commit: CommitInfo


@dataclass
class ReviewInfo:
    """A review request (pull request) on the host."""

    id: int
    title: str
    body: str
    source_branch: str
    target_branch: str
    state: str = "open"
    head: Optional[str] = None


@dataclass
class TrackedObject:
    """Path and content address of a file tracked by a metadata record."""

    path: str
    sha: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "sha": self.sha}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TrackedObject:
        return cls(path=data["path"], sha=data.get("sha"))


@dataclass
class ReviewRef:
    """Review request id and the head commit the workflow last wrote."""

    id: int
    head: Optional[str] = None


@dataclass
class MetadataRecord:
    """Tracking record of an entry under editorial workflow."""

    key: str
    status: WorkflowStatus
    review: ReviewRef
    branch: str
    entry: TrackedObject
    files: List[TrackedObject] = field(default_factory=list)
    collection: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    timestamp: Optional[str] = None
    user: Optional[str] = None

    def tracked_paths(self) -> List[str]:
        return [f.path for f in self.files] + [self.entry.path]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the mapping stored as ``{key}.json``."""
        return {
            "type": "PR",
            "key": self.key,
            "status": self.status.value,
            "pr": {"number": self.review.id, "head": self.review.head},
            "user": self.user,
            "branch": self.branch,
            "collection": self.collection,
            "title": self.title,
            "description": self.description,
            "objects": {
                "entry": self.entry.to_dict(),
                "files": [f.to_dict() for f in self.files],
            },
            "timeStamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MetadataRecord:
        pr = data.get("pr") or {}
        objects = data.get("objects") or {}
        return cls(
            key=data["key"],
            status=WorkflowStatus(data["status"]),
            review=ReviewRef(id=pr.get("number"), head=pr.get("head")),
            branch=data["branch"],
            entry=TrackedObject.from_dict(objects["entry"]),
            files=[TrackedObject.from_dict(f) for f in objects.get("files", [])],
            collection=data.get("collection"),
            title=data.get("title"),
            description=data.get("description"),
            timestamp=data.get("timeStamp"),
            user=data.get("user"),
        )


@dataclass
class CacheEntry:
    """Locally cached payload with an absolute expiry (epoch seconds)."""

    key: str
    expires_at: float
    payload: Dict[str, Any]


@dataclass
class Entry:
    """The content entry being edited, plus the key that names its workflow."""

    slug: str
    file: FileItem

    @property
    def path(self) -> str:
        return self.file.path


@dataclass
class PersistOptions:
    """Caller supplied options for persisting an entry."""

    commit_message: str
    collection_name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    use_workflow: bool = True
    has_asset_store: Optional[bool] = None


@dataclass
class UnpublishedEntry:
    """An entry read back from its review branch."""

    slug: str
    path: str
    raw: bytes
    files: List[TrackedObject]
    is_modification: bool
    metadata: MetadataRecord


def merge_tracked_files(
    existing: List[TrackedObject], incoming: List[TrackedObject]
) -> List[TrackedObject]:
    """Union of tracked files keyed by path; incoming addresses win."""
    merged: Dict[str, TrackedObject] = {f.path: f for f in existing}
    for tracked in incoming:
        merged[tracked.path] = tracked
    return list(merged.values())


class WorkflowError(Exception):
    """Base exception for editorial workflow operations."""

    pass


class HostError(WorkflowError):
    """Error reported by the host API."""

    default_status: Optional[int] = None

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status if status is not None else self.default_status


class HostUnavailable(HostError):
    """Transport or host-side failure; not retried at this layer."""

    pass


class NotFound(HostError):
    """The requested ref, object, file or review does not exist."""

    default_status = 404


class MergeConflict(HostError):
    """The host refused to merge a review request."""

    default_status = 405


class UnexpectedBranchState(WorkflowError):
    """A review branch changed outside the workflow."""

    pass


class ConfigurationError(WorkflowError):
    """Invalid configuration or a forbidden operation, detected before any I/O."""

    pass


class EditorialWorkflowError(WorkflowError):
    """Raised when content is not (or no longer) under editorial workflow."""

    def __init__(self, message: str, not_under_editorial_workflow: bool = False) -> None:
        super().__init__(message)
        self.not_under_editorial_workflow = not_under_editorial_workflow
