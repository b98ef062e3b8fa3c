"""
Git Editorial - an editorial workflow for content versioned on a Git-like host.

Draft changes live on dedicated branches, are tracked by metadata records on a
side branch, and are published by merging review requests (with a forced merge
when the host refuses) or discarded without touching the base branch.
"""

__version__ = "0.1.0"

from .config import WorkflowConfig
from .git_host import GitHost
from .host_interface import HostApi
from .metadata_store import MetadataCache, MetadataStore
from .models import (
    CommitInfo,
    Entry,
    FileItem,
    MetadataRecord,
    PersistOptions,
    WorkflowError,
    WorkflowStatus,
)
from .rebase_engine import RebaseEngine, assert_head_reachable
from .tree_builder import TreeBuilder, compose_tree
from .workflow import EditorialWorkflow

__all__ = [
    "EditorialWorkflow",
    "WorkflowConfig",
    "GitHost",
    "HostApi",
    "MetadataCache",
    "MetadataStore",
    "RebaseEngine",
    "TreeBuilder",
    "compose_tree",
    "assert_head_reachable",
    "CommitInfo",
    "Entry",
    "FileItem",
    "MetadataRecord",
    "PersistOptions",
    "WorkflowError",
    "WorkflowStatus",
]
