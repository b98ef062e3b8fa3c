"""
Configuration for the editorial workflow.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .models import ConfigurationError, MergeMethod, Signature


ENV_PREFIX = "GIT_EDITORIAL_"

DEFAULT_REVIEW_BODY = "Automatically generated by the editorial workflow"


@dataclass
class WorkflowConfig:
    """Settings shared by the metadata store and the workflow controller."""

    base_branch: str = "master"
    branch_prefix: str = "cms/"
    metadata_branch: str = "meta/_cms"
    merge_method: MergeMethod = MergeMethod.MERGE
    cache_ttl: float = 300.0
    has_asset_store: bool = False
    author_name: str = "Editorial Workflow"
    author_email: str = "editorial@localhost"
    review_body: str = DEFAULT_REVIEW_BODY

    def __post_init__(self) -> None:
        if isinstance(self.merge_method, str):
            try:
                self.merge_method = MergeMethod(self.merge_method.lower())
            except ValueError as e:
                raise ConfigurationError(f"Unknown merge method: {self.merge_method}") from e
        if not self.branch_prefix:
            raise ConfigurationError("branch_prefix must not be empty")
        if not self.base_branch:
            raise ConfigurationError("base_branch must not be empty")
        if self.base_branch.startswith(self.branch_prefix):
            raise ConfigurationError(
                f"Base branch {self.base_branch} must not use the reserved prefix {self.branch_prefix}"
            )
        if self.metadata_branch.startswith(self.branch_prefix):
            raise ConfigurationError(
                f"Metadata branch {self.metadata_branch} must not use the reserved prefix {self.branch_prefix}"
            )
        if self.cache_ttl < 0:
            raise ConfigurationError("cache_ttl must not be negative")

    @property
    def author(self) -> Signature:
        return Signature(name=self.author_name, email=self.author_email)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> WorkflowConfig:
        """Build a config from ``GIT_EDITORIAL_*`` variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {}

        def _get(name: str) -> Optional[str]:
            value = env.get(f"{ENV_PREFIX}{name}")
            return value if value else None

        if _get("BRANCH"):
            values["base_branch"] = _get("BRANCH")
        if _get("BRANCH_PREFIX"):
            values["branch_prefix"] = _get("BRANCH_PREFIX")
        if _get("METADATA_BRANCH"):
            values["metadata_branch"] = _get("METADATA_BRANCH")
        if _get("MERGE_METHOD"):
            values["merge_method"] = _get("MERGE_METHOD")
        if _get("CACHE_TTL"):
            try:
                values["cache_ttl"] = float(_get("CACHE_TTL"))
            except ValueError as e:
                raise ConfigurationError(f"Invalid {ENV_PREFIX}CACHE_TTL: {_get('CACHE_TTL')}") from e
        if _get("ASSET_STORE"):
            values["has_asset_store"] = _get("ASSET_STORE").lower() in ("1", "true", "yes", "on")
        if _get("AUTHOR_NAME"):
            values["author_name"] = _get("AUTHOR_NAME")
        if _get("AUTHOR_EMAIL"):
            values["author_email"] = _get("AUTHOR_EMAIL")

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
