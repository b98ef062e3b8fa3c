"""
Tests for composing overlay trees and patching them onto host trees.
"""

import pytest

from git_editorial.models import FileItem, HostUnavailable, Leaf, Subtree, TreeEntry
from git_editorial.tree_builder import TreeBuilder, compose_tree, iter_leaves, split_path


def _files(*paths):
    return [FileItem(path=p, raw=f"content of {p}") for p in paths]


class TestComposeTree:
    """Test compose_tree."""

    def test_split_path_ignores_empty_segments(self):
        assert split_path("/posts//a.md") == ["posts", "a.md"]

    def test_nests_directories(self):
        tree = compose_tree(_files("posts/2024/a.md", "posts/b.md", "README.md"))

        assert isinstance(tree.children["README.md"], Leaf)
        posts = tree.children["posts"]
        assert isinstance(posts, Subtree)
        assert isinstance(posts.children["b.md"], Leaf)
        assert isinstance(posts.children["2024"].children["a.md"], Leaf)

    def test_skips_uploaded_files(self):
        files = _files("posts/a.md", "images/a.png")
        files[1].uploaded = True

        tree = compose_tree(files)

        assert set(tree.children) == {"posts"}

    def test_structure_independent_of_input_order(self):
        paths = ["posts/a.md", "images/x/y.png", "posts/b.md", "index.md"]
        forward = compose_tree(_files(*paths))
        backward = compose_tree(_files(*reversed(paths)))

        assert dict(iter_leaves(forward)).keys() == dict(iter_leaves(backward)).keys()
        assert sorted(p for p, _ in iter_leaves(forward)) == sorted(paths)

    def test_file_directory_clash(self):
        with pytest.raises(ValueError):
            compose_tree(_files("posts", "posts/a.md"))
        with pytest.raises(ValueError):
            compose_tree(_files("posts/a.md", "posts"))

    def test_empty_path_rejected(self):
        with pytest.raises(ValueError):
            compose_tree([FileItem(path="/")])


class TestMergeTree:
    """Test TreeBuilder.merge_tree against the in-memory host."""

    async def _upload(self, host, files):
        for item in files:
            item.sha = await host.create_blob(item.content_bytes())

    @pytest.mark.asyncio
    async def test_patch_keeps_untouched_entries(self, host):
        base = await host.get_branch("master")
        files = _files("posts/post-1.md")
        overlay = compose_tree(files)
        await self._upload(host, files)

        result = await TreeBuilder(host).merge_tree(base.commit.tree, "", overlay)

        flat = host.flatten(result.sha)
        assert flat["README.md"] == host.flatten(base.commit.tree)["README.md"]
        assert host.blobs[flat["posts/post-1.md"]] == b"content of posts/post-1.md"
        assert result.base_sha == base.commit.tree
        assert result.path == ""

    @pytest.mark.asyncio
    async def test_recurses_into_existing_subtree(self, host):
        builder = TreeBuilder(host)
        first = _files("posts/a.md", "posts/b.md")
        overlay = compose_tree(first)
        await self._upload(host, first)
        tree_one = await builder.merge_tree(None, "", overlay)

        second = [FileItem(path="posts/b.md", raw="new b"), FileItem(path="posts/c.md", raw="c")]
        overlay = compose_tree(second)
        await self._upload(host, second)
        tree_two = await builder.merge_tree(tree_one.sha, "", overlay)

        flat = host.flatten(tree_two.sha)
        assert set(flat) == {"posts/a.md", "posts/b.md", "posts/c.md"}
        assert flat["posts/a.md"] == host.flatten(tree_one.sha)["posts/a.md"]
        assert host.blobs[flat["posts/b.md"]] == b"new b"

    @pytest.mark.asyncio
    async def test_replaced_blob_keeps_mode(self, host):
        blob = await host.create_blob(b"#!/bin/sh\n")
        base = await host.create_tree(None, [TreeEntry("run.sh", "100755", "blob", blob)])
        files = [FileItem(path="run.sh", raw="#!/bin/sh\necho hi\n")]
        overlay = compose_tree(files)
        await self._upload(host, files)

        result = await TreeBuilder(host).merge_tree(base.sha, "", overlay)

        assert host.trees[result.sha]["run.sh"].mode == "100755"

    @pytest.mark.asyncio
    async def test_same_overlay_is_idempotent(self, host):
        base = await host.get_branch("master")
        files = _files("posts/a.md")
        overlay = compose_tree(files)
        await self._upload(host, files)
        builder = TreeBuilder(host)

        first = await builder.merge_tree(base.commit.tree, "", overlay)
        second = await builder.merge_tree(base.commit.tree, "", overlay)

        assert first.sha == second.sha

    @pytest.mark.asyncio
    async def test_requires_uploaded_content(self, host):
        overlay = compose_tree(_files("posts/a.md"))
        with pytest.raises(ValueError):
            await TreeBuilder(host).merge_tree(None, "", overlay)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", ["get_tree", "create_tree"])
    async def test_host_failure_propagates(self, host, failing):
        base = await host.get_branch("master")
        files = _files("posts/a.md")
        overlay = compose_tree(files)
        await self._upload(host, files)
        trees = dict(host.trees)
        host.fail_next(failing, HostUnavailable("host is down"))

        with pytest.raises(HostUnavailable):
            await TreeBuilder(host).merge_tree(base.commit.tree, "", overlay)

        assert host.trees == trees


class TestGetBlobInTree:
    """Test TreeBuilder.get_blob_in_tree."""

    @pytest.mark.asyncio
    async def test_finds_nested_blob(self, host):
        blob = await host.create_blob(b"x")
        tree = await host.create_tree(None, [TreeEntry("posts/2024/a.md", sha=blob)])

        entry = await TreeBuilder(host).get_blob_in_tree(tree.sha, "posts/2024/a.md")

        assert entry is not None
        assert entry.sha == blob

    @pytest.mark.asyncio
    async def test_missing_paths(self, host):
        blob = await host.create_blob(b"x")
        tree = await host.create_tree(None, [TreeEntry("posts/a.md", sha=blob)])
        builder = TreeBuilder(host)

        assert await builder.get_blob_in_tree(tree.sha, "posts/b.md") is None
        assert await builder.get_blob_in_tree(tree.sha, "drafts/a.md") is None
        assert await builder.get_blob_in_tree(tree.sha, "posts") is None
        assert await builder.get_blob_in_tree(tree.sha, "posts/a.md/x") is None
