"""
Tests for sandbox path confinement.
"""

import os

import pytest

from docseal_backend.exceptions import PathViolation
from docseal_backend.path_guard import PathGuard


@pytest.fixture
def guard(sandbox):
    return PathGuard(sandbox)


class TestResolve:
    def test_relative_path_resolves_inside(self, guard, sandbox):
        assert guard.resolve("doc.pdf") == sandbox.resolve() / "doc.pdf"

    def test_normalizes_inner_dots(self, guard, sandbox):
        assert guard.resolve("a/../doc.pdf") == sandbox.resolve() / "doc.pdf"

    @pytest.mark.parametrize("candidate", ["../escape.pdf", "a/../../escape.pdf", "..", ".", ""])
    def test_rejects_escapes(self, guard, candidate):
        with pytest.raises(PathViolation):
            guard.resolve(candidate)

    def test_rejects_absolute(self, guard):
        with pytest.raises(PathViolation):
            guard.resolve("/etc/passwd")

    def test_rejects_nul_byte(self, guard):
        with pytest.raises(PathViolation):
            guard.resolve("doc\x00.pdf")

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_rejects_symlink_escape(self, guard, sandbox, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (sandbox / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(PathViolation):
            guard.resolve("link/secret.pdf")


class TestDerive:
    def test_derive_builds_sibling(self, guard, sandbox):
        source = guard.resolve("upload-1.pdf")
        assert guard.derive(source, "sanitized") == sandbox.resolve() / "upload-1.sanitized.pdf"

    def test_derive_rejects_outside_source(self, guard, tmp_path):
        with pytest.raises(PathViolation):
            guard.derive(tmp_path / "x.pdf", "encrypted")

    def test_contains(self, guard, sandbox, tmp_path):
        assert guard.contains(sandbox / "x.pdf")
        assert not guard.contains(tmp_path / "x.pdf")
