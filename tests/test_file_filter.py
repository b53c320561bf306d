from __future__ import annotations

import pytest

from coderag.indexing.file_filter import FileFilter
from coderag.indexing.languages import infer_language_from_path


def test_default_filter_accepts_source_and_ignores_vendor_dirs() -> None:
    f = FileFilter()
    assert f.accepts("src/app/main.py")
    assert f.accepts("web/components/Button.tsx")
    assert not f.accepts("node_modules/react/index.js")
    assert not f.accepts("packages/ui/node_modules/lib/a.js")
    assert not f.accepts("dist/bundle.js")
    assert not f.accepts("README.md")
    assert not f.accepts("static/app.min.js")


def test_filter_sorts_and_deduplicates() -> None:
    f = FileFilter(watch_globs=["*.go"], ignore_globs=[])
    assert f.filter(["b.go", "a.go", "b.go", "c.py"]) == ["a.go", "b.go"]


def test_leading_slash_and_backslashes_are_normalized() -> None:
    f = FileFilter(watch_globs=["src/*.py"], ignore_globs=[])
    assert f.accepts("/src/a.py")
    assert f.accepts("src\\a.py")


def test_empty_watch_globs_rejected() -> None:
    with pytest.raises(ValueError):
        FileFilter(watch_globs=[])


def test_language_inference() -> None:
    assert infer_language_from_path("a/b/c.py") == "python"
    assert infer_language_from_path("x.TSX") == "typescript"
    assert infer_language_from_path("Makefile") == "text"
