"""Tests for exclude pattern handling."""

from pathlib import Path

import pytest

from shadowtree.excludes import (
    BASIC_EXCLUDES,
    BUILTIN_EXCLUDES,
    build_exclude_patterns,
    gitignore_to_excludes,
    is_excluded,
    write_exclude_file,
)


class TestGitignoreToExcludes:
    def test_skips_comments_blanks_and_negations(self) -> None:
        assert gitignore_to_excludes(["# comment", "", "   ", "!keep.log"]) == []

    def test_directory_pattern_also_excludes_contents(self) -> None:
        assert gitignore_to_excludes(["build/"]) == ["build/", "build/**"]

    def test_bare_name_matches_at_any_depth(self) -> None:
        assert gitignore_to_excludes(["*.log"]) == ["*.log", "**/*.log"]

    def test_path_pattern_is_kept_as_is(self) -> None:
        assert gitignore_to_excludes(["docs/generated"]) == ["docs/generated"]


class TestBuildExcludePatterns:
    def test_builtins_first_then_gitignore_then_extra(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("dist/\n")

        patterns = build_exclude_patterns(tmp_path, extra=["*.tmp"])

        assert patterns[: len(BUILTIN_EXCLUDES)] == BUILTIN_EXCLUDES
        assert patterns[len(BUILTIN_EXCLUDES):] == ["dist/", "dist/**", "*.tmp"]

    def test_without_gitignore(self, tmp_path: Path) -> None:
        assert build_exclude_patterns(tmp_path) == BUILTIN_EXCLUDES

    def test_write_and_read_back(self, tmp_path: Path) -> None:
        exclude_file = tmp_path / "shadows" / "abc-excludes.txt"

        written = write_exclude_file(tmp_path, exclude_file)

        assert exclude_file.exists()
        assert exclude_file.read_text().splitlines() == written

    def test_unreadable_gitignore_falls_back_to_basic_list(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_bytes(b"\xff\xfe\xfa")
        exclude_file = tmp_path / "excludes.txt"

        assert write_exclude_file(tmp_path, exclude_file) == BASIC_EXCLUDES


class TestIsExcluded:
    @pytest.mark.parametrize("path", [
        "node_modules/react/index.js",
        "src/node_modules/x.js",
        ".git/HEAD",
        "pkg/__pycache__/mod.cpython-312.pyc",
        ".venv/bin/python",
        "a/b/c.pyc",
        ".DS_Store",
    ])
    def test_builtin_excludes(self, path: str) -> None:
        assert is_excluded(path, BUILTIN_EXCLUDES)

    @pytest.mark.parametrize("path", ["src/main.py", "README.md", "gitignore.txt", "nodes/modules.js"])
    def test_regular_files_are_kept(self, path: str) -> None:
        assert not is_excluded(path, BUILTIN_EXCLUDES)

    def test_directory_pattern_does_not_match_file_of_same_name(self) -> None:
        patterns = gitignore_to_excludes(["build/"])

        assert is_excluded("build/out.js", patterns)
        assert is_excluded("build/nested/out.js", patterns)
        assert not is_excluded("build", patterns)

    def test_anchored_pattern_only_matches_at_root(self) -> None:
        assert is_excluded("secret.txt", ["/secret.txt"])
        assert not is_excluded("nested/secret.txt", ["/secret.txt"])

    def test_slash_pattern_matches_from_root(self) -> None:
        assert is_excluded("docs/generated/api.md", ["docs/generated"])
        assert not is_excluded("other/docs/generated/api.md", ["docs/generated"])

    def test_double_star_prefix_matches_anywhere(self) -> None:
        assert is_excluded("a/b/logs/today.txt", ["**/logs/today.txt"])
