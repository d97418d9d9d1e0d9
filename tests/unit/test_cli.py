"""Tests for CLI commands."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

from shadowtree import __version__
from shadowtree.cli import main
from shadowtree.commands import CommandError
from shadowtree.git_utils import DiffStats
from shadowtree.models import DiffData, SyncComplete


class TestMain:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, cli_runner) -> None:
        result = cli_runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("web", "sync", "cleanup"):
            assert command in result.output


class TestWebCommand:
    def test_passes_options_to_server(self, cli_runner, tmp_path: Path) -> None:
        with patch("shadowtree.web.app.run_server") as mock_run:
            result = cli_runner.invoke(main, [
                "web", "--repo", str(tmp_path), "--port", "9000", "--branch", "agent/fix", "--no-open",
            ])

        assert result.exit_code == 0, result.output
        kwargs = mock_run.call_args.kwargs
        assert kwargs["port"] == 9000
        assert kwargs["host"] is None
        assert kwargs["repo_path"] == tmp_path.resolve()
        assert kwargs["branch"] == "agent/fix"
        assert kwargs["open_in_browser"] is False

    def test_open_defaults_to_config(self, cli_runner, tmp_path: Path) -> None:
        with patch("shadowtree.web.app.run_server") as mock_run:
            cli_runner.invoke(main, ["web", "--repo", str(tmp_path)])

        assert mock_run.call_args.kwargs["open_in_browser"] is None


class TestSyncCommand:
    def test_prints_summary_and_stats(self, cli_runner, tmp_path: Path) -> None:
        result_payload = SyncComplete(
            has_changes=True,
            summary="Modified: 0, Added: 1, Deleted: 0",
            shadow_path="/tmp/claude-shadows/0123456789ab",
            diff_data=DiffData(
                status="?? notes.txt\n",
                diff="diff --git a/notes.txt b/notes.txt\n+hello\n",
                untracked_files=["notes.txt"],
                stats=DiffStats(additions=1, deletions=0, files=1),
            ),
            container_id="0123456789abcdef",
        )

        with patch("shadowtree.cli.shadows._sync_once", AsyncMock(return_value=result_payload)) as mock_sync:
            result = cli_runner.invoke(main, ["sync", "0123456789abcdef", "--repo", str(tmp_path), "--diff"])

        assert result.exit_code == 0, result.output
        assert "Modified: 0, Added: 1, Deleted: 0" in result.output
        assert "notes.txt" in result.output
        assert "+hello" in result.output
        assert mock_sync.await_args.args[1] == "0123456789abcdef"
        assert mock_sync.await_args.args[3] == "claude-changes"

    def test_no_changes(self, cli_runner, tmp_path: Path) -> None:
        payload = SyncComplete(
            has_changes=False,
            summary="No changes detected",
            shadow_path="/tmp/claude-shadows/0123456789ab",
            container_id="0123456789abcdef",
        )
        with patch("shadowtree.cli.shadows._sync_once", AsyncMock(return_value=payload)):
            result = cli_runner.invoke(main, ["sync", "0123456789abcdef", "--repo", str(tmp_path)])

        assert result.exit_code == 0
        assert "No changes detected" in result.output

    def test_failure_exits_nonzero(self, cli_runner, tmp_path: Path) -> None:
        error = CommandError(["docker", "cp"], 1, "No such container")
        with patch("shadowtree.cli.shadows._sync_once", AsyncMock(side_effect=error)):
            result = cli_runner.invoke(main, ["sync", "nope", "--repo", str(tmp_path)])

        assert result.exit_code == 1
        assert "Sync failed" in result.output


class TestCleanupCommand:
    def test_removes_only_matching_container(self, cli_runner) -> None:
        with cli_runner.isolated_filesystem():
            root = Path("shadows").resolve()
            Path(".shadowtree.yaml").write_text(f"shadow_root: {root}\n")
            (root / "0123456789ab").mkdir(parents=True)
            (root / "0123456789ab-excludes.txt").write_text(".git")
            (root / "fedcba987654").mkdir()

            result = cli_runner.invoke(main, ["cleanup", "--container", "0123456789abcdef", "--yes"])

            assert result.exit_code == 0, result.output
            assert sorted(p.name for p in root.iterdir()) == ["fedcba987654"]

    def test_declined_confirmation_keeps_everything(self, cli_runner) -> None:
        with cli_runner.isolated_filesystem():
            root = Path("shadows").resolve()
            Path(".shadowtree.yaml").write_text(f"shadow_root: {root}\n")
            (root / "0123456789ab").mkdir(parents=True)

            result = cli_runner.invoke(main, ["cleanup"], input="n\n")

            assert result.exit_code == 0
            assert (root / "0123456789ab").exists()

    def test_missing_root(self, cli_runner) -> None:
        with cli_runner.isolated_filesystem():
            Path(".shadowtree.yaml").write_text("shadow_root: ./does-not-exist\n")

            result = cli_runner.invoke(main, ["cleanup", "--yes"])

            assert result.exit_code == 0
            assert "Nothing to clean up" in result.output
