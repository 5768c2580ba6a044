"""Tests for the bckp command line."""

import json
import os

import pytest

from conftest import make_tree, read_tree
from snapshot_shuttle import cli
from snapshot_shuttle.config import EngineContext


@pytest.fixture
def env(tmp_path, monkeypatch, clock):
    """Isolated config dir and a deterministic clock for every CLI run."""
    config = tmp_path / "cfg" / "config"
    real_build = cli.build_context

    def build(args, cfg):
        ctx = real_build(args, cfg)
        return EngineContext(
            config=ctx.config,
            clock=clock,
            mount_root=tmp_path / "mounts",
            certificate_resolver=ctx.certificate_resolver,
            usage=ctx.usage,
            force_detach=ctx.force_detach,
        )

    monkeypatch.setattr(cli, "build_context", build)
    return ["--config", str(config)]


class TestCommands:
    """End-to-end runs of each command."""

    def test_full_workflow(self, tmp_path, env, capsys):
        src = make_tree(tmp_path / "src", {"a.txt": "A", "d/b.txt": "BB"})
        repo = str(tmp_path / "repo")

        assert cli.main(env + ["init", "--repo", repo]) == 0
        assert cli.main(env + ["backup", "--repo", repo, "-q", src]) == 0
        assert cli.main(env + ["backup", "--repo", repo, "--plain", "-q", src]) == 0
        capsys.readouterr()

        assert cli.main(env + ["snapshots", "--repo", repo]) == 0
        listing = capsys.readouterr().out
        assert listing.count("\n") == 4

        out = tmp_path / "out"
        assert cli.main(env + ["restore", "--repo", repo, str(out)]) == 0
        assert read_tree(out / "src") == {"a.txt": b"A", "d/b.txt": b"BB"}

        assert cli.main(env + ["prune", "--repo", repo, "--keep-last", "1"]) == 0
        assert "Pruned 1 snapshot(s), kept 1" in capsys.readouterr().out

        usage = json.loads((tmp_path / "cfg" / "repositories.json").read_text())
        assert src in [s["path"] for s in usage["repositories"][repo]["sources"]]

    def test_backup_with_filters(self, tmp_path, env):
        src = make_tree(tmp_path / "src", {"keep/yes.txt": "y", "skip/no.txt": "n"})
        repo = str(tmp_path / "repo")
        cli.main(env + ["init", "--repo", repo])
        code = cli.main(
            env + ["backup", "--repo", repo, "-q", "--include", "keep/**", "--exclude", "**/no.txt", src]
        )
        assert code == 0
        out = tmp_path / "out"
        cli.main(env + ["restore", "--repo", repo, str(out)])
        assert read_tree(out / "src") == {"keep/yes.txt": b"y"}

    def test_errors_exit_with_one(self, tmp_path, env, capsys):
        repo = str(tmp_path / "repo")
        assert cli.main(env + ["snapshots", "--repo", repo]) == 1
        assert "Error: Repository not initialized" in capsys.readouterr().out

        cli.main(env + ["init", "--repo", repo])
        assert cli.main(env + ["init", "--repo", repo]) == 1
        assert cli.main(env + ["restore", "--repo", repo, "-s", "missing", str(tmp_path / "o")]) == 1

    def test_missing_target(self, env, capsys):
        assert cli.main(env + ["snapshots"]) == 1
        assert "No repository given" in capsys.readouterr().out

    def test_config_set_and_show(self, tmp_path, env, capsys):
        repo = str(tmp_path / "repo")
        assert cli.main(env + ["config", "set", "repo.path", repo]) == 0
        assert cli.main(env + ["config", "set", "backup.exclude", "*.tmp, *.log"]) == 0
        capsys.readouterr()
        assert cli.main(env + ["config", "show"]) == 0
        shown = capsys.readouterr().out
        assert f"repo.path={repo}" in shown
        assert "backup.exclude=*.tmp,*.log" in shown

        # configured repo is used when no target flag is given
        assert cli.main(env + ["init"]) == 0
        assert os.path.exists(os.path.join(repo, "config.json"))

    def test_log_dir_receives_ndjson(self, tmp_path, env):
        logs = tmp_path / "logs"
        repo = str(tmp_path / "repo")
        assert cli.main(env + ["--log-dir", str(logs), "init", "--repo", repo]) == 0
        [log_file] = list(logs.iterdir())
        assert log_file.name.startswith("bckp-")
        record = json.loads(log_file.read_text().splitlines()[0])
        assert record["record"]["extra"]["subsystem"] == "core.local"

    def test_corrupt_usage_file(self, tmp_path, env):
        usage = tmp_path / "cfg" / "repositories.json"
        usage.parent.mkdir(parents=True)
        usage.write_text("{not json")
        repo = str(tmp_path / "repo")

        assert cli.main(env + ["config", "show"]) == 0
        assert cli.main(env + ["init", "--repo", repo]) == 0
        assert repo in json.loads(usage.read_text())["repositories"]

    def test_restore_into_file_reports_error(self, tmp_path, env, capsys):
        src = make_tree(tmp_path / "src", {"a.txt": "A"})
        repo = str(tmp_path / "repo")
        cli.main(env + ["init", "--repo", repo])
        cli.main(env + ["backup", "--repo", repo, "--plain", "-q", src])
        occupied = tmp_path / "occupied"
        occupied.write_text("x")
        capsys.readouterr()
        assert cli.main(env + ["restore", "--repo", repo, str(occupied)]) == 1
        assert "Error: Cannot create directory" in capsys.readouterr().out
