"""
Example usage of the bckp snapshot engine.

Walks through init, two backups, listing, restore and prune against a
throwaway local repository. Install the project first:
  pip install -e .
  python examples/example_backup.py
"""

import os
import tempfile
from pathlib import Path

from snapshot_shuttle.config import EngineContext
from snapshot_shuttle.logs import setup_logger
from snapshot_shuttle.models import BackupOptions, PrunePolicy
from snapshot_shuttle.runtime import (
    init_repo,
    list_snapshots,
    run_backup,
    run_prune,
    run_restore,
)


def main():
    """Demonstrate the backup workflow."""
    setup_logger()

    with tempfile.TemporaryDirectory() as tmpdir:
        context = EngineContext(mount_root=Path(tmpdir) / "mounts")
        repo = os.path.join(tmpdir, "repo")

        source_dir = os.path.join(tmpdir, "documents")
        os.makedirs(os.path.join(source_dir, "subdir"))
        with open(os.path.join(source_dir, "doc1.txt"), "w") as f:
            f.write("Important document 1\n" * 100)
        with open(os.path.join(source_dir, "subdir", "nested.txt"), "w") as f:
            f.write("Nested document\n" * 75)
        with open(os.path.join(source_dir, "build.log"), "w") as f:
            f.write("noise\n")

        print("=" * 60)
        print("BCKP EXAMPLE")
        print("=" * 60)
        print(f"\nSource directory: {source_dir}")
        print(f"Repository: {repo}\n")

        print("[1] Initializing repository...")
        init_repo(repo, context)
        print()

        print("[2] Creating first backup (skipping *.log)...")
        options = BackupOptions(exclude=["*.log"])
        run_backup(repo, [source_dir], options, context)
        print()

        print("[3] Modifying files and creating second backup...")
        with open(os.path.join(source_dir, "doc1.txt"), "a") as f:
            f.write("Additional content added later\n" * 10)
        run_backup(repo, [source_dir], options, context)
        print()

        print("[4] Listing all snapshots...")
        list_snapshots(repo, context)
        print()

        restore_dir = os.path.join(tmpdir, "restore")
        print(f"[5] Restoring newest snapshot to {restore_dir}...")
        run_restore(repo, restore_dir, context=context)
        restored = os.path.join(restore_dir, "documents", "doc1.txt")
        with open(restored, "r") as f:
            print(f"    [OK] doc1.txt: {f.read().count(chr(10))} lines")
        print()

        print("[6] Pruning to the newest snapshot...")
        run_prune(repo, PrunePolicy(keep_last=1), context)

        print("\n" + "=" * 60)
        print("Example complete!")
        print("=" * 60)


if __name__ == "__main__":
    main()
