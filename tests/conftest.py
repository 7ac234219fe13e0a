from __future__ import annotations

import asyncio
import json
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Callable

import pytest

WORKSPACE = "ws"


def bump_mtime(path: Path | str, seconds: int = 10) -> None:
    """Move a path's own mtime forward without following symlinks."""
    st = os.lstat(path)
    t = st.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(t, t), follow_symlinks=False)


def write_config(path: Path, **fields: object) -> Path:
    base: dict[str, object] = {
        "data_files": ["app"],
        "files_to_restart_on_change": [],
        "grant_sandbox_write_permissions": False,
        "command": sys.executable,
    }
    base.update(fields)
    path.write_text(json.dumps(base))
    return path


async def wait_until(pred: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not pred():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.fixture
def source_tree(tmp_path: Path) -> dict[str, Path]:
    """A runfiles tree shaped like what the build tool materializes.

    ws/app/index.js
    ws/app/current -> index.js   (symlink)
    ws/app/lib/util.js
    ws/app/static/style.css
    ws/package.json
    """
    runfiles = tmp_path / "runfiles"
    root = runfiles / WORKSPACE
    app = root / "app"
    (app / "lib").mkdir(parents=True)
    (app / "static").mkdir()
    (app / "index.js").write_text("console.log('index')\n")
    (app / "lib" / "util.js").write_text("module.exports = 1\n")
    (app / "static" / "style.css").write_text("body {}\n")
    os.symlink("index.js", app / "current")
    (root / "package.json").write_text('{"name": "app"}\n')
    return {"runfiles": runfiles, "root": root, "app": app}


@pytest.fixture
def sandbox_tmp(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Redirect mkdtemp so sandbox cleanup can be asserted."""
    tmp = tmp_path / "tmp"
    tmp.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(tmp))
    return tmp


@pytest.fixture
def sandbox(sandbox_tmp: Path):
    import devserver_sandbox as ds

    sb = ds.Sandbox.create(WORKSPACE)
    yield sb
    sb.destroy()
