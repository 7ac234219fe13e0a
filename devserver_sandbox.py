#!/usr/bin/env python3
"""Incremental sandbox sync and dev-server supervisor for build watch mode."""

import asyncio
import logging
import os
import shutil
import signal
import stat
import sys
import tempfile
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

# ── Logging (stderr only, stdout belongs to the child tool) ─────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("devserver-sandbox")

# ── Config ───────────────────────────────────────────────────────────────

SANDBOX_PREFIX = "js_run_devserver-"

# Build-watch protocol markers (ibazel)
BUILD_COMPLETED_MARKER = "IBAZEL_BUILD_COMPLETED SUCCESS"
BUILD_STARTED_MARKER = "IBAZEL_BUILD_STARTED"

# Seconds to wait for a terminated child before escalating to SIGKILL
KILL_TIMEOUT = 5.0

# Longest protocol line accepted from stdin
STREAM_LIMIT = 1 << 20

# Environment contract with the build tool's launcher
ENV_RUNFILES = "JS_BINARY__RUNFILES"
ENV_WORKSPACE = "JS_BINARY__WORKSPACE"
ENV_CHDIR = "JS_BINARY__CHDIR"
ENV_LOG_DEBUG = "JS_BINARY__LOG_DEBUG"
ENV_TARGET = "JS_BINARY__TARGET"


# ── Errors ───────────────────────────────────────────────────────────────


class DevserverError(RuntimeError):
    pass


class ConfigError(DevserverError):
    """Missing environment, unreadable config or unusable tool."""


class SyncError(DevserverError):
    """A filesystem operation failed while walking or materializing."""


# ── Helpers ──────────────────────────────────────────────────────────────


def _join(root: str, entry: str) -> str:
    return os.path.join(root, entry) if entry else root


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _exit_status(returncode: Optional[int]) -> int:
    """Map an asyncio return code to a shell-style exit status."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 - returncode
    return returncode


async def _gather_settled(aws) -> list:
    """Like gather(), but every sibling settles before the first error is raised."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


def _debug_enabled(environ: Mapping[str, str]) -> bool:
    return bool(environ.get(ENV_LOG_DEBUG))


# ── Path state ───────────────────────────────────────────────────────────


class PathState:
    """Last observed ``st_mtime_ns`` per absolute source path.

    Entries are only ever added or overwritten, so a source file deleted after
    it was synced stays recorded (and its sandbox copy stays in place).
    """

    def __init__(self):
        self._seen: dict[str, int] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def get(self, path: str) -> Optional[int]:
        return self._seen.get(path)

    def is_current(self, path: str, st: os.stat_result) -> bool:
        last = self._seen.get(path)
        return last is not None and last == st.st_mtime_ns

    def record(self, path: str, st: os.stat_result) -> None:
        self._seen[path] = st.st_mtime_ns


# ── Directory ensurer ────────────────────────────────────────────────────


class DirectoryEnsurer:
    """mkdir -p memoized against the directories created so far.

    Deliberately synchronous: an ``exists`` check followed by an awaited
    mkdir would let two coroutines race into creating the same directory.
    """

    def __init__(self):
        self._known_dirs: set[str] = set()

    def __contains__(self, path: str) -> bool:
        return path in self._known_dirs

    def ensure(self, path: str) -> None:
        if not path or path in self._known_dirs:
            return
        if not os.path.exists(path):
            self.ensure(os.path.dirname(path))
            try:
                os.mkdir(path)
            except OSError as e:
                raise SyncError(f"Could not create directory {path}: {e}") from e
        self._known_dirs.add(path)


# ── Tree walker ──────────────────────────────────────────────────────────

WalkCallback = Callable[[str, os.stat_result], Awaitable[None]]


async def walk(root: str, callback: Optional[WalkCallback] = None) -> None:
    """Depth-first lstat walk of ``root``.

    The callback receives the path relative to ``root`` ("" for the root
    itself) and its lstat result. A directory is reported before its
    children; sibling subtrees are walked concurrently. Symlinks are never
    followed.
    """

    async def _walk(current: str) -> None:
        absolute = _join(root, current)
        try:
            st = await asyncio.to_thread(os.lstat, absolute)
            if callback:
                await callback(current, st)
            if stat.S_ISDIR(st.st_mode):
                contents = await asyncio.to_thread(os.listdir, absolute)
                await _gather_settled(
                    [_walk(os.path.join(current, entry)) for entry in contents]
                )
        except OSError as e:
            raise SyncError(f"Could not walk {absolute}: {e}") from e

    await _walk("")


# ── Change detector ──────────────────────────────────────────────────────


class ChangeDetector:
    """Walks a root and reports only entries whose mtime moved.

    Detecting consumes the change: a second ``detect`` over an untouched tree
    reports nothing.
    """

    def __init__(self, state: Optional[PathState] = None):
        self.state = state if state is not None else PathState()

    async def detect(self, root: str, callback: Optional[WalkCallback] = None) -> int:
        modified = 0

        async def _on_entry(entry: str, st: os.stat_result) -> None:
            nonlocal modified
            path = _join(root, entry)
            is_dir = stat.S_ISDIR(st.st_mode)
            if not is_dir and self.state.is_current(path, st):
                return
            # No await between the check above and this claim.
            self.state.record(path, st)
            if callback:
                await callback(entry, st)
            if not is_dir:
                modified += 1

        await walk(root, _on_entry)
        return modified

    async def detect_any(self, roots: Sequence[str]) -> bool:
        counts = await _gather_settled([self.detect(root) for root in roots])
        return sum(counts) > 0


# ── Sandbox ──────────────────────────────────────────────────────────────


@dataclass
class Sandbox:
    """The process-exclusive writable copy of the workspace."""

    base: str
    root: str
    chdir: str = ""
    dirs: DirectoryEnsurer = field(default_factory=DirectoryEnsurer, repr=False)

    @classmethod
    def create(cls, workspace: str, chdir: str = "") -> "Sandbox":
        # The working directory must stay inside the sandbox
        chdir = chdir.lstrip(os.sep)
        if os.pardir in chdir.split(os.sep):
            raise ConfigError(f"{ENV_CHDIR} must not leave the sandbox: {chdir}")
        base = tempfile.mkdtemp(prefix=SANDBOX_PREFIX)
        sb = cls(base=base, root=os.path.join(base, workspace), chdir=chdir)
        try:
            sb.dirs.ensure(sb.cwd)
        except SyncError:
            shutil.rmtree(base, ignore_errors=True)
            raise
        return sb

    @property
    def cwd(self) -> str:
        return os.path.join(self.root, self.chdir) if self.chdir else self.root

    def destroy(self) -> None:
        try:
            shutil.rmtree(self.base)
        except OSError as e:
            log.error(
                f"An error has occurred while removing the sandbox folder at "
                f"{self.base}. Error: {e}"
            )


# ── Sandbox synchronizer ─────────────────────────────────────────────────


class SandboxSynchronizer:
    """Mirrors source roots into the sandbox, copying only what changed.

    Symlinks are not copied: the sandbox gets a link pointing at the source
    link itself.
    """

    def __init__(
        self,
        source_root: str,
        sandbox: Sandbox,
        detector: Optional[ChangeDetector] = None,
        debug: bool = False,
    ):
        self.source_root = source_root
        self.sandbox = sandbox
        self.detector = detector or ChangeDetector()
        self.debug = debug

    def _rel(self, path: str) -> str:
        return os.path.relpath(path, self.source_root)

    async def sync(self, files: Sequence[str], grant_write: bool = False) -> int:
        log.info("Syncing...")
        t0 = time.perf_counter()
        counts = await _gather_settled(
            [
                self._sync_recursive(
                    os.path.join(self.source_root, f),
                    os.path.join(self.sandbox.root, f),
                    grant_write,
                )
                for f in files
            ]
        )
        total = sum(counts)
        elapsed = (time.perf_counter() - t0) * 1000
        log.info(f"{_plural(total, 'file')} synced in {round(elapsed)} ms")
        return total

    async def _sync_recursive(self, src: str, dst: str, grant_write: bool) -> int:
        async def _materialize(entry: str, st: os.stat_result) -> None:
            src_path = _join(src, entry)
            dst_path = _join(dst, entry)
            try:
                if stat.S_ISLNK(st.st_mode):
                    await self._sync_symlink(src_path, dst_path)
                elif stat.S_ISDIR(st.st_mode):
                    if not os.path.exists(dst_path):
                        self.sandbox.dirs.ensure(dst_path)
                else:
                    await self._sync_file(src_path, dst_path, grant_write)
            except OSError as e:
                raise SyncError(f"Could not sync {src_path} to {dst_path}: {e}") from e

        return await self.detector.detect(src, _materialize)

    async def _clear_or_prepare(self, dst_path: str) -> None:
        if os.path.lexists(dst_path):
            await asyncio.to_thread(os.unlink, dst_path)
        else:
            self.sandbox.dirs.ensure(os.path.dirname(dst_path))

    async def _sync_symlink(self, src_path: str, dst_path: str) -> None:
        if self.debug:
            log.debug(f"Syncing symlink {self._rel(src_path)}")
        await self._clear_or_prepare(dst_path)
        await asyncio.to_thread(os.symlink, src_path, dst_path)

    async def _sync_file(self, src_path: str, dst_path: str, grant_write: bool) -> None:
        if self.debug:
            log.debug(f"Syncing file {self._rel(src_path)}")
        await self._clear_or_prepare(dst_path)
        await asyncio.to_thread(shutil.copy, src_path, dst_path)
        if grant_write:
            st = await asyncio.to_thread(os.stat, dst_path)
            mode = st.st_mode | stat.S_IWUSR
            log.info(
                f"Adding write permissions to file {self._rel(src_path)}: "
                f"{stat.S_IMODE(mode):o}"
            )
            await asyncio.to_thread(os.chmod, dst_path, mode)


# ── Process supervisor ───────────────────────────────────────────────────


class ProcessSupervisor:
    """Owns one child process and restarts it on demand.

    A child that exits on its own (not through ``restart``/``stop``) is
    reported to ``on_exit`` with its exit status.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        cwd: str,
        env: Mapping[str, str],
        on_exit: Optional[Callable[[int], None]] = None,
    ):
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self.env = dict(env)
        self.on_exit = on_exit
        self.restarts = 0
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    async def start(self):
        if self._proc:
            return
        self._proc = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            cwd=self.cwd,
            env=self.env,
        )
        self._watcher = asyncio.create_task(self._watch(self._proc))

    async def restart(self):
        await self.stop()
        self.restarts += 1
        await self.start()

    async def stop(self):
        proc = self._proc
        self._detach()
        self._proc = None
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning(
                f"child tool process {proc.pid} ignored SIGTERM for "
                f"{KILL_TIMEOUT}s, killing"
            )
            proc.kill()
            await proc.wait()

    def _detach(self):
        if self._watcher and not self._watcher.done():
            self._watcher.cancel()
        self._watcher = None

    async def _watch(self, proc: asyncio.subprocess.Process):
        code = _exit_status(await proc.wait())
        if self._proc is not proc:
            return
        self._proc = None
        self._watcher = None
        log.error(f"child tool process exited with code {code}")
        if self.on_exit:
            self.on_exit(code)


# ── Tool configuration ───────────────────────────────────────────────────


class DevserverConfig(BaseModel):
    data_files: list[str] = Field(default_factory=list)
    files_to_restart_on_change: list[str] = Field(default_factory=list)
    grant_sandbox_write_permissions: bool = False
    tool: Optional[str] = None
    command: Optional[str] = None
    use_execroot_entry_point: bool = False
    bazel_bindir: Optional[str] = None
    allow_execroot_entry_point_with_no_copy_data_to_bin: Optional[bool] = None

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _require_tool_or_command(self) -> "DevserverConfig":
        if not self.tool and not self.command:
            raise ValueError("one of 'tool' or 'command' is required")
        return self


def load_config(path: str) -> DevserverConfig:
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    try:
        return DevserverConfig.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def resolve_tool(config: DevserverConfig, runfiles_root: str) -> str:
    """Absolute path of the tool to supervise."""
    if config.tool:
        tool = os.path.join(runfiles_root, config.tool)
        if not os.path.isfile(tool):
            raise ConfigError(f"Tool not found: {tool}")
        if not os.access(tool, os.X_OK):
            raise ConfigError(f"Tool is not executable: {tool}")
        return tool
    found = shutil.which(config.command or "")
    if not found:
        raise ConfigError(f"Command not found or not executable: {config.command}")
    return found


def child_env(config: DevserverConfig, environ: Mapping[str, str]) -> dict[str, str]:
    env = dict(environ)
    # BAZEL_BINDIR is not load bearing here but tools may read it
    env["BAZEL_BINDIR"] = "."
    # The child already runs in the sandbox; keep its launcher from cd-ing away
    env[ENV_CHDIR] = ""
    env["JS_BINARY__NO_CD_BINDIR"] = "1"
    if config.use_execroot_entry_point:
        env["JS_BINARY__USE_EXECROOT_ENTRY_POINT"] = "1"
        env["BAZEL_BINDIR"] = config.bazel_bindir or ""
        if config.allow_execroot_entry_point_with_no_copy_data_to_bin:
            env["JS_BINARY__ALLOW_EXECROOT_ENTRY_POINT_WITH_NO_COPY_DATA_TO_BIN"] = "1"
    return env


# ── Control loop ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Event:
    kind: str
    code: int = 0


_BUILD_COMPLETED = "build_completed"
_CHILD_EXIT = "child_exit"
_SHUTDOWN = "shutdown"


class ControlLoop:
    """Bridges the build-watch protocol to sync and restart.

    Protocol lines, child exits and shutdown requests all land on one queue
    that a single worker drains in order, so resyncs never overlap.
    """

    def __init__(
        self,
        runfiles_root: str,
        config_path: str,
        tool_args: Sequence[str],
        sandbox: Sandbox,
        stream: asyncio.StreamReader,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.runfiles_root = runfiles_root
        self.config_path = config_path
        self.tool_args = list(tool_args)
        self.sandbox = sandbox
        self.stream = stream
        self.environ = dict(os.environ if environ is None else environ)
        self.debug = _debug_enabled(self.environ)
        self.config: Optional[DevserverConfig] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        # Restart tracking is kept apart from sync tracking so a file in both
        # lists is still copied after it triggered a restart.
        self.restart_detector = ChangeDetector()
        self.synchronizer = SandboxSynchronizer(
            runfiles_root, sandbox, ChangeDetector(), debug=self.debug
        )
        self._events: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None

    def _restart_roots(self, config: DevserverConfig) -> list[str]:
        return [
            os.path.join(self.runfiles_root, f)
            for f in config.files_to_restart_on_change
        ]

    async def start(self):
        self.config = load_config(self.config_path)
        await self.restart_detector.detect_any(self._restart_roots(self.config))
        await self.synchronizer.sync(
            self.config.data_files, self.config.grant_sandbox_write_permissions
        )

        tool = resolve_tool(self.config, self.runfiles_root)
        log.info(f"Running '{' '.join([tool, *self.tool_args])}' in {self.sandbox.cwd}")
        self.supervisor = ProcessSupervisor(
            tool,
            self.tool_args,
            cwd=self.sandbox.cwd,
            env=child_env(self.config, self.environ),
            on_exit=self._on_child_exit,
        )
        await self.supervisor.start()

    def _on_child_exit(self, code: int):
        self._events.put_nowait(_Event(_CHILD_EXIT, code))

    def request_shutdown(self):
        self._events.put_nowait(_Event(_SHUTDOWN))

    async def _read_protocol(self):
        while True:
            try:
                line = await self.stream.readline()
            except ValueError as e:
                log.warning(f"Dropping oversized protocol line: {e}")
                continue
            if not line:
                log.debug("Build-watch input closed")
                return
            text = line.decode(errors="replace")
            if BUILD_COMPLETED_MARKER in text:
                log.debug(BUILD_COMPLETED_MARKER)
                self._events.put_nowait(_Event(_BUILD_COMPLETED))
            elif BUILD_STARTED_MARKER in text:
                log.debug(BUILD_STARTED_MARKER)

    async def resync(self):
        """Restart if a restart-trigger changed, then sync fresh data files."""
        if self.config is None or self.supervisor is None:
            raise DevserverError("resync requested before the control loop started")
        if await self.restart_detector.detect_any(self._restart_roots(self.config)):
            log.info("Restarting...")
            await self.supervisor.restart()
        # Re-read the config to pick up the latest list of data files
        fresh = load_config(self.config_path)
        await self.synchronizer.sync(
            fresh.data_files, self.config.grant_sandbox_write_permissions
        )

    async def run(self) -> int:
        try:
            await self.start()
            self._reader = asyncio.create_task(self._read_protocol())
            while True:
                event = await self._events.get()
                if event.kind == _CHILD_EXIT:
                    return event.code
                if event.kind == _SHUTDOWN:
                    log.info("Shutting down")
                    return 0
                try:
                    await self.resync()
                except Exception as e:
                    log.error(
                        f"An error has occurred while incrementally syncing "
                        f"files. Error: {e}"
                    )
                    raise
        finally:
            await self.close()

    async def close(self):
        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self.supervisor:
            await self.supervisor.stop()


# ── Entry point ──────────────────────────────────────────────────────────


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    try:
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
        )
    except (ValueError, OSError) as e:
        log.warning(f"stdin is not readable as a stream, ignoring build events: {e}")
        reader.feed_eof()
    return reader


async def run_devserver(
    argv: Sequence[str],
    environ: Optional[Mapping[str, str]] = None,
    stream: Optional[asyncio.StreamReader] = None,
) -> int:
    """Run one devserver session and return the process exit status."""
    environ = dict(os.environ if environ is None else environ)
    if _debug_enabled(environ):
        log.setLevel(logging.DEBUG)
    log.info(f"Starting js_run_devserver {environ.get(ENV_TARGET, '')}")

    sandbox: Optional[Sandbox] = None
    loop: Optional[ControlLoop] = None
    try:
        if not argv:
            raise ConfigError("usage: devserver-sandbox <config> [tool args...]")
        runfiles = environ.get(ENV_RUNFILES)
        workspace = environ.get(ENV_WORKSPACE)
        if not runfiles or not workspace:
            raise ConfigError(f"{ENV_RUNFILES} and {ENV_WORKSPACE} must be set")
        runfiles_root = os.path.join(runfiles, workspace)

        sandbox = Sandbox.create(workspace, environ.get(ENV_CHDIR, ""))
        if stream is None:
            stream = await _stdin_reader()
        loop = ControlLoop(
            runfiles_root,
            os.path.join(runfiles_root, argv[0]),
            argv[1:],
            sandbox,
            stream,
            environ,
        )
        _install_signal_handlers(loop)
        return await loop.run()
    except DevserverError as e:
        log.critical(str(e))
        return 1
    except Exception:
        log.exception("Unexpected error")
        return 1
    finally:
        if loop:
            _remove_signal_handlers()
            await loop.close()
        if sandbox:
            sandbox.destroy()


def _install_signal_handlers(control: ControlLoop):
    aloop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            aloop.add_signal_handler(sig, control.request_shutdown)
        except (NotImplementedError, RuntimeError) as e:
            # Not the main thread, or no signal support on this platform
            log.debug(f"Could not install handler for {sig.name}: {e}")


def _remove_signal_handlers():
    aloop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            aloop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError) as e:
            log.debug(f"Could not remove handler for {sig.name}: {e}")


def main():
    sys.exit(asyncio.run(run_devserver(sys.argv[1:])))


if __name__ == "__main__":
    main()
