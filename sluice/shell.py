"""Spawning, supervising and tearing down shell subprocesses.

Commands run through ``bash -c`` (``cmd.exe /c`` on Windows) in their own
process group. Callers must pass the command through
``sluice.commands.validate_command`` first; nothing here re-validates.
"""

import codecs
import logging
import os
import re
import shlex
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_INTERVAL = 1.0  # seconds between live output callbacks
DEFAULT_SNIFF_BYTES = 4 * 1024  # 4 KB inspected for binary content
DEFAULT_KILL_GRACE_PERIOD = 0.2  # seconds between SIGTERM and SIGKILL

_POLL_INTERVAL = 0.05
_READ_CHUNK = 4096
_READER_JOIN_TIMEOUT = 2

DANGEROUS_ENV_VARS = (
    "LD_PRELOAD",
    "DYLD_INSERT_LIBRARIES",
    "NODE_OPTIONS",
    "ELECTRON_RUN_AS_NODE",
)

# Windows code pages -> Python codec names
_CODE_PAGES = {
    437: "cp437",
    850: "cp850",
    852: "cp852",
    866: "cp866",
    874: "cp874",
    932: "shift_jis",
    936: "gbk",
    949: "euc_kr",
    950: "big5",
    1200: "utf-16-le",
    1201: "utf-16-be",
    1250: "cp1250",
    1251: "cp1251",
    1252: "cp1252",
    1253: "cp1253",
    1254: "cp1254",
    1255: "cp1255",
    1256: "cp1256",
    1257: "cp1257",
    1258: "cp1258",
    65001: "utf-8",
}

_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"  # two-byte sequences
)

# Bytes that never show up in ordinary text output.
_TEXT_CONTROL_BYTES = {0x08, 0x09, 0x0A, 0x0C, 0x0D, 0x1B}


@dataclass(frozen=True)
class ShellExecutionResult:
    """Outcome of one subprocess run."""

    raw_output: bytes
    output: str
    exit_code: int | None
    signal: str | None
    error: Exception | None
    aborted: bool
    pid: int | None = None
    final_cwd: str | None = None


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from decoded output."""
    return _ANSI_RE.sub("", text)


def scrub_environment(env: dict[str, str] | None = None) -> dict[str, str]:
    """Copy of the environment without library-injection variables."""
    source = os.environ if env is None else env
    return {k: v for k, v in source.items() if k not in DANGEROUS_ENV_VARS}


def looks_binary(data: bytes) -> bool:
    """Heuristic binary check: NUL bytes, or >30% non-text control bytes."""
    if not data:
        return False
    if b"\x00" in data:
        return True
    suspicious = sum(1 for b in data if b < 0x20 and b not in _TEXT_CONTROL_BYTES)
    return suspicious / len(data) > 0.3


def _active_code_page() -> int | None:
    try:
        proc = subprocess.run(
            ["chcp"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    match = re.search(r"(\d+)", proc.stdout or "")
    return int(match.group(1)) if match else None


def get_system_encoding(
    env: dict[str, str] | None = None, windows: bool | None = None
) -> str:
    """Pick the codec used to decode subprocess output.

    POSIX reads LC_ALL, LC_CTYPE then LANG ("en_US.UTF-8" -> "utf-8").
    Windows asks ``chcp`` for the active code page. Any failure yields
    "utf-8".
    """
    if windows is None:
        windows = sys.platform == "win32"
    name = None
    if windows:
        code_page = _active_code_page()
        if code_page is not None:
            name = _CODE_PAGES.get(code_page, f"cp{code_page}")
    else:
        env = os.environ if env is None else env
        for var in ("LC_ALL", "LC_CTYPE", "LANG"):
            value = env.get(var)
            if value:
                if "." in value:
                    name = value.split(".", 1)[1].split("@", 1)[0]
                break
    if not name:
        return "utf-8"
    try:
        return codecs.lookup(name).name
    except LookupError:
        return "utf-8"


def wrap_command(command: str, cwd_file: str) -> str:
    """Prefix a command so the shell records its final directory in cwd_file.

    The directory is written from an EXIT trap, so the command text runs
    exactly as given and keeps its own exit status.
    """
    record = f"pwd > {shlex.quote(cwd_file)}"
    return f"trap {shlex.quote(record)} EXIT; {command}"


class Throttle:
    """Allows an action at most once per ``interval`` seconds."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False


class _OutputRecorder:
    """Interleaves stdout/stderr chunks by arrival and tracks binary state."""

    def __init__(self, encoding: str, sniff_bytes: int):
        self._lock = threading.Lock()
        self._sniff_bytes = sniff_bytes
        self._decoders = {
            name: codecs.getincrementaldecoder(encoding)(errors="replace")
            for name in ("stdout", "stderr")
        }
        self.raw = bytearray()
        self._pieces: list[str] = []
        self.stream_to_ui = True
        self.dirty = False

    def feed(self, stream: str, chunk: bytes) -> None:
        with self._lock:
            sniffing = len(self.raw) < self._sniff_bytes
            self.raw += chunk
            self._pieces.append(self._decoders[stream].decode(chunk))
            if sniffing and self.stream_to_ui:
                if looks_binary(bytes(self.raw[: self._sniff_bytes])):
                    self.stream_to_ui = False
            self.dirty = True

    def finish(self) -> None:
        with self._lock:
            for decoder in self._decoders.values():
                self._pieces.append(decoder.decode(b"", final=True))

    def snapshot(self) -> tuple[bytes, str]:
        with self._lock:
            self.dirty = False
            return bytes(self.raw), strip_ansi("".join(self._pieces))

    def display_text(self) -> str:
        raw, text = self.snapshot()
        if self.stream_to_ui:
            return text
        return f"[Receiving binary output: {len(raw)} bytes received]"


def _drain(pipe, stream: str, recorder: _OutputRecorder) -> None:
    try:
        while True:
            chunk = pipe.read1(_READ_CHUNK)
            if not chunk:
                break
            recorder.feed(stream, chunk)
    except (OSError, ValueError):
        pass  # pipe closed after kill


class ShellExecutor:
    """Runs validated shell commands, one process group per call."""

    def __init__(
        self,
        throttle_interval: float = DEFAULT_THROTTLE_INTERVAL,
        sniff_bytes: int = DEFAULT_SNIFF_BYTES,
        kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
    ):
        self.throttle_interval = throttle_interval
        self.sniff_bytes = sniff_bytes
        self.kill_grace_period = kill_grace_period

    def execute(
        self,
        command: str,
        cwd: str,
        cancel: threading.Event | None = None,
        on_output: Callable[[str], None] | None = None,
        on_debug: Callable[[str], None] | None = None,
        input: bytes | None = None,
    ) -> ShellExecutionResult:
        """Run ``command`` in ``cwd`` and block until it exits.

        ``on_output`` receives the cumulative ANSI-stripped output (or a
        byte-count progress line once binary output is detected), at most
        once per throttle interval plus once at exit. Both callbacks run on
        the calling thread. ``input`` is written to the child's stdin.
        """
        if cancel is None:
            cancel = threading.Event()
        windows = sys.platform == "win32"

        def debug(msg: str) -> None:
            logger.debug(msg)
            if on_debug is not None:
                on_debug(msg)

        cwd_file = None
        try:
            if windows:
                argv = ["cmd.exe", "/c", command]
            else:
                fd, cwd_file = tempfile.mkstemp(prefix="sluice_pwd_", suffix=".tmp")
                os.close(fd)
                argv = ["bash", "-c", wrap_command(command, cwd_file)]

            popen_kwargs: dict = dict(
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL if input is None else subprocess.PIPE,
                cwd=cwd,
                env=scrub_environment(),
            )
            if not windows:
                popen_kwargs["start_new_session"] = True

            encoding = get_system_encoding(windows=windows)
            debug(f"Executing in {cwd} ({encoding}): {command}")
            try:
                proc = subprocess.Popen(argv, **popen_kwargs)
            except OSError as exc:
                logger.warning("failed to start shell command %r: %s", command, exc)
                return ShellExecutionResult(
                    raw_output=b"",
                    output="",
                    exit_code=None,
                    signal=None,
                    error=exc,
                    aborted=cancel.is_set(),
                )

            recorder = _OutputRecorder(encoding, self.sniff_bytes)
            readers = [
                threading.Thread(
                    target=_drain, args=(proc.stdout, "stdout", recorder), daemon=True
                ),
                threading.Thread(
                    target=_drain, args=(proc.stderr, "stderr", recorder), daemon=True
                ),
            ]
            for reader in readers:
                reader.start()
            if input is not None:
                threading.Thread(
                    target=_feed_stdin, args=(proc.stdin, input), daemon=True
                ).start()

            throttle = Throttle(self.throttle_interval)
            terminated = False
            while True:
                try:
                    proc.wait(timeout=_POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if on_output is not None and recorder.dirty and throttle.ready():
                    on_output(recorder.display_text())
                if cancel.is_set() and not terminated:
                    terminated = True
                    self._terminate(proc, debug)

            for reader in readers:
                reader.join(timeout=_READER_JOIN_TIMEOUT)
            proc.stdout.close()
            proc.stderr.close()
            recorder.finish()
            if on_output is not None:
                on_output(recorder.display_text())

            raw, text = recorder.snapshot()
            exit_code = proc.returncode
            signal_name = None
            if exit_code is not None and exit_code < 0 and not windows:
                try:
                    signal_name = signal.Signals(-exit_code).name
                except ValueError:
                    signal_name = f"SIG{-exit_code}"
                exit_code = None

            final_cwd = _read_final_cwd(cwd_file) if cwd_file else None
            if final_cwd and os.path.realpath(final_cwd) != os.path.realpath(cwd):
                msg = (
                    f"Command changed directory to {final_cwd}; "
                    "the change does not persist to later commands."
                )
                logger.warning(msg)
                if on_debug is not None:
                    on_debug(msg)

            return ShellExecutionResult(
                raw_output=raw,
                output=text,
                exit_code=exit_code,
                signal=signal_name,
                error=None,
                aborted=cancel.is_set(),
                pid=proc.pid,
                final_cwd=final_cwd,
            )
        finally:
            if cwd_file is not None:
                try:
                    os.unlink(cwd_file)
                except OSError:
                    pass

    def _terminate(self, proc: subprocess.Popen, debug: Callable[[str], None]) -> None:
        """SIGTERM the process group, then SIGKILL whatever outlives the grace period."""
        if sys.platform == "win32":
            debug(f"Killing process tree {proc.pid}")
            try:
                subprocess.run(
                    ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=5,
                )
            except (OSError, subprocess.TimeoutExpired):
                _kill_child(proc)
            return

        debug(f"Sending SIGTERM to process group {proc.pid}")
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except OSError as exc:
            debug(f"Group SIGTERM failed ({exc}), terminating child only")
            try:
                proc.terminate()
            except OSError:
                pass

        try:
            proc.wait(timeout=self.kill_grace_period)
        except subprocess.TimeoutExpired:
            debug(f"Process {proc.pid} still alive, sending SIGKILL")

        # Sweep the group even when the leader is gone: children may linger.
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as exc:
            debug(f"Group SIGKILL failed ({exc}), killing child only")
            _kill_child(proc)


def _feed_stdin(pipe, data: bytes) -> None:
    try:
        pipe.write(data)
    except (OSError, ValueError):
        pass  # child exited without reading
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _kill_child(proc: subprocess.Popen) -> None:
    try:
        proc.kill()
    except OSError:
        pass  # already dead


def _read_final_cwd(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            value = f.read().strip()
    except OSError:
        return None
    return value or None
