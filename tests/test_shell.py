"""Tests for sluice.shell: subprocess execution, cancellation and decoding."""

import os
import sys
import threading
import time

import pytest

from sluice.shell import (
    ShellExecutor,
    Throttle,
    get_system_encoding,
    looks_binary,
    scrub_environment,
    strip_ansi,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell semantics")


def _alive(pid):
    """True if pid is running; zombies count as dead."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except OSError:
        return True


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_strip_ansi(self):
        assert strip_ansi("\x1b[31mred\x1b[0m plain") == "red plain"

    def test_looks_binary(self):
        assert looks_binary(b"abc\x00def")
        assert looks_binary(bytes(range(1, 8)) * 10)
        assert not looks_binary(b"hello\n\tworld\r\n")
        assert not looks_binary(b"")

    def test_scrub_environment(self):
        env = {"PATH": "/bin", "LD_PRELOAD": "/evil.so", "DYLD_INSERT_LIBRARIES": "x"}
        cleaned = scrub_environment(env)
        assert cleaned == {"PATH": "/bin"}
        assert "LD_PRELOAD" in env  # input untouched

    @pytest.mark.parametrize(
        "env, expected",
        [
            ({"LANG": "en_US.UTF-8"}, "utf-8"),
            ({"LC_ALL": "de_DE.ISO-8859-1", "LANG": "en_US.UTF-8"}, "iso8859-1"),
            ({"LC_CTYPE": "ja_JP.eucJP@euro"}, "euc_jp"),
            ({"LANG": "C"}, "utf-8"),
            ({"LANG": "xx.not-a-codec"}, "utf-8"),
            ({}, "utf-8"),
        ],
    )
    def test_posix_encoding(self, env, expected):
        assert get_system_encoding(env, windows=False) == expected

    def test_throttle(self):
        now = [0.0]
        throttle = Throttle(1.0, clock=lambda: now[0])
        assert throttle.ready()
        now[0] = 0.5
        assert not throttle.ready()
        now[0] = 1.0
        assert throttle.ready()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@posix_only
class TestExecute:
    def test_echo(self, tmp_path):
        result = ShellExecutor().execute("echo hi", str(tmp_path))
        assert result.output == "hi\n"
        assert result.raw_output == b"hi\n"
        assert result.exit_code == 0
        assert result.signal is None
        assert result.error is None
        assert not result.aborted
        assert result.pid is not None

    def test_stderr_is_combined(self, tmp_path):
        result = ShellExecutor().execute("ls does-not-exist", str(tmp_path))
        assert result.exit_code != 0
        assert "does-not-exist" in result.output

    def test_exit_code(self, tmp_path):
        result = ShellExecutor().execute("bash -c 'exit 3'", str(tmp_path))
        assert result.exit_code == 3

    def test_ansi_stripped_from_output_only(self, tmp_path):
        result = ShellExecutor().execute("printf '\\033[1mbold\\033[0m'", str(tmp_path))
        assert result.output == "bold"
        assert b"\x1b[1m" in result.raw_output

    def test_runs_in_cwd(self, tmp_path):
        result = ShellExecutor().execute("pwd", str(tmp_path))
        assert os.path.realpath(result.output.strip()) == os.path.realpath(tmp_path)

    def test_scrubbed_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LD_PRELOAD", "/nonexistent.so")
        result = ShellExecutor().execute("echo ${LD_PRELOAD}end", str(tmp_path))
        assert result.output == "end\n"

    def test_stdin_input(self, tmp_path):
        result = ShellExecutor().execute("cat", str(tmp_path), input=b"fed in")
        assert result.output == "fed in"

    def test_directory_drift_reported(self, tmp_path):
        (tmp_path / "sub").mkdir()
        messages = []
        result = ShellExecutor().execute(
            "cd sub", str(tmp_path), on_debug=messages.append
        )
        assert result.exit_code == 0
        assert os.path.realpath(result.final_cwd) == os.path.realpath(tmp_path / "sub")
        assert any("does not persist" in m for m in messages)

    def test_no_drift_note_when_cwd_unchanged(self, tmp_path):
        messages = []
        result = ShellExecutor().execute("true", str(tmp_path), on_debug=messages.append)
        assert os.path.realpath(result.final_cwd) == os.path.realpath(tmp_path)
        assert not any("does not persist" in m for m in messages)

    def test_trailing_backslash_runs_unchanged(self, tmp_path):
        result = ShellExecutor().execute("echo hi \\", str(tmp_path))
        assert result.exit_code == 0
        assert result.output == "hi \\\n"
        assert os.path.realpath(result.final_cwd) == os.path.realpath(tmp_path)

    def test_explicit_exit_keeps_code_and_cwd(self, tmp_path):
        (tmp_path / "sub").mkdir()
        result = ShellExecutor().execute("cd sub; exit 3", str(tmp_path))
        assert result.exit_code == 3
        assert os.path.realpath(result.final_cwd) == os.path.realpath(tmp_path / "sub")

    def test_missing_cwd_reports_error(self, tmp_path):
        result = ShellExecutor().execute("echo hi", str(tmp_path / "missing"))
        assert result.error is not None
        assert result.exit_code is None
        assert result.output == ""

    def test_binary_output(self, tmp_path):
        updates = []
        result = ShellExecutor(throttle_interval=0).execute(
            "head -c 2048 /dev/zero", str(tmp_path), on_output=updates.append
        )
        assert result.raw_output == b"\x00" * 2048
        assert updates
        assert updates[-1] == "[Receiving binary output: 2048 bytes received]"

    def test_text_then_binary_then_text(self, tmp_path):
        updates = []
        result = ShellExecutor(throttle_interval=0).execute(
            "printf 'hello'; head -c 100 /dev/zero; printf 'tail'",
            str(tmp_path),
            on_output=updates.append,
        )
        assert result.exit_code == 0
        assert result.raw_output == b"hello" + b"\x00" * 100 + b"tail"
        # decoded text keeps growing after the UI switched to progress lines
        assert result.output == "hello" + "\x00" * 100 + "tail"
        assert updates[-1] == "[Receiving binary output: 109 bytes received]"
        for update in updates:
            assert update.startswith("[Receiving binary output:") or "\x00" not in update

    def test_streaming_updates_are_cumulative(self, tmp_path):
        updates = []
        ShellExecutor(throttle_interval=0).execute(
            "echo one; sleep 0.3; echo two", str(tmp_path), on_output=updates.append
        )
        assert updates[-1] == "one\ntwo\n"
        for earlier, later in zip(updates, updates[1:]):
            assert later.startswith(earlier)

    def test_throttle_limits_updates(self, tmp_path):
        updates = []
        ShellExecutor(throttle_interval=60).execute(
            "for i in 1 2 3 4 5; do echo $i; sleep 0.05; done",
            str(tmp_path),
            on_output=updates.append,
        )
        # one throttled update at most, plus the final one
        assert 1 <= len(updates) <= 2
        assert updates[-1] == "1\n2\n3\n4\n5\n"


@posix_only
class TestCancellation:
    def test_cancel_kills_process_group(self, tmp_path):
        pid_file = tmp_path / "child.pid"
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            result = ShellExecutor(kill_grace_period=0.2).execute(
                f"sleep 30 & echo $! > {pid_file}; wait",
                str(tmp_path),
                cancel,
            )
        finally:
            timer.cancel()
        assert time.monotonic() - start < 10
        assert result.aborted
        assert result.exit_code != 0

        child = int(pid_file.read_text().strip())
        time.sleep(0.2)
        assert not _alive(child)

    def test_already_cancelled(self, tmp_path):
        cancel = threading.Event()
        cancel.set()
        result = ShellExecutor().execute("sleep 30", str(tmp_path), cancel)
        assert result.aborted

    def test_signal_name_reported(self, tmp_path):
        result = ShellExecutor().execute("kill -TERM $$", str(tmp_path))
        assert result.signal == "SIGTERM"
        assert result.exit_code is None
