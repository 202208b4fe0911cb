from __future__ import annotations

import codecs
import fcntl
import logging
import os
import signal
import struct
import subprocess
import termios
import threading
import time
from pathlib import Path
from typing import Callable

from agent_ide.config import DEFAULT_PTY_COLS, DEFAULT_PTY_ROWS
from agent_ide.errors import SpawnError

LOGGER = logging.getLogger("agent_ide.terminal")
LOGGER.addHandler(logging.NullHandler())

READ_CHUNK_BYTES = 4096
TERMINATE_GRACE_S = 4.0


def is_process_running(pid: int | None) -> bool:
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return False


def _signal_group(pid: int, sig: int) -> None:
    try:
        pgid = os.getpgid(pid)
    except OSError:
        pgid = 0

    if pgid:
        try:
            os.killpg(pgid, sig)
            return
        except OSError:
            pass

    try:
        os.kill(pid, sig)
    except OSError:
        pass


def set_terminal_size(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


class TerminalProcess:
    """One provider CLI running on a pseudo-terminal.

    Output is pushed to ``on_output`` from a daemon reader thread as decoded
    text. ``on_exit(returncode, signal_number)`` fires once when the PTY closes.
    """

    def __init__(
        self,
        *,
        on_output: Callable[[str], None],
        on_exit: Callable[[int | None, int | None], None] | None = None,
        terminate_grace_s: float = TERMINATE_GRACE_S,
    ) -> None:
        self._on_output = on_output
        self._on_exit = on_exit
        self.terminate_grace_s = terminate_grace_s
        self.process: subprocess.Popen | None = None
        self.master_fd: int | None = None
        self._write_lock = threading.Lock()
        self._exit_lock = threading.Lock()
        self._exited = False
        self._terminated = False
        self._reader: threading.Thread | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(
        self,
        cmd: list[str],
        *,
        cwd: Path,
        env: dict[str, str],
        cols: int = DEFAULT_PTY_COLS,
        rows: int = DEFAULT_PTY_ROWS,
    ) -> None:
        if self.process is not None:
            raise RuntimeError("Terminal process already started.")
        master_fd, slave_fd = os.openpty()
        try:
            set_terminal_size(slave_fd, cols, rows)
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                close_fds=True,
                start_new_session=True,
            )
        except Exception as exc:
            try:
                os.close(master_fd)
            except OSError:
                pass
            try:
                os.close(slave_fd)
            except OSError:
                pass
            if isinstance(exc, FileNotFoundError):
                raise SpawnError(f"Unable to start '{cmd[0]}': it is not installed or not on PATH.") from exc
            if isinstance(exc, OSError):
                raise SpawnError(f"Unable to start '{cmd[0]}': {exc}") from exc
            raise

        try:
            os.close(slave_fd)
        except OSError:
            pass

        self.process = proc
        self.master_fd = master_fd
        LOGGER.info("Started %s (pid %s) in %s", cmd[0], proc.pid, cwd)
        self._reader = threading.Thread(target=self._reader_loop, args=(master_fd,), daemon=True)
        self._reader.start()

    def _reader_loop(self, master_fd: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        try:
            while True:
                try:
                    chunk = os.read(master_fd, READ_CHUNK_BYTES)
                except OSError:
                    break
                if not chunk:
                    break
                decoded = decoder.decode(chunk)
                if decoded:
                    self._emit_output(decoded)
            tail = decoder.decode(b"", final=True)
            if tail:
                self._emit_output(tail)
        finally:
            self._close_fd()
            self._notify_exit()

    def _emit_output(self, text: str) -> None:
        try:
            self._on_output(text)
        except Exception:
            LOGGER.exception("Terminal output handler failed.")

    def _notify_exit(self) -> None:
        with self._exit_lock:
            if self._exited:
                return
            self._exited = True
        returncode: int | None = None
        if self.process is not None:
            try:
                returncode = self.process.wait(timeout=self.terminate_grace_s + 1)
            except subprocess.TimeoutExpired:
                returncode = None
        exit_code = returncode if returncode is not None and returncode >= 0 else None
        exit_signal = -returncode if returncode is not None and returncode < 0 else None
        LOGGER.info("Terminal process %s exited (code=%s, signal=%s).", self.pid, exit_code, exit_signal)
        if self._on_exit is None:
            return
        try:
            self._on_exit(exit_code, exit_signal)
        except Exception:
            LOGGER.exception("Terminal exit handler failed.")

    def _close_fd(self) -> None:
        with self._write_lock:
            fd = self.master_fd
            self.master_fd = None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError:
            pass

    def write(self, data: bytes | str) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if not payload:
            return
        with self._write_lock:
            if self.master_fd is None:
                raise OSError("Terminal is closed.")
            view = memoryview(payload)
            while view:
                written = os.write(self.master_fd, view)
                view = view[written:]

    def resize(self, cols: int, rows: int) -> bool:
        """Resize the PTY; returns False instead of raising when that fails."""
        with self._write_lock:
            fd = self.master_fd
            if fd is None:
                return False
            try:
                set_terminal_size(fd, cols, rows)
            except (OSError, ValueError, struct.error) as exc:
                LOGGER.warning("Unable to resize terminal %s: %s", self.pid, exc)
                return False
        if self.pid is not None:
            _signal_group(self.pid, signal.SIGWINCH)
        return True

    def terminate(self) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if self._terminated:
            return
        self._terminated = True
        pid = self.pid
        if pid is None or not is_process_running(pid):
            self._close_fd()
            return
        _signal_group(pid, signal.SIGTERM)
        deadline = time.monotonic() + self.terminate_grace_s
        while time.monotonic() < deadline:
            if self.process is not None and self.process.poll() is not None:
                break
            time.sleep(0.1)
        else:
            LOGGER.warning("Terminal process %s ignored SIGTERM; killing it.", pid)
            _signal_group(pid, signal.SIGKILL)
        self._close_fd()
