"""Filesystem write events from ``inotifywait`` mapped onto accounts."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from storage.errors import BackendUnavailableError

from .accounts import AccountRegistry
from .errors import AccountNotFoundError

LOGGER = logging.getLogger("vaultsnap.events")

EVENT_FORMAT = "%w%f"


def parse_event_line(line: Union[str, bytes]) -> Optional[Path]:
    """Return the absolute path reported on one ``inotifywait`` output line.

    Raw bytes are decoded with the filesystem encoding, so names that are not
    valid UTF-8 still map to the on-disk path.
    """

    if isinstance(line, bytes):
        line = os.fsdecode(line)
    text = line.rstrip("\r\n")
    if not text.strip():
        return None
    path = Path(text)
    if not path.is_absolute():
        return None
    return path


def build_command(binary: str, home_root: Path) -> List[str]:
    return [
        binary,
        "-m",
        "-r",
        "-q",
        str(home_root),
        "-e",
        "close_write",
        "--format",
        EVENT_FORMAT,
    ]


class InotifyEventSource:
    """Run ``inotifywait`` on a reader thread and forward mapped events.

    *notify* receives the account name of every event that lands inside a
    workspace; anything else is dropped.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        notify: Callable[[str], object],
        *,
        binary: str = "inotifywait",
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        on_exit: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._registry = registry
        self._notify = notify
        self._binary = binary
        self._popen = popen
        self._process: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._on_exit = on_exit
        self._error: Optional[str] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    @property
    def error(self) -> Optional[str]:
        """Why the feed stopped on its own, or None while it is healthy."""

        with self._lock:
            return self._error

    def command(self) -> List[str]:
        return build_command(self._binary, self._registry.home_root)

    # ------------------------------------------------------------------
    def handle_line(self, line: Union[str, bytes]) -> Optional[str]:
        """Map one output line to an account and notify; returns the account name."""

        path = parse_event_line(line)
        if path is None:
            return None
        account = self._registry.account_for_path(path)
        if account is None:
            LOGGER.debug("event outside any workspace ignored: %s", path)
            return None
        try:
            self._notify(account.name)
        except AccountNotFoundError:
            LOGGER.debug("account for %s disappeared before notify", path)
            return None
        return account.name

    def handle_lines(self, lines: Sequence[Union[str, bytes]]) -> List[str]:
        handled = []
        for line in lines:
            name = self.handle_line(line)
            if name is not None:
                handled.append(name)
        return handled

    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            if self._popen is subprocess.Popen and shutil.which(self._binary) is None:
                raise BackendUnavailableError(f"{self._binary} not found; install inotify-tools")
            try:
                self._process = self._popen(
                    self.command(),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                    shell=False,
                )
            except FileNotFoundError as exc:
                raise BackendUnavailableError(f"{self._binary} not found; install inotify-tools") from exc
            self._stopping.clear()
            self._error = None
            self._thread = threading.Thread(target=self._read_loop, name="inotify-events", daemon=True)
            self._thread.start()
        LOGGER.info("watching %s for close_write events", self._registry.home_root)

    def stop(self, timeout: float = 2.0) -> None:
        self._stopping.set()
        with self._lock:
            process = self._process
            thread = self._thread
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.kill()
        if thread is not None:
            thread.join(timeout=timeout)
        with self._lock:
            self._process = None
            self._thread = None

    def _read_loop(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        for line in process.stdout:
            if self._stopping.is_set():
                break
            try:
                self.handle_line(line)
            except Exception:
                LOGGER.exception("failed to handle event line %r", line)
        if self._stopping.is_set():
            return
        reason = f"inotifywait exited with status {process.poll()}"
        LOGGER.error(reason)
        with self._lock:
            self._error = reason
        if self._on_exit is not None:
            self._on_exit(reason)


__all__ = ["EVENT_FORMAT", "InotifyEventSource", "build_command", "parse_event_line"]
