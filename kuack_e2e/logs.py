# /*
# Copyright 2026 The Kuack Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */


"""Per-step log capture.

A :class:`LogCaptureHub` attaches one handler to the root logger. While a
:class:`LogCapture` is active, every record that reaches the root logger is
also appended to it as a ``[LOG]``, ``[WARN]`` or ``[ERROR]`` line; the
records still reach every other handler. A record no other handler would see
goes to ``logging.lastResort``, as it would without the hub.

Usage::

    install_global_hooks()          # once per process
    capture = LogCapture()
    capture.start()
    ...                             # step body
    lines = capture.stop()
"""

from __future__ import annotations

import logging
import threading


def _prefix(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "[ERROR]"
    if levelno >= logging.WARNING:
        return "[WARN]"
    return "[LOG]"


class _CaptureHandler(logging.Handler):
    def __init__(self, hub: LogCaptureHub) -> None:
        super().__init__(level=logging.NOTSET)
        self._hub = hub

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = f"{_prefix(record.levelno)} {record.getMessage()}"
        except Exception:
            self.handleError(record)
            return
        self._hub.append(line)
        if not _has_other_handler(logging.getLogger(record.name), self):
            _emit_last_resort(record)


def _has_other_handler(source: logging.Logger, own: logging.Handler) -> bool:
    """Tell whether a record from ``source`` reaches any handler besides ``own``."""
    current: logging.Logger | None = source
    while current is not None:
        if any(h is not own for h in current.handlers):
            return True
        if not current.propagate:
            return False
        current = current.parent
    return False


def _emit_last_resort(record: logging.LogRecord) -> None:
    # With no handler configured, logging would have written to lastResort.
    last_resort = logging.lastResort
    if last_resort is not None and record.levelno >= last_resort.level:
        last_resort.handle(record)


class LogCaptureHub:
    """Routes log records to the single active capture.

    Args:
        target: Logger the handler is attached to; defaults to the root logger.
    """

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._target = target if target is not None else logging.getLogger()
        self._lock = threading.Lock()
        self._handler: _CaptureHandler | None = None
        self._active: LogCapture | None = None

    @property
    def installed(self) -> bool:
        return self._handler is not None

    @property
    def active(self) -> LogCapture | None:
        return self._active

    def install_global_hooks(self) -> None:
        """Attach the capture handler. Calling it again is a no-op."""
        with self._lock:
            if self._handler is not None:
                return
            self._handler = _CaptureHandler(self)
            self._target.addHandler(self._handler)

    def uninstall_global_hooks(self) -> None:
        with self._lock:
            if self._handler is None:
                return
            self._target.removeHandler(self._handler)
            self._handler = None
            self._active = None

    def activate(self, capture: LogCapture) -> None:
        with self._lock:
            self._active = capture

    def deactivate(self, capture: LogCapture) -> None:
        with self._lock:
            if self._active is capture:
                self._active = None

    def append(self, line: str) -> None:
        with self._lock:
            if self._active is not None:
                self._active.lines.append(line)


_default_hub = LogCaptureHub()


def default_hub() -> LogCaptureHub:
    return _default_hub


def install_global_hooks() -> None:
    """Install the capture handler on the process-wide hub."""
    _default_hub.install_global_hooks()


class LogCapture:
    """Collects the log lines emitted while it is the active capture.

    Starting a capture silently supersedes whichever one was active. Stopping
    a superseded capture leaves the newer one active.
    """

    def __init__(self, hub: LogCaptureHub | None = None) -> None:
        self._hub = hub if hub is not None else _default_hub
        self.lines: list[str] = []

    def start(self) -> LogCapture:
        self.lines = []
        self._hub.activate(self)
        return self

    def stop(self) -> list[str]:
        self._hub.deactivate(self)
        return list(self.lines)

    def __enter__(self) -> LogCapture:
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
