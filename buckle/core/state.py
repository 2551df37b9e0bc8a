"""
On-disk state for a supervised server.

The state directory holds the PID file (decimal PID, nothing else), a port file
naming the port the server was started on, and the log file reserved for
detached server output. Only StateStore touches these paths.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from buckle.errors import CorruptStateError, StateError

logger = logging.getLogger(__name__)

PID_FILE_NAME = "buckle.pid"
LOG_FILE_NAME = "buckle.log"
PORT_FILE_NAME = "buckle.port"


@dataclass(frozen=True)
class ProcessRecord:
    """Persisted identity of the supervised server."""

    pid: int
    started_at: Optional[datetime] = None
    port: Optional[int] = None


class StateStore:
    """Key/value persistence for the PID record. No locking of its own."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.pid_file = self.state_dir / PID_FILE_NAME
        self.log_file = self.state_dir / LOG_FILE_NAME
        self.port_file = self.state_dir / PORT_FILE_NAME

    def ensure_dir(self) -> None:
        """Create the state directory if missing."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateError(f"Cannot create state directory {self.state_dir}: {e}", self.state_dir) from e

    def read_record(self) -> Optional[ProcessRecord]:
        """
        Read the PID record.

        :return: The record, or None if no PID file exists.
        :raises CorruptStateError: If the file does not hold a positive decimal integer.
        :raises StateError: If the file exists but cannot be read.
        """
        try:
            raw = self.pid_file.read_bytes()
            mtime = self.pid_file.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateError(f"Cannot read PID file {self.pid_file}: {e}", self.pid_file) from e

        try:
            content = raw.decode("ascii")
        except UnicodeDecodeError:
            raise CorruptStateError(self.pid_file, raw.decode("utf-8", errors="replace")) from None

        text = content.strip()
        if not text.isdigit():
            raise CorruptStateError(self.pid_file, content)
        pid = int(text)
        if pid <= 0:
            raise CorruptStateError(self.pid_file, content)

        return ProcessRecord(
            pid=pid,
            started_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
            port=self._read_port(),
        )

    def _read_port(self) -> Optional[int]:
        # The port file is informational; anything unusable reads as unknown
        try:
            text = self.port_file.read_bytes().decode("ascii").strip()
        except (OSError, UnicodeDecodeError):
            return None
        if not text.isdigit() or not 0 < int(text) <= 65535:
            logger.debug(f"Ignoring unusable port file {self.port_file}")
            return None
        return int(text)

    def _write_atomic(self, path: Path, text: str) -> None:
        tmp_file = path.with_suffix(f".tmp.{os.getpid()}")
        try:
            tmp_file.write_text(text)
            tmp_file.replace(path)
        except OSError as e:
            raise StateError(f"Cannot write {path}: {e}", path) from e
        finally:
            tmp_file.unlink(missing_ok=True)

    def write_record(self, pid: int, port: Optional[int] = None) -> ProcessRecord:
        """
        Atomically persist the PID (write to a temp file, then rename).

        The port, when given, goes to its own file and is written before the PID.
        Without a port, any earlier port file is removed.
        """
        if pid <= 0:
            raise ValueError(f"PID must be positive, got {pid}")
        self.ensure_dir()

        if port is not None:
            self._write_atomic(self.port_file, str(port))
        else:
            self._remove(self.port_file)
        self._write_atomic(self.pid_file, str(pid))

        logger.debug(f"Recorded server PID {pid} in {self.pid_file}")
        return ProcessRecord(pid=pid, started_at=datetime.now(timezone.utc), port=port)

    def _remove(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StateError(f"Cannot remove {path}: {e}", path) from e

    def clear_record(self) -> None:
        """Delete the PID record. Succeeds if there is none."""
        self._remove(self.pid_file)
        self._remove(self.port_file)
        logger.debug(f"Cleared PID file {self.pid_file}")
