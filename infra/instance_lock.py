"""
Single Instance Lock - One Keeper Per Vault

Two keepers polling the same vault would race each other into cooldown
refusals and write the same state file concurrently. A PID file in the
state directory keeps a second process from starting.
"""

import os
import signal
import sys
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        with SingleInstanceLock("pegsentinel-keeper", lock_dir="data"):
            loop.run_forever()
    """

    def __init__(self, name: str, lock_dir: str = "data", install_signal_handlers: bool = False):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False

        self.lock_dir.mkdir(parents=True, exist_ok=True)

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, releasing lock...")
        self.release()
        sys.exit(0)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Stale lock files (dead PID or unreadable content) are removed.

        Returns:
            True if lock acquired, False if another instance is running
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as e:
                logger.warning(f"Invalid lock file, removing: {e}")
                self.lock_file.unlink(missing_ok=True)
            else:
                if existing_pid != os.getpid() and self._is_process_running(existing_pid):
                    logger.error(
                        f"Another keeper is running (PID={existing_pid}). Lock file: {self.lock_file}"
                    )
                    return False
                logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
                self.lock_file.unlink(missing_ok=True)

        try:
            current_pid = os.getpid()
            self.lock_file.write_text(str(current_pid))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        self.acquired = True
        logger.info(f"Lock acquired (PID={current_pid}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.lock_file.unlink(missing_ok=True)
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "pegsentinel-keeper", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """
    Acquire the lock or return None if another instance holds it.
    """
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
