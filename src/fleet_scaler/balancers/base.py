"""Base classes for controlling the load balancer's configuration."""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from ..core.exceptions import LoadBalancerError


logger = logging.getLogger(__name__)


class LoadBalancerController(ABC):
    """Stages, validates, applies and rolls back proxy configuration text.

    Implementations own the active configuration and its single backup slot;
    callers only ever hand them complete file contents.
    """

    name = "base"

    @abstractmethod
    async def read(self) -> str:
        """Return the active configuration text."""
        pass

    @abstractmethod
    async def write_backup(self, text: str) -> None:
        """Store ``text`` in the backup slot."""
        pass

    @abstractmethod
    async def read_backup(self) -> Optional[str]:
        """Return the backup slot contents, or None if there is no backup."""
        pass

    @abstractmethod
    async def stage(self, text: str) -> None:
        """Write a candidate configuration where the proxy will validate it."""
        pass

    @abstractmethod
    async def validate(self) -> None:
        """Run the proxy's own configuration check.

        Raises:
            ConfigValidationError: If the proxy rejects the staged configuration
        """
        pass

    @abstractmethod
    async def apply(self) -> None:
        """Signal the proxy to reload without dropping connections.

        Raises:
            ConfigReloadError: If the reload fails
        """
        pass

    async def rollback(self, backup_text: str) -> None:
        """Restore ``backup_text`` as the active configuration and reload."""
        await self.stage(backup_text)
        await self.apply()


class FileConfigController(LoadBalancerController):
    """Controller whose configuration lives in a file on this host."""

    def __init__(
        self,
        config_path: Union[str, Path],
        backup_path: Optional[Union[str, Path]] = None,
        atomic_writes: bool = True
    ):
        """Initialize file-backed controller.

        Args:
            config_path: Path to the proxy configuration file
            backup_path: Backup slot path (defaults to ``<config_path>.backup``)
            atomic_writes: Replace files by rename instead of rewriting in place
        """
        self.config_path = Path(config_path)
        self.atomic_writes = atomic_writes
        self.backup_path = Path(backup_path) if backup_path else Path(f"{self.config_path}.backup")

    async def read(self) -> str:
        try:
            return self._read(self.config_path)
        except OSError as e:
            raise LoadBalancerError(
                f"Cannot read proxy config {self.config_path}: {e}", error_code="PROXY_CONFIG_UNREADABLE"
            )

    async def write_backup(self, text: str) -> None:
        self._write(self.backup_path, text)
        logger.debug(f"Backed up proxy config to {self.backup_path}")

    async def read_backup(self) -> Optional[str]:
        try:
            return self._read(self.backup_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Cannot read proxy config backup {self.backup_path}: {e}")
            return None

    async def stage(self, text: str) -> None:
        self._write(self.config_path, text)

    @staticmethod
    def _read(path: Path) -> str:
        with open(path, "r", newline="") as f:
            return f.read()

    def _write(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if self.atomic_writes:
                self._replace(path, text)
            else:
                # Keeps the inode so single-file bind mounts see the change
                with open(path, "w", newline="") as f:
                    f.write(text)
        except OSError as e:
            raise LoadBalancerError(
                f"Cannot write {path}: {e}", error_code="PROXY_CONFIG_UNWRITABLE"
            )

    @staticmethod
    def _replace(path: Path, text: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", newline="") as f:
                f.write(text)
            if path.exists():
                os.chmod(tmp_name, path.stat().st_mode & 0o777)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
