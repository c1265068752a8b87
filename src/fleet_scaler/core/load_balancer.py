"""Upstream registration with backup, validation and rollback."""

import asyncio
import logging
from typing import Callable, List, Optional

from .exceptions import LoadBalancerError, RollbackError
from .logging_config import ActionLog
from .types import UpstreamTarget
from ..balancers.base import LoadBalancerController
from ..balancers.nginx import UpstreamConfig, parse_upstream


logger = logging.getLogger(__name__)


class LoadBalancerConfigManager:
    """Owns the proxy's upstream list and its single backup slot.

    Every mutation follows the same protocol: back up the active config,
    mutate a structured copy, stage it, let the proxy validate it, then
    reload. Any failure after staging restores the backup bytes and reloads
    again, so a failed mutation leaves the active config unchanged.

    Mutations are not locked; the control loop issues at most one at a time.
    """

    def __init__(
        self,
        controller: LoadBalancerController,
        upstream_name: str = "backend",
        action_log: Optional[ActionLog] = None
    ):
        """Initialize load balancer config manager.

        Args:
            controller: Proxy controller for the active configuration
            upstream_name: Name of the managed ``upstream`` block
            action_log: Action log for mutations and rollbacks
        """
        self.controller = controller
        self.upstream_name = upstream_name
        self.action_log = action_log
        self._backup: Optional[str] = None

    async def load(self) -> UpstreamConfig:
        """Parse the active configuration."""
        text = await self.controller.read()
        return parse_upstream(text, self.upstream_name)

    async def targets(self) -> List[UpstreamTarget]:
        """Return the currently routed targets."""
        return (await self.load()).targets

    async def register(self, target: UpstreamTarget) -> None:
        """Add ``target`` to the upstream block.

        Raises:
            DuplicateTargetError: If the endpoint is already routed
            ConfigValidationError: If the proxy rejects the new config (rolled back)
            ConfigReloadError: If the proxy fails to reload (rolled back)
            RollbackError: If the backup could not be restored
        """
        await self._mutate("register", target, lambda config: config.add(target))

    async def deregister(self, target: UpstreamTarget) -> None:
        """Remove ``target`` from the upstream block.

        Raises:
            TargetNotFoundError: If the endpoint is not routed
            ConfigValidationError: If the proxy rejects the new config (rolled back)
            ConfigReloadError: If the proxy fails to reload (rolled back)
            RollbackError: If the backup could not be restored
        """
        await self._mutate("deregister", target, lambda config: config.remove(target.endpoint))

    async def _mutate(
        self,
        operation: str,
        target: UpstreamTarget,
        mutation: Callable[[UpstreamConfig], object]
    ) -> None:
        current = await self.controller.read()

        await self.controller.write_backup(current)
        self._backup = current

        config = parse_upstream(current, self.upstream_name)
        mutation(config)
        staged = config.render()

        try:
            await self.controller.stage(staged)
            await self.controller.validate()
            await self.controller.apply()
        except RollbackError:
            raise
        except LoadBalancerError as e:
            logger.error(f"Failed to {operation} {target.endpoint}: {e}")
            if getattr(e, 'output', ''):
                logger.error(f"Proxy output: {e.output}")
            await self._rollback()
            if self.action_log:
                self.action_log.error(
                    f"Load balancer {operation} of {target.endpoint} failed and was rolled back: {e}",
                    endpoint=target.endpoint, operation=operation, error_code=e.error_code
                )
            raise
        except asyncio.CancelledError:
            logger.warning(f"Load balancer {operation} of {target.endpoint} cancelled, restoring backup")
            await self._rollback()
            if self.action_log:
                self.action_log.warning(
                    f"Load balancer {operation} of {target.endpoint} was cancelled and rolled back",
                    endpoint=target.endpoint, operation=operation
                )
            raise

        logger.info(f"Load balancer {operation} {target.endpoint} applied")
        if self.action_log:
            self.action_log.action(
                f"Load balancer {operation} {target.endpoint}",
                endpoint=target.endpoint, operation=operation
            )

    async def _rollback(self) -> None:
        """Restore the backup slot as the active config.

        Raises:
            RollbackError: If the backup is missing, differs from the snapshot
                taken before the mutation, or the proxy cannot reload it
        """
        backup = await self.controller.read_backup()
        if backup is None or self._backup is None:
            self._fatal("backup configuration is missing")
        if backup != self._backup:
            self._fatal("backup configuration does not match the pre-mutation snapshot")

        try:
            await self.controller.rollback(backup)
        except LoadBalancerError as e:
            self._fatal(f"restoring the backup failed: {e}")

        logger.warning("Load balancer configuration rolled back to backup")

    def _fatal(self, reason: str) -> None:
        error = RollbackError(reason)
        logger.critical(str(error))
        if self.action_log:
            self.action_log.error(str(error), error_code=error.error_code)
        raise error
