"""Unit tests for LoadBalancerConfigManager."""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch

from fleet_scaler.balancers.nginx import InMemoryNginxController, LocalNginxController
from fleet_scaler.core.exceptions import (
    ConfigReloadError, ConfigValidationError, DuplicateTargetError,
    FatalError, RollbackError, TargetNotFoundError
)
from fleet_scaler.core.load_balancer import LoadBalancerConfigManager
from fleet_scaler.core.types import EntryKind, UpstreamTarget


class TestLoadBalancerConfigManager:
    """Test cases for register/deregister with rollback."""

    @pytest.fixture
    def proxy(self, nginx_conf_text):
        return InMemoryNginxController("backend", nginx_conf_text)

    @pytest.fixture
    def manager(self, proxy, action_log):
        return LoadBalancerConfigManager(proxy, "backend", action_log)

    @pytest.fixture
    def new_target(self):
        return UpstreamTarget(host="worker-3", port=8080)

    @pytest.mark.asyncio
    async def test_register(self, manager, proxy, new_target, nginx_conf_text, action_log):
        await manager.register(new_target)

        endpoints = [t.endpoint for t in await manager.targets()]
        assert endpoints == ["worker-1:8080", "worker-2:8080", "worker-3:8080"]
        assert proxy.backup == nginx_conf_text
        assert proxy.calls == ["backup", "stage", "validate", "apply"]
        assert proxy.reloads == 1
        assert action_log.tail(1)[0].kind == EntryKind.ACTION

    @pytest.mark.asyncio
    async def test_deregister(self, manager, proxy):
        await manager.deregister(UpstreamTarget(host="worker-1", port=8080))

        assert [t.endpoint for t in await manager.targets()] == ["worker-2:8080"]
        assert proxy.reloads == 1

    @pytest.mark.asyncio
    async def test_duplicate_register_touches_nothing(self, manager, proxy, nginx_conf_text):
        with pytest.raises(DuplicateTargetError):
            await manager.register(UpstreamTarget(host="worker-1", port=8080))

        assert proxy.text == nginx_conf_text
        assert "stage" not in proxy.calls
        assert proxy.reloads == 0

    @pytest.mark.asyncio
    async def test_deregister_missing(self, manager, proxy, nginx_conf_text):
        with pytest.raises(TargetNotFoundError):
            await manager.deregister(UpstreamTarget(host="worker-9", port=8080))

        assert proxy.text == nginx_conf_text

    @pytest.mark.asyncio
    async def test_validation_failure_rolls_back(self, manager, proxy, new_target, nginx_conf_text, action_log):
        """A rejected config leaves the active config byte-identical."""
        proxy.fail_validation = True

        with pytest.raises(ConfigValidationError):
            await manager.register(new_target)

        assert proxy.text == nginx_conf_text
        assert proxy.calls[-1] == "rollback"
        assert proxy.reloads == 1
        assert action_log.tail(1)[0].kind == EntryKind.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_mutation_rolls_back(self, manager, proxy, new_target, nginx_conf_text, action_log):
        """Cancelling between stage and reload restores the backup before unwinding."""
        staged = asyncio.Event()

        async def hang():
            staged.set()
            await asyncio.Event().wait()

        proxy.validate = hang
        task = asyncio.create_task(manager.register(new_target))
        await staged.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert proxy.text == nginx_conf_text
        assert proxy.calls[-1] == "rollback"
        assert action_log.tail(1)[0].kind == EntryKind.WARNING

    @pytest.mark.asyncio
    async def test_reload_failure_rolls_back(self, manager, proxy, new_target, nginx_conf_text):
        proxy.fail_reload = True

        with pytest.raises(ConfigReloadError):
            await manager.register(new_target)

        assert proxy.text == nginx_conf_text
        assert "rollback" in proxy.calls

    @pytest.mark.asyncio
    async def test_missing_backup_is_fatal(self, manager, proxy, new_target):
        proxy.fail_validation = True
        proxy.read_backup = AsyncMock(return_value=None)

        with pytest.raises(RollbackError) as exc_info:
            await manager.register(new_target)

        assert isinstance(exc_info.value, FatalError)
        assert "rollback" not in proxy.calls

    @pytest.mark.asyncio
    async def test_corrupt_backup_is_fatal(self, manager, proxy, new_target):
        proxy.fail_validation = True
        proxy.read_backup = AsyncMock(return_value="garbage")

        with pytest.raises(RollbackError):
            await manager.register(new_target)

    @pytest.mark.asyncio
    async def test_failed_restore_is_fatal(self, manager, proxy, new_target):
        proxy.fail_validation = True
        proxy.rollback = AsyncMock(side_effect=ConfigReloadError("nginx down"))

        with pytest.raises(RollbackError):
            await manager.register(new_target)

    @pytest.mark.asyncio
    async def test_file_rollback_is_byte_identical(self, tmp_path, nginx_conf_text, new_target):
        """Rolling back a file-backed config restores the exact original bytes."""
        text = nginx_conf_text.replace("\n", "\r\n") + "# trailing comment without newline"
        path = tmp_path / "nginx.conf"
        path.write_bytes(text.encode())
        controller = LocalNginxController(path)
        manager = LoadBalancerConfigManager(controller, "backend")

        with patch.object(controller, 'validate', AsyncMock(side_effect=ConfigValidationError("bad"))), \
                patch.object(controller, 'apply', AsyncMock()):
            with pytest.raises(ConfigValidationError):
                await manager.register(new_target)

        assert path.read_bytes() == text.encode()
        assert controller.backup_path.read_bytes() == text.encode()
