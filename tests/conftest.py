"""Pytest configuration and shared fixtures."""

import pytest
from datetime import datetime, timedelta

from fleet_scaler.balancers.nginx import InMemoryNginxController
from fleet_scaler.core.config import (
    FleetConfig, PolicyConfig, ProxyConfig, ScalerConfig
)
from fleet_scaler.core.lifecycle import InstanceLifecycleManager
from fleet_scaler.core.load_balancer import LoadBalancerConfigManager
from fleet_scaler.core.logging_config import ActionLog
from fleet_scaler.core.types import MetricsSnapshot
from fleet_scaler.runtimes.memory import InMemoryProber, InMemoryRuntime


SAMPLE_NGINX_CONF = """user nginx;
worker_processes auto;

events {
    worker_connections 1024;
}

http {
    log_format timed '$remote_addr - [$time_local] "$request" $status rt=$request_time';
    access_log /var/log/nginx/access.log timed;

    upstream backend {
        least_conn;
        server worker-1:8080 max_fails=3 fail_timeout=30s weight=1;
        server worker-2:8080 max_fails=3 fail_timeout=30s weight=1;
        keepalive 32;
    }

    server {
        listen 80;
        location / {
            proxy_pass http://backend;
        }
    }
}
"""


@pytest.fixture
def nginx_conf_text():
    """nginx.conf with two workers in the ``backend`` upstream."""
    return SAMPLE_NGINX_CONF


@pytest.fixture
def fast_fleet_config():
    """Fleet settings with every wait shortened to zero."""
    return FleetConfig(
        runtime="memory",
        startup_timeout=0.05,
        health_poll_interval=0.01,
        probe_attempts=1,
        probe_retry_delay=0.0,
        restart_grace_seconds=0.0,
        drain_seconds=0.0,
        step_pause=0.0
    )


@pytest.fixture
def policy_config():
    """Default thresholds with bounds 2..10."""
    return PolicyConfig()


@pytest.fixture
def scaler_config(fast_fleet_config, policy_config):
    """Complete in-memory scaler configuration."""
    return ScalerConfig(
        check_interval=0.01,
        settle_seconds=0.0,
        action_log_path="",
        policy=policy_config,
        fleet=fast_fleet_config,
        proxy=ProxyConfig(controller="memory")
    )


@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def prober(runtime):
    return InMemoryProber(runtime)


@pytest.fixture
def proxy():
    return InMemoryNginxController("backend")


@pytest.fixture
def action_log():
    """Memory-only action log."""
    log = ActionLog()
    yield log
    log.close()


@pytest.fixture
def balancer(proxy, action_log):
    return LoadBalancerConfigManager(proxy, "backend", action_log)


@pytest.fixture
def lifecycle(runtime, balancer, prober, scaler_config, action_log):
    return InstanceLifecycleManager(
        runtime, balancer, prober,
        fleet=scaler_config.fleet,
        policy=scaler_config.policy,
        proxy=scaler_config.proxy,
        action_log=action_log
    )


@pytest.fixture
def make_snapshot():
    """Factory for metrics snapshots."""
    def _make(cpu=50.0, latency=0.5, rate=20.0, count=3):
        return MetricsSnapshot(
            instance_count=count,
            avg_cpu_percent=cpu,
            avg_latency_seconds=latency,
            request_rate_per_minute=rate * count,
            request_rate_per_instance=rate,
            cpu_samples=count if cpu is not None else 0
        )
    return _make


@pytest.fixture
def access_log_lines():
    """Factory for nginx access log lines in the ``timed`` format."""
    def _make(now, ages_and_times):
        lines = []
        for age_seconds, request_time in ages_and_times:
            stamp = (now - timedelta(seconds=age_seconds)).strftime("%d/%b/%Y:%H:%M:%S %z")
            lines.append(
                f'172.18.0.1 - [{stamp}] "GET /weatherforecast HTTP/1.1" 200 rt={request_time:.3f}\n'
            )
        return "".join(lines)
    return _make


@pytest.fixture
def aware_now():
    """Timezone-aware current time, truncated to whole seconds."""
    return datetime.now().astimezone().replace(microsecond=0)
