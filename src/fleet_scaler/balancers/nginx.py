"""nginx upstream model and proxy controllers."""

import asyncio
import functools
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import docker
from docker.errors import APIError, DockerException, NotFound

from .base import FileConfigController, LoadBalancerController
from ..core.exceptions import (
    ConfigReloadError, ConfigValidationError, DuplicateTargetError,
    TargetNotFoundError
)
from ..core.types import UpstreamTarget


logger = logging.getLogger(__name__)


_SERVER_LINE = re.compile(r"^(?P<indent>\s*)server\s+(?P<address>[^\s;]+)(?P<params>[^;]*);\s*(#.*)?$")
_STATEMENT = re.compile(r"[^;#{}]*;")
_DEFAULT_INDENT = "        "

DEFAULT_TEMPLATE = """events {{
    worker_connections 1024;
}}

http {{
    log_format timed '$remote_addr - [$time_local] "$request" $status rt=$request_time';
    access_log /var/log/nginx/access.log timed;

    upstream {name} {{
        least_conn;
    }}

    server {{
        listen 80;

        location / {{
            proxy_pass http://{name};
            proxy_next_upstream error timeout http_502 http_503;
        }}
    }}
}}
"""


def parse_server_directive(line: str) -> Optional[UpstreamTarget]:
    """Parse one ``server host:port [params];`` line.

    Returns:
        The target, or None if the line is not a server directive
    """
    match = _SERVER_LINE.match(line)
    if not match:
        return None

    address = match.group("address")
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        # unix sockets and other address forms are kept verbatim
        return None

    target = UpstreamTarget(host=host, port=int(port))
    flags = []
    for token in match.group("params").split():
        key, _, value = token.partition("=")
        if key == "weight" and value.isdigit():
            target.weight = int(value)
        elif key == "max_fails" and value.isdigit():
            target.max_fails = int(value)
        elif key == "fail_timeout" and value:
            target.fail_timeout = value
        else:
            flags.append(token)
    target.flags = tuple(flags)
    return target


def _split_statements(line: str) -> List[str]:
    """Split one body line into its ``;``-terminated statements.

    Trailing whitespace, comments and the line ending stay with the last
    statement, so the pieces join back to ``line``.
    """
    pieces = []
    rest = line
    while True:
        match = _STATEMENT.match(rest)
        if not match:
            break
        remainder = rest[match.end():].strip()
        if not remainder or remainder.startswith("#"):
            break
        pieces.append(match.group(0))
        rest = rest[match.end():]
    pieces.append(rest)
    return pieces


@dataclass
class _BodyLine:
    text: str
    target: Optional[UpstreamTarget] = None


@dataclass
class UpstreamConfig:
    """Structured view of one ``upstream`` block inside an nginx config file.

    Everything outside the block, and every line inside it that is not a
    server directive, is kept verbatim so an unmodified config renders back
    byte for byte.
    """
    name: str
    prefix: str
    suffix: str
    lines: List[_BodyLine] = field(default_factory=list)

    @property
    def targets(self) -> List[UpstreamTarget]:
        return [line.target for line in self.lines if line.target is not None]

    def find(self, endpoint: str) -> Optional[UpstreamTarget]:
        for target in self.targets:
            if target.endpoint == endpoint:
                return target
        return None

    def add(self, target: UpstreamTarget) -> None:
        """Append a server entry after the last existing one.

        Raises:
            DuplicateTargetError: If the endpoint is already present
        """
        if self.find(target.endpoint):
            raise DuplicateTargetError(target.endpoint)

        server_indexes = [i for i, line in enumerate(self.lines) if line.target is not None]
        if server_indexes:
            anchor = server_indexes[-1]
            indent = self._indent_of(anchor)
            insert_at = anchor + 1
        else:
            indent = _DEFAULT_INDENT
            insert_at = len(self.lines)
            if self.lines and not self.lines[-1].text.endswith("\n"):
                # Keep the whitespace before the closing brace last
                insert_at -= 1

        text = f"{indent}{target.to_directive()}\n"
        if insert_at > 0 and not self.lines[insert_at - 1].text.endswith("\n"):
            text = "\n" + text
        elif insert_at == 0 and not self.lines:
            text = "\n" + text

        self.lines.insert(insert_at, _BodyLine(text=text, target=target))

    def remove(self, endpoint: str) -> UpstreamTarget:
        """Drop the server entry for ``endpoint``.

        Raises:
            TargetNotFoundError: If the endpoint is not present
        """
        for index, line in enumerate(self.lines):
            if line.target is not None and line.target.endpoint == endpoint:
                ending = line.text[len(line.text.rstrip("\r\n")):]
                if ending and index > 0 and not self.lines[index - 1].text.endswith("\n"):
                    # Statement shared its line; keep the line break
                    self.lines[index - 1].text += ending
                del self.lines[index]
                return line.target
        raise TargetNotFoundError(endpoint)

    def _indent_of(self, index: int) -> str:
        """Leading whitespace of the physical line holding ``lines[index]``."""
        while index > 0 and not self.lines[index - 1].text.endswith("\n"):
            index -= 1
        text = self.lines[index].text
        return text[:len(text) - len(text.lstrip(" \t"))]

    def render(self) -> str:
        """Serialize back to the complete configuration file text."""
        return self.prefix + "".join(line.text for line in self.lines) + self.suffix


def parse_upstream(text: str, name: str) -> UpstreamConfig:
    """Locate and parse ``upstream <name> { ... }`` in a config file.

    Args:
        text: Complete nginx configuration
        name: Upstream block name

    Returns:
        Structured upstream model

    Raises:
        ConfigValidationError: If the block is missing or unbalanced
    """
    header = re.search(rf"(^|[\s;{{}}])upstream\s+{re.escape(name)}\s*\{{", text)
    if not header:
        raise ConfigValidationError(f"upstream '{name}' block not found in proxy config")

    body_start = header.end()
    depth = 1
    position = body_start
    while position < len(text):
        char = text[position]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                break
        position += 1
    else:
        raise ConfigValidationError(f"upstream '{name}' block is not closed")

    body = text[body_start:position]
    lines = [
        _BodyLine(text=piece, target=parse_server_directive(piece.rstrip("\r\n")))
        for line in body.splitlines(keepends=True)
        for piece in _split_statements(line)
    ]
    return UpstreamConfig(
        name=name,
        prefix=text[:body_start],
        suffix=text[position:],
        lines=lines
    )


def render_default_config(upstream_name: str, targets: Optional[List[UpstreamTarget]] = None) -> str:
    """Build a minimal nginx config with ``targets`` in its upstream block."""
    config = parse_upstream(DEFAULT_TEMPLATE.format(name=upstream_name), upstream_name)
    for target in targets or []:
        config.add(target)
    return config.render()


def _check_renderable(text: str, upstream_name: str) -> None:
    """Structural stand-in for ``nginx -t``: the block parses and is not empty."""
    config = parse_upstream(text, upstream_name)
    if not config.targets:
        raise ConfigValidationError(f"upstream '{upstream_name}' has no servers")


class LocalNginxController(FileConfigController):
    """Controls an nginx binary running on this host."""

    name = "local"

    def __init__(
        self,
        config_path: Union[str, Path],
        nginx_binary: str = "nginx",
        backup_path: Optional[Union[str, Path]] = None
    ):
        super().__init__(config_path, backup_path)
        self.nginx_binary = nginx_binary

    async def _run(self, *args: str) -> tuple:
        try:
            process = await asyncio.create_subprocess_exec(
                self.nginx_binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT
            )
        except OSError as e:
            raise ConfigReloadError(f"Cannot execute {self.nginx_binary}: {e}")
        output, _ = await process.communicate()
        return process.returncode, output.decode(errors="replace").strip()

    async def validate(self) -> None:
        code, output = await self._run("-t", "-c", str(self.config_path.resolve()))
        if code != 0:
            raise ConfigValidationError(f"nginx rejected {self.config_path}", output=output)
        logger.debug(f"nginx -t passed: {output}")

    async def apply(self) -> None:
        code, output = await self._run("-s", "reload", "-c", str(self.config_path.resolve()))
        if code != 0:
            raise ConfigReloadError("nginx reload failed", output=output)
        logger.info("nginx reloaded")


class DockerNginxController(FileConfigController):
    """Controls nginx running in a container with the config bind-mounted.

    The config file is edited on the host and checked or reloaded with
    ``docker exec``.
    """

    name = "docker"

    def __init__(
        self,
        config_path: Union[str, Path],
        container: str,
        client: Optional[docker.DockerClient] = None,
        backup_path: Optional[Union[str, Path]] = None
    ):
        super().__init__(config_path, backup_path, atomic_writes=False)
        self.container = container
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _exec(self, command: List[str]) -> tuple:
        def run():
            container = self.client.containers.get(self.container)
            result = container.exec_run(command)
            return result.exit_code, (result.output or b"").decode(errors="replace").strip()

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(run))
        except NotFound:
            raise ConfigReloadError(f"nginx container {self.container} not found")
        except (APIError, DockerException) as e:
            raise ConfigReloadError(f"docker exec in {self.container} failed: {e}")

    async def validate(self) -> None:
        code, output = await self._exec(["nginx", "-t"])
        if code != 0:
            raise ConfigValidationError(f"nginx in {self.container} rejected the config", output=output)

    async def apply(self) -> None:
        code, output = await self._exec(["nginx", "-s", "reload"])
        if code != 0:
            raise ConfigReloadError(f"nginx reload in {self.container} failed", output=output)
        logger.info(f"nginx in {self.container} reloaded")


class InMemoryNginxController(LoadBalancerController):
    """Keeps the configuration in memory; validation is structural only.

    Used for dry runs and tests. ``fail_validation`` and ``fail_reload``
    simulate proxy rejections.
    """

    name = "memory"

    def __init__(self, upstream_name: str = "backend", text: Optional[str] = None):
        self.upstream_name = upstream_name
        self.text = text if text is not None else render_default_config(upstream_name)
        self.backup: Optional[str] = None
        self.fail_validation = False
        self.fail_reload = False
        self.reloads = 0
        self.calls: List[str] = []

    async def read(self) -> str:
        return self.text

    async def write_backup(self, text: str) -> None:
        self.calls.append("backup")
        self.backup = text

    async def read_backup(self) -> Optional[str]:
        return self.backup

    async def stage(self, text: str) -> None:
        self.calls.append("stage")
        self.text = text

    async def validate(self) -> None:
        self.calls.append("validate")
        if self.fail_validation:
            raise ConfigValidationError("simulated validation failure")
        _check_renderable(self.text, self.upstream_name)

    async def apply(self) -> None:
        self.calls.append("apply")
        if self.fail_reload:
            raise ConfigReloadError("simulated reload failure")
        self.reloads += 1

    async def rollback(self, backup_text: str) -> None:
        self.calls.append("rollback")
        self.text = backup_text
        self.reloads += 1
