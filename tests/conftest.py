from __future__ import annotations

import itertools
import threading
from dataclasses import replace

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from splat.controller import Orchestrator
from splat.models import AppConfig, ImageRef, VolumeSpec
from splat.proxy import ProxySynchronizer
from splat.settings import Settings


GOOD_TOKEN = "good-token"


class FakeLogStream:
    def __init__(self, chunks: list[bytes]):
        self._chunks = list(chunks)
        self.closed = False

    def __iter__(self):
        return iter(self._chunks)

    def close(self) -> None:
        self.closed = True


class FakeContainer:
    def __init__(self, runtime: "FakeRuntime", cid: str, name: str, image: str, ports, volumes, labels):
        self.runtime = runtime
        self.id = cid
        self.name = name
        self.image = image
        self.ports = ports
        self.volumes = volumes
        self.labels = labels
        self.status = "created"
        self.stop_calls = 0

    def start(self) -> None:
        if self.image in self.runtime.unbootable_images:
            raise APIError("container exited immediately")
        self.status = "running"

    def stop(self, timeout=None) -> None:
        self.stop_calls += 1
        self.runtime.stop_log.append((self.id, timeout))
        self.status = "exited"

    def remove(self, v=False, force=False) -> None:
        with self.runtime.lock:
            if self.id not in self.runtime.table:
                raise NotFound(f"No such container: {self.id}")
            del self.runtime.table[self.id]
        self.runtime.removed.append(self.id)

    def logs(self, **kwargs) -> FakeLogStream:
        stream = FakeLogStream([b"listening on :8080\n"])
        self.runtime.log_streams.append(stream)
        return stream


class FakeContainers:
    def __init__(self, runtime: "FakeRuntime"):
        self.runtime = runtime

    def create(self, image, name=None, ports=None, volumes=None, labels=None, **kwargs) -> FakeContainer:
        gate = self.runtime.create_gate
        if gate is not None:
            gate.wait(timeout=10)
        if image in self.runtime.missing_images:
            raise ImageNotFound(f"No such image: {image}")
        with self.runtime.lock:
            if any(c.name == name for c in self.runtime.table.values()):
                raise APIError(f'Conflict. The container name "/{name}" is already in use')
            cid = f"{next(self.runtime.ids):064x}"
            container = FakeContainer(self.runtime, cid, name, image, ports or {}, volumes or {}, labels or {})
            self.runtime.table[cid] = container
            self.runtime.created.append(container)
            return container

    def list(self, all=False, filters=None) -> list[FakeContainer]:
        name = (filters or {}).get("name")
        with self.runtime.lock:
            out = list(self.runtime.table.values())
        if not all:
            out = [c for c in out if c.status == "running"]
        if name:
            out = [c for c in out if name in c.name]
        return out

    def get(self, id_or_name: str) -> FakeContainer:
        with self.runtime.lock:
            for c in self.runtime.table.values():
                if c.id == id_or_name or c.name == id_or_name:
                    return c
        raise NotFound(f"No such container: {id_or_name}")


class FakeAPI:
    def __init__(self, runtime: "FakeRuntime"):
        self.runtime = runtime

    def pull(self, repository, tag=None, stream=False, decode=False, auth_config=None):
        self.runtime.pulls.append((repository, tag, auth_config))
        if repository in self.runtime.unreachable_repos:
            raise APIError(f"Get https://{repository}/v2/: dial tcp: i/o timeout")
        return iter(
            [
                {"status": f"Pulling from {repository}", "id": tag},
                {"status": "Download complete"},
                {"status": f"Status: Downloaded newer image for {repository}:{tag}"},
            ]
        )


class FakeRuntime:
    """In-memory stand-in for a docker daemon, shaped like docker.DockerClient."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.ids = itertools.count(1)
        self.table: dict[str, FakeContainer] = {}
        self.created: list[FakeContainer] = []
        self.removed: list[str] = []
        self.stop_log: list[tuple[str, int | None]] = []
        self.pulls: list[tuple] = []
        self.logins: list[dict] = []
        self.log_streams: list[FakeLogStream] = []
        self.missing_images: set[str] = set()
        self.unbootable_images: set[str] = set()
        self.unreachable_repos: set[str] = set()
        self.create_gate: threading.Event | None = None
        self.closed = False
        self.containers = FakeContainers(self)
        self.api = FakeAPI(self)

    @property
    def containers_by_name(self) -> dict[str, list[FakeContainer]]:
        out: dict[str, list[FakeContainer]] = {}
        for c in self.table.values():
            out.setdefault(c.name, []).append(c)
        return out

    def login(self, username, password=None, registry=None, reauth=False, **kwargs) -> dict:
        self.logins.append({"username": username, "registry": registry})
        if password != GOOD_TOKEN:
            raise APIError("unauthorized: authentication required")
        return {"Status": "Login Succeeded"}

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def base_settings(tmp_path) -> Settings:
    srv = tmp_path / "srv"
    srv.mkdir()
    return Settings(
        events_db=":memory:",
        log_dir=str(tmp_path / "logs"),
        port_base=10000,
        proxy_dir=str(tmp_path / "nginx"),
        proxy_template=None,
        proxy_reload_cmd="true",
        volume_root=str(srv),
        volume_target="/volumes",
        registry_token=GOOD_TOKEN,
        stop_timeout_s=10,
        startup_timeout_s=30,
        enable_api=False,
    )


@pytest.fixture
def make_orch(runtime, base_settings):
    created: list[Orchestrator] = []

    def _make(**overrides) -> Orchestrator:
        s = replace(base_settings, **overrides)
        proxy = ProxySynchronizer(s.proxy_dir, reload_cmd=s.proxy_reload_cmd)
        orch = Orchestrator(s, docker_client=runtime, proxy=proxy)
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        orch.shutdown()


def make_config(
    name: str,
    port: int = 8080,
    registry: str | None = None,
    volumes: tuple[VolumeSpec, ...] = (),
    environment: str = "dev",
) -> AppConfig:
    return AppConfig(
        name=name,
        environment=environment,
        container=ImageRef(image=f"{name}-image", tag="latest", registry=registry),
        external_host=f"{name}.example.com",
        container_port=port,
        volumes=volumes,
    )
