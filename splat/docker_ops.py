from __future__ import annotations

import json
import logging
import os
from threading import Lock, Thread
from typing import IO, Any, Iterable

import docker
import requests
from docker.errors import DockerException, NotFound

from .errors import AuthError, CreateError, PullError, SplatError, StartError
from .models import PortMapping, VolumeMapping


log = logging.getLogger(__name__)

# docker-py surfaces socket timeouts as requests exceptions.
RUNTIME_ERRORS = (DockerException, requests.exceptions.RequestException)

LABEL_UID = "splat.uid"
LABEL_APP = "splat.app"


class TeardownError(SplatError):
    pass


def connect(timeout_s: int = 120) -> docker.DockerClient:
    """Open the runtime connection shared by every driver."""
    return docker.from_env(timeout=timeout_s)


def docker_available(client: docker.DockerClient) -> bool:
    try:
        client.ping()
        return True
    except RUNTIME_ERRORS:
        return False


class ContainerDriver:
    """Container lifecycle for a single app.

    Each app gets its own driver so a failure (or a stuck log stream) stays
    with that app; the docker client underneath is shared. The driver keeps
    track of the containers it created and removes them on close().
    """

    def __init__(
        self,
        client: docker.DockerClient,
        name: str,
        log_dir: str | None = None,
        stop_timeout_s: int = 10,
    ) -> None:
        self.name = name
        self.stop_timeout_s = stop_timeout_s
        self._client: docker.DockerClient | None = client
        self._auth: dict[str, str] | None = None
        self._lock = Lock()
        self._created: dict[str, str] = {}  # container id -> identity
        self._log_streams: list[Any] = []
        self._closed = False
        self._engine_log: IO[str] | None = None
        self._container_log: IO[bytes] | None = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            self._engine_log = open(os.path.join(log_dir, f"{name}-docker-engine.log"), "a", encoding="utf-8")
            self._container_log = open(os.path.join(log_dir, f"{name}-container.log"), "ab")

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            raise SplatError(f"driver {self.name} is closed")
        return self._client

    @property
    def created(self) -> list[str]:
        with self._lock:
            return list(self._created)

    def authenticate(self, token: str | None, registry: str | None, username: str = "AWS") -> None:
        if registry is None:
            return
        if not token:
            raise AuthError(f"No login token available for registry {registry}.")
        try:
            self.client.login(username=username, password=token, registry=registry, reauth=True)
        except RUNTIME_ERRORS as e:
            raise AuthError(f"Registry login to {registry} failed: {e}") from e
        self._auth = {"username": username, "password": token, "serveraddress": registry}
        log.debug("authenticated with registry %s", registry)

    def pull_image(self, repo: str, tag: str) -> None:
        log.debug("pulling image %s:%s", repo, tag)
        try:
            stream = self.client.api.pull(repo, tag=tag, stream=True, decode=True, auth_config=self._auth)
            for record in stream:
                self._write_engine(record)
                if isinstance(record, dict) and record.get("error"):
                    raise PullError(f"Failed to pull {repo}:{tag}: {record['error']}")
        except RUNTIME_ERRORS as e:
            raise PullError(f"Failed to pull {repo}:{tag}: {e}") from e
        log.debug("done pulling image %s:%s", repo, tag)

    def create_and_start(
        self,
        identity: str,
        image: str,
        ports: Iterable[PortMapping] = (),
        volumes: Iterable[VolumeMapping] = (),
        replace: bool = True,
    ) -> str:
        """Create and start a container named `identity`; return its id.

        With replace, whatever already runs under that identity is stopped and
        removed first.
        """
        if replace:
            try:
                self.stop_and_remove(identity)
            except TeardownError as e:
                log.warning("replace of %s incomplete: %s", identity, e)

        with self._lock:
            if self._closed:
                raise SplatError(f"driver {self.name} is closed")
            client = self._client
        try:
            container = client.containers.create(
                image,
                name=identity,
                ports={m.key: m.binding() for m in ports},
                volumes={v.source: {"bind": v.target, "mode": "rw"} for v in volumes},
                labels={LABEL_UID: identity, LABEL_APP: self.name},
            )
        except RUNTIME_ERRORS as e:
            raise CreateError(f"Failed to create container {identity}: {e}") from e
        log.debug("created container %s id=%s", identity, container.id)
        with self._lock:
            closed = self._closed
            if not closed:
                self._created[container.id] = identity
        if closed:
            # close() ran while the create was in flight
            self._discard(container)
            raise SplatError(f"driver {self.name} closed while creating {identity}")

        try:
            container.start()
        except RUNTIME_ERRORS as e:
            raise StartError(f"Failed to start container {identity}: {e}", container_id=container.id) from e

        self._listen(container)
        return container.id

    def _discard(self, container: Any) -> None:
        try:
            container.remove(v=False, force=True)
        except NotFound:
            pass
        except RUNTIME_ERRORS as e:
            log.error("could not remove orphaned container %s: %s", container.id, e)

    def stop_and_remove(self, identity: str) -> bool:
        """Stop and remove the container matching `identity` (name or id).

        Returns False when there was nothing to remove. Volumes are kept.
        """
        try:
            containers = self.client.containers.list(all=True, filters={"name": identity})
        except RUNTIME_ERRORS as e:
            raise TeardownError(f"Failed to list containers: {e}") from e

        match = next((c for c in containers if c.name == identity or c.id == identity), None)
        if match is None:
            # the name filter does not match ids
            try:
                match = self.client.containers.get(identity)
            except NotFound:
                log.debug("no existing container for %s", identity)
                return False
            except RUNTIME_ERRORS as e:
                raise TeardownError(f"Failed to look up {identity}: {e}") from e

        log.debug("found existing container %s state=%s", match.id, match.status)
        try:
            if match.status == "running":
                match.stop(timeout=self.stop_timeout_s)
                log.debug("stopped container %s", match.id)
            match.remove(v=False)
        except NotFound:
            pass
        except RUNTIME_ERRORS as e:
            log.error("graceful stop of %s failed, forcing removal: %s", match.id, e)
            try:
                match.remove(v=False, force=True)
            except NotFound:
                pass
            except RUNTIME_ERRORS as e2:
                raise TeardownError(f"Failed to remove container {match.id}: {e2}") from e2
        log.debug("removed container %s", match.id)
        with self._lock:
            self._created.pop(match.id, None)
        return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            ids = list(self._created)
        try:
            for container_id in ids:
                try:
                    self.stop_and_remove(container_id)
                except TeardownError as e:
                    log.error("teardown of %s failed: %s", container_id, e)
        finally:
            for stream in self._log_streams:
                stream.close()
            self._log_streams.clear()
            for f in (self._engine_log, self._container_log):
                if f is not None:
                    f.close()
            self._client = None

    def _listen(self, container: Any) -> None:
        try:
            stream = container.logs(stream=True, follow=True, stdout=True, stderr=True)
        except RUNTIME_ERRORS as e:
            log.warning("log capture for %s unavailable: %s", container.id, e)
            return
        self._log_streams.append(stream)
        Thread(target=self._pump, args=(stream,), name=f"logs-{self.name}", daemon=True).start()

    def _pump(self, stream: Iterable[bytes]) -> None:
        try:
            for chunk in stream:
                if self._container_log is not None:
                    self._container_log.write(chunk)
                    self._container_log.flush()
        except (ValueError, OSError, *RUNTIME_ERRORS) as e:
            # stream or file closed by close()
            log.debug("log stream for %s ended: %s", self.name, e)

    def _write_engine(self, record: Any) -> None:
        if self._engine_log is None:
            return
        line = record if isinstance(record, str) else json.dumps(record)
        self._engine_log.write(line + "\n")
        self._engine_log.flush()
