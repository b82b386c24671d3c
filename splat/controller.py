from __future__ import annotations

import logging
import queue
import signal
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable

import docker

from . import docker_ops
from .config import load_app_config
from .docker_ops import ContainerDriver
from .errors import ReloadError, SplatError
from .events import EventLog
from .models import AppConfig, PortMapping, ProxyRoute, VolumeMapping
from .ports import PortAllocator
from .proxy import ProxySynchronizer
from .registry import Process, ProcessRegistry, ProcessStatus
from .settings import Settings, settings as default_settings


log = logging.getLogger(__name__)


class Command(str, Enum):
    SHUTDOWN = "shutdown"
    RELOAD = "reload"
    STATUS_DUMP = "status"


DriverFactory = Callable[[str], ContainerDriver]


class Orchestrator:
    """Owns the fleet: registry, port allocator, proxy and runtime connection.

    Everything process-wide lives on this object; tasks receive it by
    reference, so independent instances can coexist (tests do this).
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        docker_client: docker.DockerClient | None = None,
        proxy: ProxySynchronizer | None = None,
        registry: ProcessRegistry | None = None,
        ports: PortAllocator | None = None,
        events: EventLog | None = None,
        driver_factory: DriverFactory | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or ProcessRegistry()
        self.ports = ports or PortAllocator(settings.port_base)
        self.events = events or EventLog(settings.events_db)
        self.proxy = proxy or self._default_proxy()
        self._client = docker_client
        self._driver_factory = driver_factory or self._default_driver
        self._commands: queue.Queue[Command] = queue.Queue()
        self._shutdown_lock = Lock()
        self._shut_down = False
        self.config_errors: dict[str, Exception] = {}
        self.startup_errors: dict[str, BaseException] = {}

    def _default_proxy(self) -> ProxySynchronizer:
        kwargs = {
            "reload_cmd": self.settings.proxy_reload_cmd,
            "reload_timeout_s": self.settings.proxy_reload_timeout_s,
        }
        if self.settings.proxy_template:
            return ProxySynchronizer.from_template_file(self.settings.proxy_dir, self.settings.proxy_template, **kwargs)
        return ProxySynchronizer(self.settings.proxy_dir, **kwargs)

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker_ops.connect(self.settings.docker_timeout_s)
        return self._client

    def _default_driver(self, uid: str) -> ContainerDriver:
        return ContainerDriver(
            self.client,
            name=uid,
            log_dir=self.settings.log_dir,
            stop_timeout_s=self.settings.stop_timeout_s,
        )

    @property
    def shut_down(self) -> bool:
        return self._shut_down

    # -- loading -----------------------------------------------------------

    def load_configs(self, paths: Iterable[str | Path]) -> list[AppConfig]:
        """Load every config file in parallel; failures are collected per path."""
        paths = [str(p) for p in paths]
        configs: list[AppConfig] = []
        if not paths:
            return configs
        with ThreadPoolExecutor(max_workers=len(paths), thread_name_prefix="load") as pool:
            futures = {path: pool.submit(load_app_config, path) for path in paths}
        for path, fut in futures.items():
            err = fut.exception()
            if err is not None:
                self.config_errors[path] = err
                self.events.log_event("ERROR", f"Error reading config file {path}: {err}")
                continue
            configs.append(fut.result())
        return configs

    def register(self, configs: Iterable[AppConfig]) -> list[str]:
        uids = []
        for config in configs:
            uid = self.registry.register(config)
            self.events.log_event("INFO", f"Registered {config.identity} ({config.container.reference})", uid=uid)
            uids.append(uid)
        return uids

    # -- startup -----------------------------------------------------------

    def start_all(self, uids: Iterable[str] | None = None) -> dict[str, BaseException]:
        """Start every app concurrently and wait for all of them.

        Returns uid -> error for apps that failed; siblings are unaffected.
        """
        if uids is None:
            uids = [p.uid for p in self.registry.snapshot()]
        uids = list(uids)
        errors: dict[str, BaseException] = {}
        if not uids:
            return errors

        pool = ThreadPoolExecutor(max_workers=len(uids), thread_name_prefix="start")
        futures: dict[Future, str] = {pool.submit(self.start_app, uid): uid for uid in uids}
        done, not_done = wait(futures, timeout=self.settings.startup_timeout_s)
        # stuck tasks keep their thread; they are not waited on
        pool.shutdown(wait=False)

        for fut in done:
            uid = futures[fut]
            err = fut.result()
            if err is not None:
                errors[uid] = err
        for fut in not_done:
            uid = futures[fut]
            err = TimeoutError(f"startup did not finish within {self.settings.startup_timeout_s}s")
            self._fail(uid, err)
            errors[uid] = err

        self.startup_errors.update(errors)
        for uid, err in errors.items():
            log.error("app %s failed to start: %s: %s", uid, type(err).__name__, err)
        running = sum(1 for p in self.registry.snapshot() if p.status == ProcessStatus.RUNNING)
        self.events.log_event("INFO", f"Startup finished: {running} running, {len(errors)} failed")
        return errors

    def start_app(self, uid: str) -> BaseException | None:
        """Run the startup sequence for one app. Never raises; returns the error."""
        try:
            self._start(uid)
        except Exception as e:
            self._fail(uid, e)
            return e
        return None

    def _ensure_not_shut_down(self) -> None:
        if self._shut_down:
            raise SplatError("orchestrator is shutting down")

    def _start(self, uid: str) -> None:
        self._ensure_not_shut_down()
        proc = self.registry.update(uid, status=ProcessStatus.STARTING, error=None, route_live=False)
        config = proc.config
        driver = proc.driver
        if driver is None:
            driver = self._driver_factory(uid)
            self.registry.update(uid, driver=driver)
        self.events.log_event("INFO", f"Starting {config.container.reference}", uid=uid)

        image = config.container
        if image.registry is not None:
            driver.authenticate(self.settings.registry_token, image.registry, username=self.settings.registry_username)
            driver.pull_image(image.repo_path, image.tag)
            self.events.log_event("INFO", f"Pulled {image.reference}", uid=uid)

        port = self.ports.next()
        ports = [
            PortMapping(
                container_port=config.container_port,
                host_port=port,
                host_address=self.settings.bind_address,
            )
        ]
        volumes = [
            VolumeMapping.resolve(v, self.settings.volume_root, self.settings.volume_target) for v in config.volumes
        ]

        route = ProxyRoute.for_port(config.external_host, port, address=self._upstream_address())
        data = self.proxy.render_config(route.external_host, route.upstream_url)
        self._ensure_not_shut_down()
        self.proxy.install(uid, data)
        reload_error: ReloadError | None = None
        try:
            self.proxy.reload()
        except ReloadError as e:
            reload_error = e
            self.events.log_event("WARN", f"Route {route.external_host} not live: {e}", uid=uid)

        try:
            self._ensure_not_shut_down()
            container_id = driver.create_and_start(uid, image.reference, ports=ports, volumes=volumes, replace=True)
        except SplatError:
            self._withdraw_route(uid)
            raise
        self.registry.update(
            uid,
            container_id=container_id,
            port=port,
            status=ProcessStatus.RUNNING,
            error=reload_error,
            route_live=reload_error is None,
        )
        self.events.log_event(
            "INFO",
            f"Running container {container_id[:12]} on port {port} -> {route.external_host}",
            uid=uid,
        )

    def _withdraw_route(self, uid: str) -> None:
        """Drop the route of an app whose container did not come up."""
        if not self.proxy.uninstall(uid):
            return
        try:
            self.proxy.reload()
        except ReloadError as e:
            log.error("proxy reload after withdrawing %s failed: %s", uid, e)

    def _upstream_address(self) -> str:
        addr = self.settings.bind_address
        return "127.0.0.1" if addr in {"", "0.0.0.0"} else addr

    def _fail(self, uid: str, err: BaseException) -> None:
        self.events.log_event("ERROR", f"Startup failed: {type(err).__name__}: {err}", uid=uid)
        try:
            self.registry.update(uid, status=ProcessStatus.FAILED, error=err)
        except SplatError as e:
            log.error("could not record failure for %s: %s", uid, e)

    # -- teardown ----------------------------------------------------------

    def remove(self, uid: str) -> Process:
        """Tear down one app's container and route and drop it from the registry."""
        proc = self.registry.get(uid)
        if proc.driver is not None:
            proc.driver.close()
        if self.proxy.uninstall(uid):
            try:
                self.proxy.reload()
            except ReloadError as e:
                log.error("proxy reload after removing %s failed: %s", uid, e)
        self.events.log_event("INFO", "Removed", uid=uid)
        return self.registry.remove(uid)

    def shutdown(self) -> None:
        """Stop every container and remove every route. Safe to call repeatedly."""
        with self._shutdown_lock:
            if self._shut_down:
                log.debug("shutdown already done")
                return
            self._shut_down = True

            self.events.log_event("INFO", "Shutting down...")
            for proc in self.registry.snapshot():
                if proc.driver is None:
                    continue
                try:
                    proc.driver.close()
                except Exception as e:
                    self.events.log_event("ERROR", f"Teardown failed: {type(e).__name__}: {e}", uid=proc.uid)
                try:
                    self.registry.update(proc.uid, status=ProcessStatus.STOPPED)
                except SplatError as e:
                    log.error("could not mark %s stopped: %s", proc.uid, e)
            self.proxy.close()
            if self._client is not None:
                try:
                    self._client.close()
                except Exception as e:
                    log.error("closing docker client failed: %s", e)
            self.events.log_event("INFO", "Shutdown complete")

    @property
    def exit_code(self) -> int:
        return 1 if (self.config_errors or self.startup_errors) else 0

    # -- control loop ------------------------------------------------------

    def submit(self, command: Command | str) -> None:
        self._commands.put(Command(command))

    def status_dump(self) -> list[dict]:
        rows = [p.summary() for p in self.registry.snapshot()]
        log.info("Process info")
        for row in rows:
            log.info(
                "process=%s container=%s port=%s status=%s route_live=%s error=%s",
                row["uid"],
                row["container_id"],
                row["port"],
                row["status"],
                row["route_live"],
                row["error"],
            )
        return rows

    def handle(self, command: Command) -> bool:
        """Handle one command; return False once the loop should stop."""
        if command == Command.STATUS_DUMP:
            self.status_dump()
        elif command == Command.RELOAD:
            # no-op: config reload is not supported
            self.events.log_event("INFO", "Reload requested; config reload is not supported, ignoring")
        elif command == Command.SHUTDOWN:
            self.shutdown()
            return False
        return True

    def run_control_loop(self) -> None:
        while True:
            command = self._commands.get()
            if not self.handle(command):
                return

    def install_signal_handlers(self) -> None:
        """Map OS signals onto commands. Handlers only enqueue."""
        mapping = {
            signal.SIGINT: Command.SHUTDOWN,
            signal.SIGTERM: Command.SHUTDOWN,
            signal.SIGHUP: Command.RELOAD,
            getattr(signal, "SIGINFO", signal.SIGUSR1): Command.STATUS_DUMP,
        }
        for sig, command in mapping.items():
            signal.signal(sig, lambda _signum, _frame, c=command: self.submit(c))

    def _runtime_reachable(self) -> bool:
        try:
            client = self.client
        except docker_ops.RUNTIME_ERRORS as e:
            self.events.log_event("ERROR", f"Cannot connect to docker: {e}")
            return False
        if not docker_ops.docker_available(client):
            self.events.log_event("ERROR", "Docker is not responding to ping")
            return False
        return True

    def run(self, paths: Iterable[str | Path]) -> int:
        """Load, start, serve commands until shutdown; return the exit code."""
        configs = self.load_configs(paths)
        uids = self.register(configs)
        if uids and not self._runtime_reachable():
            err = SplatError("Docker is not available")
            for uid in uids:
                self._fail(uid, err)
                self.startup_errors[uid] = err
            self.shutdown()
            return self.exit_code
        self.start_all(uids)

        if not any(p.status == ProcessStatus.RUNNING for p in self.registry.snapshot()):
            log.error("no app reached running, shutting down")
            self.shutdown()
        else:
            self.run_control_loop()
        return self.exit_code
