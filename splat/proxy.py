from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import tempfile
from pathlib import Path
from threading import RLock

import jinja2

from .errors import InstallError, ReloadError, RenderError


log = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """\
server {
    listen 80;
    server_name {{ external_host }};

    location / {
        proxy_pass {{ internal_url }};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
    }
}
"""

CONFIG_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,200}$")

_env = jinja2.Environment(undefined=jinja2.StrictUndefined, keep_trailing_newline=True, autoescape=False)


def config_filename(app_name: str) -> str:
    return f"splat.{app_name}.conf"


class ProxySynchronizer:
    """Keeps the reverse proxy's config directory in sync with running apps.

    One instance is shared by all startup tasks. install/reload/uninstall/close
    hold the same lock, so a reload never runs ahead of another app's
    half-written install.
    """

    def __init__(
        self,
        config_dir: str,
        reload_cmd: str = "nginx -s reload",
        template: str = DEFAULT_TEMPLATE,
        reload_timeout_s: int = 30,
    ) -> None:
        self.config_dir = Path(config_dir)
        self.reload_cmd = reload_cmd
        self.reload_timeout_s = reload_timeout_s
        self._source = template
        self._template: jinja2.Template | None = None
        self._lock = RLock()
        self._installed: dict[str, Path] = {}

    @classmethod
    def from_template_file(cls, config_dir: str, template_path: str, **kwargs) -> "ProxySynchronizer":
        try:
            text = Path(template_path).read_text(encoding="utf-8")
        except OSError as e:
            raise RenderError(f"Cannot read proxy template {template_path}: {e}") from e
        return cls(config_dir, template=text, **kwargs)

    @property
    def installed(self) -> list[Path]:
        with self._lock:
            return list(self._installed.values())

    def render_config(self, external_host: str, internal_url: str) -> bytes:
        if not external_host or not external_host.strip():
            raise RenderError("external host is required")
        if not internal_url or not internal_url.strip():
            raise RenderError("internal url is required")
        try:
            if self._template is None:
                self._template = _env.from_string(self._source)
            text = self._template.render(external_host=external_host.strip(), internal_url=internal_url.strip())
        except jinja2.TemplateError as e:
            raise RenderError(f"Malformed proxy template: {e}") from e
        return text.encode("utf-8")

    def install(self, app_name: str, data: bytes) -> Path:
        if not CONFIG_NAME_RE.match(app_name):
            raise InstallError(f"Unsafe proxy config name {app_name!r}")
        path = self.config_dir / config_filename(app_name)
        with self._lock:
            try:
                self.config_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(prefix=".splat-", suffix=".tmp", dir=self.config_dir)
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(data)
                        f.flush()
                        os.fsync(f.fileno())
                    os.chmod(tmp, 0o644)
                    os.replace(tmp, path)
                except BaseException:
                    Path(tmp).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise InstallError(f"Failed to write {path}: {e}") from e
            self._installed[app_name] = path
        log.debug("installed proxy config %s in %s", path.name, self.config_dir)
        return path

    def uninstall(self, app_name: str) -> bool:
        with self._lock:
            path = self._installed.pop(app_name, None)
            if path is None:
                return False
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise InstallError(f"Failed to remove {path}: {e}") from e
        log.debug("removed proxy config %s", path.name)
        return True

    def reload(self) -> None:
        with self._lock:
            cmd = shlex.split(self.reload_cmd)
            try:
                p = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.reload_timeout_s,
                    shell=False,
                    check=False,
                )
            except FileNotFoundError as e:
                raise ReloadError(f"Proxy reload command not found: {e}") from e
            except subprocess.TimeoutExpired as e:
                raise ReloadError(f"Proxy reload timed out after {self.reload_timeout_s}s") from e
            if p.returncode != 0:
                out = (p.stderr or p.stdout or "").strip()[:300]
                raise ReloadError(f"Proxy reload exited {p.returncode}: {out}")
        log.debug("reloaded proxy")

    def close(self) -> None:
        """Remove every installed config and reload once more."""
        with self._lock:
            for name, path in list(self._installed.items()):
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    log.error("error cleaning up proxy config %s: %s", path, e)
                    continue
                self._installed.pop(name, None)
            try:
                self.reload()
            except ReloadError as e:
                log.error("final proxy reload failed: %s", e)
