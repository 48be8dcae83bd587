"""Connection options for the cluster management API.

ConnectionOptions is the single configuration object passed to the API client,
the service locator and both orchestrators. It is a plain frozen dataclass (not
env-coupled) so tests can construct it without touching os.environ; only the
CLI calls ``from_env()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from .errors import ConfigurationError

_FALSE_VALUES = frozenset({"", "0", "f", "false", "off", "no"})

_DEFAULT_PORT = 8091
_DEFAULT_TLS_PORT = 18091


def parse_bool(raw: str | None) -> bool:
    """Interpret an environment flag; unset and the usual "off" words are False."""
    if raw is None:
        return False
    return raw.strip().lower() not in _FALSE_VALUES


@dataclass(frozen=True, slots=True)
class ConnectionOptions:
    """Where and how to reach one HTTP endpoint of the cluster."""

    host: str = "127.0.0.1"
    port: int = _DEFAULT_PORT

    strict_encryption: bool = False
    """Use TLS. Certificates are NOT verified (provisioning/test clusters)."""

    username: str = "Administrator"
    password: str = ""
    """Never log this."""

    verbose: bool = False
    """Log status code and decoded payload of every response."""

    bucket: str | None = None

    @property
    def scheme(self) -> str:
        return "https" if self.strict_encryption else "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def display_url(self, path: str) -> str:
        """URL for log output: carries the username, never the password."""
        return f"{self.scheme}://{self.username}@{self.host}:{self.port}{path}"

    def with_address(self, host: str, port: int) -> ConnectionOptions:
        """Return a copy targeting another service endpoint."""
        return replace(self, host=host, port=int(port))

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.host:
            errors.append("host is required")
        if not 0 < self.port < 65536:
            errors.append(f"port must be in 1..65535, got {self.port}")
        if not self.username:
            errors.append("username is required")
        if self.bucket is not None and not self.bucket.strip():
            errors.append("bucket must not be blank when set")
        return errors

    def require_valid(self) -> ConnectionOptions:
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        return self

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ConnectionOptions:
        """Build options from ``CB_*`` environment variables.

        Environment variables:
          - ``CB_HOST``: management host (default ``127.0.0.1``).
          - ``CB_PORT``: management port (default 8091, or 18091 with TLS).
          - ``CB_STRICT_ENCRYPTION``: connect over TLS.
          - ``CB_USERNAME`` / ``CB_PASSWORD``: basic-auth credentials.
          - ``CB_VERBOSE``: log decoded responses.
          - ``CB_BUCKET``: bucket to provision (optional).
        """
        if env is None:
            env = dict(os.environ)

        strict_encryption = parse_bool(env.get("CB_STRICT_ENCRYPTION"))
        port_raw = env.get("CB_PORT", "").strip()
        if port_raw:
            try:
                port = int(port_raw)
            except ValueError:
                raise ConfigurationError(
                    f"CB_PORT must be an integer, got {port_raw!r}"
                ) from None
        else:
            port = _DEFAULT_TLS_PORT if strict_encryption else _DEFAULT_PORT

        bucket = env.get("CB_BUCKET", "").strip() or None

        return cls(
            host=env.get("CB_HOST", "127.0.0.1").strip(),
            port=port,
            strict_encryption=strict_encryption,
            username=env.get("CB_USERNAME", "Administrator"),
            password=env.get("CB_PASSWORD", "password"),
            verbose=parse_bool(env.get("CB_VERBOSE")),
            bucket=bucket,
        )
