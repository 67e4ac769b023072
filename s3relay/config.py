# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the relay.

Configuration is loaded once at startup from a YAML file.  The default
location follows the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/s3relay/s3relay.yaml``
    (typically ``~/.config/s3relay/s3relay.yaml``)

``!env`` tags resolve values from environment variables.  When no config
file exists, the same settings are read straight from the environment
(``AWS_S3_ENDPOINT``, ``AWS_ACCESS_KEY_ID``, ``AWS_SECRET_ACCESS_KEY``).

The upstream region is derived from the endpoint hostname, which must look
like ``s3.<region>.<provider-domain>``.  An endpoint that does not match is
a fatal configuration error.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, overload

import yaml
from dotenv import load_dotenv
from platformdirs import user_config_path

from s3relay.headers import DEFAULT_DENY_HEADERS, DEFAULT_DENY_PREFIXES
from s3relay.logging import register_secret


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "s3relay"

DEFAULT_PROVIDER_DOMAIN = "wasabisys.com"

#: Largest request body the relay buffers, in bytes.
DEFAULT_MAX_BODY_SIZE = 128 * 1024 * 1024


def get_config_path() -> Path:
    """Return the default config file path.

    Uses XDG: ``$XDG_CONFIG_HOME/s3relay/s3relay.yaml`` (typically
    ``~/.config/s3relay/s3relay.yaml``).

    Returns:
        Path to the config file.
    """
    return user_config_path(_APP_NAME) / "s3relay.yaml"


def get_dotenv_path() -> Path:
    """Return the default ``.env`` file path inside the XDG config directory.

    Returns:
        Path to the ``.env`` file.
    """
    return user_config_path(_APP_NAME) / ".env"


def _load_dotenv() -> None:
    """Load ``.env`` from the config directory, then the working directory.

    Variables already in the environment are never overridden, so the
    process environment wins over both files and the first file wins over
    the second.
    """
    for path in (get_dotenv_path(), Path.cwd() / ".env"):
        if path.is_file():
            load_dotenv(path)
            logger.debug("Loaded .env from %s", path)



class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# Region derivation
# ---------------------------------------------------------------------------


def endpoint_pattern(provider_domain: str) -> re.Pattern[str]:
    """Compile the endpoint pattern for a storage provider domain."""
    return re.compile(
        r"^s3\.(?P<region>[a-zA-Z0-9-]+)\." + re.escape(provider_domain) + "$"
    )


def derive_region(
    endpoint: str, provider_domain: str = DEFAULT_PROVIDER_DOMAIN
) -> str:
    """Extract the region from an ``s3.<region>.<domain>`` hostname.

    Args:
        endpoint: Upstream endpoint hostname.
        provider_domain: Storage provider domain, e.g. ``wasabisys.com``.

    Returns:
        The region component.

    Raises:
        ConfigError: If the endpoint does not match the pattern.
    """
    m = endpoint_pattern(provider_domain).match(endpoint)
    if not m:
        raise ConfigError(
            f"Cannot derive region from endpoint '{endpoint}': expected "
            f"s3.<region>.{provider_domain}"
        )
    return m.group("region")


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


_MISSING = object()


@overload
def _resolve[T](value: object, coerce: type[T], *, default: T) -> T: ...


@overload
def _resolve[T](
    value: object,
    coerce: type[T],
    *,
    required: str,
) -> T: ...


@overload
def _resolve[T](value: object, coerce: type[T]) -> T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int`` or ``float``).
        default: Default when value is absent.  Not allowed together
            with *required*.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent or empty.

    Returns:
        The resolved, coerced value, or None when optional and absent.
        Empty strings count as absent.
    """
    # Values PyYAML already parsed to the right type skip string
    # round-tripping.
    if not isinstance(value, _EnvVar) and isinstance(value, coerce):
        if value != "":
            return value

    resolved = _raw_resolve(value)

    if not resolved:
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    try:
        return coerce(resolved)
    except ValueError as e:
        raise ConfigError(f"Invalid value {resolved!r}: {e}") from e


def _resolve_string_list(value: object, *, name: str) -> tuple[str, ...]:
    """Resolve a list of strings, handling ``!env`` for each element.

    Raises:
        ConfigError: If value is not a list.
    """
    if not isinstance(value, list):
        raise ConfigError(
            f"Config '{name}' must be a list, got {type(value).__name__}"
        )
    result: list[str] = []
    for item in value:
        resolved = _raw_resolve(item)
        if resolved:
            result.append(resolved.lower())
    return tuple(result)


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return section


# ---------------------------------------------------------------------------
# Configuration values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningIdentity:
    """The single credential the relay accepts and signs with.

    Attributes:
        access_key_id: Access key id clients must sign with.
        secret_access_key: Secret used to verify and re-sign.
        region: Region of the credential scope.
        service: Service of the credential scope.
    """

    access_key_id: str
    secret_access_key: str = field(repr=False)
    region: str
    service: str = "s3"

    def __post_init__(self) -> None:
        """Validate the identity.

        Raises:
            ConfigError: If a field is empty.
        """
        if not self.access_key_id:
            raise ConfigError("Access key id must not be empty")
        if not self.secret_access_key:
            raise ConfigError("Secret access key must not be empty")
        if not self.region or not self.service:
            raise ConfigError("Region and service must not be empty")


@dataclass(frozen=True)
class ProxyConfig:
    """Complete relay configuration.

    Attributes:
        endpoint: Upstream endpoint hostname (``s3.<region>.<domain>``).
        identity: Credential used for verification and re-signing.
        scheme: Upstream URL scheme.
        timeout: Upstream request timeout in seconds.
        host: Address the relay listens on.
        port: Port the relay listens on.
        deny_headers: Inbound headers never forwarded or signed.
        deny_prefixes: Inbound header name prefixes never forwarded.
        max_body_size: Largest accepted request body in bytes.  Bodies
            are buffered whole, so larger requests get 413.
    """

    endpoint: str
    identity: SigningIdentity
    scheme: str = "https"
    timeout: float = 60.0
    host: str = "127.0.0.1"
    port: int = 8080
    deny_headers: tuple[str, ...] = DEFAULT_DENY_HEADERS
    deny_prefixes: tuple[str, ...] = DEFAULT_DENY_PREFIXES
    max_body_size: int = DEFAULT_MAX_BODY_SIZE

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ConfigError: If configuration is invalid.
        """
        if self.scheme not in ("http", "https"):
            raise ConfigError(f"Unsupported upstream scheme: {self.scheme}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Port out of range: {self.port}")
        if self.timeout <= 0:
            raise ConfigError(f"Timeout must be positive: {self.timeout}")
        if self.max_body_size <= 0:
            raise ConfigError(
                f"Max body size must be positive: {self.max_body_size}"
            )

    @property
    def upstream_base_url(self) -> str:
        return f"{self.scheme}://{self.endpoint}"

    @classmethod
    def build(
        cls,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        provider_domain: str = DEFAULT_PROVIDER_DOMAIN,
        **kwargs: Any,
    ) -> "ProxyConfig":
        """Build a config, deriving the region from the endpoint.

        The secret is registered for redaction from log output.

        Raises:
            ConfigError: If the endpoint does not match the provider
                pattern or a value is invalid.
        """
        region = derive_region(endpoint, provider_domain)
        register_secret(secret_access_key)
        identity = SigningIdentity(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            region=region,
        )
        config = cls(endpoint=endpoint, identity=identity, **kwargs)
        logger.info(
            "Relay config loaded: upstream=%s region=%s key=%s",
            endpoint,
            region,
            access_key_id,
        )
        return config

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "ProxyConfig":
        """Load configuration from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  A ``.env`` file is loaded first if
        present.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/s3relay/s3relay.yaml`` (XDG).

        Returns:
            ProxyConfig instance.

        Raises:
            ConfigError: If the file is missing or required values are absent.
        """
        _load_dotenv()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            try:
                raw = yaml.load(f, Loader=_make_loader())
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        return cls._from_raw(raw)

    @classmethod
    def _from_raw(cls, raw: dict) -> "ProxyConfig":
        """Build config from parsed (but unresolved) YAML dict."""
        upstream = _section(raw, "upstream")
        credentials = _section(raw, "credentials")
        server = _section(raw, "server")
        header_filter = _section(raw, "filter")

        kwargs: dict[str, Any] = {
            "scheme": _resolve(upstream.get("scheme"), str, default="https"),
            "timeout": _resolve(upstream.get("timeout"), float, default=60.0),
            "host": _resolve(server.get("host"), str, default="127.0.0.1"),
            "port": _resolve(server.get("port"), int, default=8080),
            "max_body_size": _resolve(
                server.get("max_body_size"), int, default=DEFAULT_MAX_BODY_SIZE
            ),
        }
        if "deny_headers" in header_filter:
            kwargs["deny_headers"] = _resolve_string_list(
                header_filter["deny_headers"], name="filter.deny_headers"
            )
        if "deny_prefixes" in header_filter:
            kwargs["deny_prefixes"] = _resolve_string_list(
                header_filter["deny_prefixes"], name="filter.deny_prefixes"
            )

        return cls.build(
            endpoint=_resolve(
                upstream.get("endpoint"), str, required="upstream.endpoint"
            ),
            access_key_id=_resolve(
                credentials.get("access_key_id"),
                str,
                required="credentials.access_key_id",
            ),
            secret_access_key=_resolve(
                credentials.get("secret_access_key"),
                str,
                required="credentials.secret_access_key",
            ),
            provider_domain=_resolve(
                upstream.get("provider_domain"),
                str,
                default=DEFAULT_PROVIDER_DOMAIN,
            ),
            **kwargs,
        )

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        """Load configuration from environment variables.

        Reads ``AWS_S3_ENDPOINT``, ``AWS_ACCESS_KEY_ID`` and
        ``AWS_SECRET_ACCESS_KEY``, plus the optional ``S3RELAY_HOST``,
        ``S3RELAY_PORT``, ``S3RELAY_MAX_BODY_SIZE`` and
        ``S3RELAY_PROVIDER_DOMAIN``.

        Raises:
            ConfigError: If a required variable is unset.
        """
        _load_dotenv()
        return cls._from_raw(
            {
                "upstream": {
                    "endpoint": _EnvVar("AWS_S3_ENDPOINT"),
                    "provider_domain": _EnvVar("S3RELAY_PROVIDER_DOMAIN"),
                },
                "credentials": {
                    "access_key_id": _EnvVar("AWS_ACCESS_KEY_ID"),
                    "secret_access_key": _EnvVar("AWS_SECRET_ACCESS_KEY"),
                },
                "server": {
                    "host": _EnvVar("S3RELAY_HOST"),
                    "port": _EnvVar("S3RELAY_PORT"),
                    "max_body_size": _EnvVar("S3RELAY_MAX_BODY_SIZE"),
                },
            }
        )

    @classmethod
    def load(cls, config_path: Path | None = None) -> "ProxyConfig":
        """Load from an explicit file, the default file, or the environment.

        Raises:
            ConfigError: If configuration is missing or invalid.
        """
        if config_path is not None:
            return cls.from_yaml(config_path)
        default_path = get_config_path()
        if default_path.exists():
            return cls.from_yaml(default_path)
        logger.info(
            "No config file at %s, reading environment", default_path
        )
        return cls.from_env()
