import logging
import os
import sys
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

from dotenv import dotenv_values
from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

logger = logging.getLogger("pg-probe")

DEFAULT_ENV_FILE = ".env"
REQUIRED_VARS = ("user", "password", "host", "port", "dbname")
REDACTED = "PASSWORD_REDACTED"


class ProbeError(RuntimeError):
    """Base class for every fatal condition of a probe run."""


class ConfigError(ProbeError):
    pass


class PoolCreationError(ProbeError):
    pass


class AcquireError(ProbeError):
    pass


class PingError(ProbeError):
    pass


class QueryError(ProbeError):
    pass


def _env_int(name: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    environ = os.environ if environ is None else environ
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


@dataclass(frozen=True)
class ConnectionParams:
    user: str
    password: str = field(repr=False)
    host: str
    port: str
    dbname: str

    def _location(self) -> str:
        # IPv6 literals must be bracketed inside a URI authority
        host = self.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"{host}:{self.port}/{quote(self.dbname, safe='')}"

    def conninfo(self) -> str:
        # URL-encode user and password to handle special characters
        return f"postgresql://{quote(self.user, safe='')}:{quote(self.password, safe='')}@{self._location()}"

    def redacted(self) -> str:
        return f"postgresql://{quote(self.user, safe='')}:{REDACTED}@{self._location()}"


def load_env_file(path: str | os.PathLike = DEFAULT_ENV_FILE) -> dict[str, str]:
    """
    Read key=value pairs from an optional env file.

    A missing or unreadable file is not an error: the OS environment may
    already carry every required variable, so we only warn and return nothing.
    """
    env_path = Path(path)
    if not env_path.is_file():
        logger.warning(f"Error loading {env_path} file: not found, relying on OS environment")
        return {}
    try:
        values = dotenv_values(env_path)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Error loading {env_path} file: {e}, relying on OS environment")
        return {}
    return {key: value for key, value in values.items() if value is not None}


def load_config(
    env_file: str | os.PathLike = DEFAULT_ENV_FILE,
    environ: Optional[Mapping[str, str]] = None,
) -> ConnectionParams:
    """
    Assemble ConnectionParams from the env file and the OS environment.

    OS-level variables take precedence over file values, even when they are
    set to an empty string. The process environment is left untouched.
    """
    environ = os.environ if environ is None else environ
    merged = {**load_env_file(env_file), **environ}

    values = {name: merged.get(name, "") for name in REQUIRED_VARS}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigError(
            f"Configuration incomplete: one or more database environment variables "
            f"({', '.join(REQUIRED_VARS)}) are not set (missing: {', '.join(missing)}). "
            f"Ensure they are in your .env file or OS environment."
        )
    return ConnectionParams(**values)


def probe(
    params: ConnectionParams,
    *,
    pool_factory: Optional[Callable[..., Any]] = None,
    min_size: int = 1,
    max_size: int = 1,
) -> str:
    """
    Open a pool, lease one connection, ping it and fetch the server version.

    Returns the version string. Every failure is raised as a ProbeError
    subclass; the pool and the leased connection are released exactly once
    whichever step fails.
    """
    pool_factory = pool_factory or ConnectionPool
    target = params.redacted()

    with ExitStack() as stack:
        try:
            pool = pool_factory(
                conninfo=params.conninfo(),
                min_size=min_size,
                max_size=max_size,
                open=False,
                kwargs={"row_factory": dict_row},
            )
            stack.enter_context(pool)
        except Exception as e:
            raise PoolCreationError(
                f"Unable to create connection pool: {e}\n"
                f"Raw connection string used (password redacted): {target}"
            ) from e
        logger.debug(f"Connection pool opened for {target}")

        try:
            conn = stack.enter_context(pool.connection())
        except PsycopgError as e:
            raise AcquireError(f"Unable to acquire a connection from the pool: {e}") from e

        try:
            conn.execute("SELECT 1")
        except PsycopgError as e:
            raise PingError(
                f"Error pinging the database: {e}\n"
                "Make sure your IP is allow-listed in any network restrictions on the "
                "database server, and that your .env file is correctly configured."
            ) from e

        print("Successfully connected to PostgreSQL database using psycopg!")

        try:
            with conn.cursor() as cur:
                cur.execute("SELECT version() AS version")
                row = cur.fetchone()
        except PsycopgError as e:
            raise QueryError(f"Version query failed: {e}") from e
        if row is None:
            raise QueryError("Version query failed: version query returned no rows")

        version = str(row["version"])
        logger.info(f"PostgreSQL version: {version}")
        return version


def _configure_logging() -> None:
    log_level_str = os.environ.get("PROBE_LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    log_file = os.environ.get("PROBE_LOG_FILE")

    # stderr always gets the records; the file is an extra copy
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='a'))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main() -> int:
    _configure_logging()

    try:
        params = load_config(os.environ.get("PROBE_ENV_FILE", DEFAULT_ENV_FILE))
        probe(
            params,
            min_size=_env_int("PROBE_POOL_MIN_SIZE", 1),
            max_size=_env_int("PROBE_POOL_MAX_SIZE", 1),
        )
    except ProbeError as e:
        logger.critical(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
