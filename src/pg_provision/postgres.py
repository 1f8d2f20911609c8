"""Connectivity probes confirming PostgreSQL accepts connections."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import psycopg2

from .shell import CommandError, run

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Endpoint:
    host: str = "/var/run/postgresql"
    port: int = 5432
    dbname: str = "postgres"
    user: str = "postgres"
    password: Optional[str] = None
    connect_timeout: int = 5

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.dbname}"


class ProbeError(RuntimeError):
    """Raised when the database service does not accept a connection."""

    def __init__(self, endpoint: Endpoint, message: str) -> None:
        self.endpoint = endpoint
        super().__init__(f"Unable to connect to {endpoint.describe()}: {message}")


class ConnectivityProbe(Protocol):
    def try_connect(self, endpoint: Endpoint) -> None: ...


class PsqlProbe:
    """Runs ``psql`` as the service account, relying on peer authentication."""

    def try_connect(self, endpoint: Endpoint) -> None:
        cmd = [
            "runuser",
            "-u",
            endpoint.user,
            "--",
            "psql",
            "-h",
            endpoint.host,
            "-p",
            str(endpoint.port),
            "-d",
            endpoint.dbname,
            "-Atc",
            "SELECT 1",
        ]
        env = {"PGCONNECT_TIMEOUT": str(endpoint.connect_timeout)}
        try:
            run(cmd, env=env, timeout=endpoint.connect_timeout + 10)
        except CommandError as exc:
            raise ProbeError(endpoint, exc.stderr or str(exc)) from exc
        logger.debug("psql probe succeeded for %s", endpoint.describe())


class Psycopg2Probe:
    """Opens a libpq connection through psycopg2 and runs ``SELECT 1``."""

    def try_connect(self, endpoint: Endpoint) -> None:
        try:
            conn = psycopg2.connect(
                dbname=endpoint.dbname,
                user=endpoint.user,
                password=endpoint.password,
                host=endpoint.host,
                port=endpoint.port,
                connect_timeout=endpoint.connect_timeout,
            )
        except psycopg2.Error as exc:
            raise ProbeError(endpoint, str(exc).strip()) from exc
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
        except psycopg2.Error as exc:
            raise ProbeError(endpoint, str(exc).strip()) from exc
        finally:
            conn.close()
        logger.debug("psycopg2 probe succeeded for %s", endpoint.describe())
