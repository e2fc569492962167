from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from accumbot.persistence.interfaces import (
    CandlesRepoProtocol,
    CyclesRepoProtocol,
    OrdersRepoProtocol,
    SettingsRepoProtocol,
    SnapshotsRepoProtocol,
)
from accumbot.persistence.sqlite.candles_repo import SqliteCandlesRepo
from accumbot.persistence.sqlite.cycles_repo import SqliteCyclesRepo
from accumbot.persistence.sqlite.orders_repo import SqliteOrdersRepo
from accumbot.persistence.sqlite.settings_repo import SqliteSettingsRepo, SqliteSnapshotsRepo
from accumbot.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_schema

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One SQLite transaction: commit on clean exit, rollback on exception."""

    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.orders: OrdersRepoProtocol
        self.cycles: CyclesRepoProtocol
        self.candles: CandlesRepoProtocol
        self.settings: SettingsRepoProtocol
        self.snapshots: SnapshotsRepoProtocol

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        ensure_schema(conn)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.orders = SqliteOrdersRepo(conn, read_only=self.read_only)
        self.cycles = SqliteCyclesRepo(conn, read_only=self.read_only)
        self.candles = SqliteCandlesRepo(conn, read_only=self.read_only)
        self.settings = SqliteSettingsRepo(conn, read_only=self.read_only)
        self.snapshots = SqliteSnapshotsRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                logger.debug(
                    "uow_rollback", extra={"extra": {"error_type": exc_type.__name__}}
                )
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)
