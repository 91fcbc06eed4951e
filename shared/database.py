"""
Relational storage for orders, inventory and settings.

This module owns the table definitions and the engine. The stores in
order_store.py, inventory.py and settings_store.py build their queries on top
of these tables; the delivery coordinator runs several of them inside one
transaction.

Design decisions:
- SQLAlchemy Core tables (no ORM sessions), so every state change is an
  explicit, conditional UPDATE whose rowcount tells us who won a race
- Money as integer micro-units, timestamps as epoch milliseconds
- SQLite by default; every write transaction on SQLite starts with
  BEGIN IMMEDIATE so concurrent writers serialize instead of deadlocking
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger("database")

metadata = sa.MetaData()

products = sa.Table(
    "products",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("title", sa.String(200), nullable=False),
    sa.Column("price_micros", sa.BigInteger, nullable=False),
    sa.Column("available_count", sa.Integer, nullable=False, default=0),
    sa.Column("created_at_ms", sa.BigInteger, nullable=False),
    sa.CheckConstraint("available_count >= 0", name="ck_products_available_count"),
)

# One row per code; a code is handed out by setting order_id.
card_codes = sa.Table(
    "card_codes",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=False),
    sa.Column("value", sa.Text, nullable=False),
    sa.Column("order_id", sa.String(64), nullable=True, unique=True),
    sa.Index("ix_card_codes_product_order", "product_id", "order_id"),
)

orders = sa.Table(
    "orders",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("kind", sa.String(20), nullable=False),
    sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=True),
    sa.Column("session_id", sa.String(128), nullable=True, index=True),
    sa.Column("amount_micros", sa.BigInteger, nullable=False),
    sa.Column("wallet_address", sa.String(128), nullable=False, default=""),
    sa.Column("payment_url", sa.Text, nullable=False, default=""),
    sa.Column("status", sa.String(20), nullable=False, index=True),
    sa.Column("created_at_ms", sa.BigInteger, nullable=False),
    sa.Column("payment_tx", sa.String(128), nullable=True),
    sa.Column("delivered_code", sa.Text, nullable=True),
    sa.Column("expires_at_ms", sa.BigInteger, nullable=True),
    sa.Column("subscription_json", sa.Text, nullable=True),
)

settings = sa.Table(
    "settings",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("server_chan_key", sa.String(200), nullable=False, default=""),
    sa.Column("email_host", sa.String(200), nullable=False, default=""),
    sa.Column("email_port", sa.Integer, nullable=False, default=465),
    sa.Column("email_user", sa.String(200), nullable=False, default=""),
    sa.Column("email_pass", sa.String(200), nullable=False, default=""),
    sa.Column("email_to", sa.String(200), nullable=False, default=""),
    sa.Column("notify_on_create", sa.Boolean, nullable=False, default=False),
    sa.Column("notify_on_paid", sa.Boolean, nullable=False, default=False),
)


def _install_sqlite_events(engine: Engine) -> None:
    """Take over transaction control from pysqlite and begin IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, conn_record):  # type: ignore[no-redef]
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-redef]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    Thin wrapper around a SQLAlchemy engine.

    Example:
        db = Database("sqlite:///cardshop.db")
        db.create_schema()
        with db.begin() as conn:
            conn.execute(orders.update()...)
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine: Engine = sa.create_engine(url, echo=echo, connect_args=connect_args)
        if url.startswith("sqlite"):
            _install_sqlite_events(self.engine)
        logger.info(f"Database engine created for {url.split('@')[-1]}")

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Open a transaction that commits on success and rolls back on error."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Open a connection for reads."""
        with self.engine.connect() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()


_default_db: Optional[Database] = None


def get_database() -> Database:
    """Get the default database singleton, creating the schema on first use."""
    global _default_db
    if _default_db is None:
        from shared.config import get_config

        _default_db = Database(get_config().database_url)
        _default_db.create_schema()
    return _default_db


def reset_database(db: Optional[Database] = None) -> Optional[Database]:
    """Replace the default database (useful for testing)."""
    global _default_db
    if _default_db is not None and _default_db is not db:
        _default_db.dispose()
    _default_db = db
    return _default_db
