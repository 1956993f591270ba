"""
Trailing stop registry.
Durable keyed store of per-order trailing stop configuration and state.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.pool import StaticPool

from core.locks import KeyedLocks
from core.logger import get_logger
from core.state import TrailingStopConfig, normalize_order_id

log = get_logger("registry")

Base = declarative_base()


class TrailingStopRegistry(ABC):
    """
    Key -> record store with per-key atomic read-modify-write.

    Callers that read a record and write it back hold ``lock(order_id)`` for
    the whole read-check-write. Different order ids never share a lock.
    """

    def __init__(self) -> None:
        self._locks = KeyedLocks()

    def lock(self, order_id: str) -> AbstractAsyncContextManager[None]:
        """Exclusive critical section for one order id."""
        return self._locks.hold(normalize_order_id(order_id))

    def get(self, order_id: str) -> TrailingStopConfig | None:
        """Configured record for an order, or None."""
        record = self._load(normalize_order_id(order_id))
        if record is None or not record.is_configured:
            return None
        return record

    def put(self, config: TrailingStopConfig) -> None:
        """Replace the whole record for ``config.order_id``."""
        self._store(config)

    def remove(self, order_id: str) -> bool:
        """Retire an order's record. Returns False if there was none."""
        removed = self._delete(normalize_order_id(order_id))
        if removed:
            log.info(f"[Registry] {order_id}: record removed")
        return removed

    def list_ids(self) -> list[str]:
        """All configured order ids, oldest configuration first."""
        return self._ids()

    def __contains__(self, order_id: str) -> bool:
        return self.get(order_id) is not None

    @abstractmethod
    def _load(self, order_id: str) -> TrailingStopConfig | None: ...

    @abstractmethod
    def _store(self, config: TrailingStopConfig) -> None: ...

    @abstractmethod
    def _delete(self, order_id: str) -> bool: ...

    @abstractmethod
    def _ids(self) -> list[str]: ...


class InMemoryRegistry(TrailingStopRegistry):
    """Registry held in a dict of immutable records."""

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, TrailingStopConfig] = {}

    def _load(self, order_id: str) -> TrailingStopConfig | None:
        return self._records.get(order_id)

    def _store(self, config: TrailingStopConfig) -> None:
        self._records[config.order_id] = config

    def _delete(self, order_id: str) -> bool:
        return self._records.pop(order_id, None) is not None

    def _ids(self) -> list[str]:
        ordered = sorted(self._records.values(), key=lambda r: r.configured_at)
        return [r.order_id for r in ordered if r.is_configured]


class TrailingStopRecord(Base):
    """Trailing stop row. Prices are stored as decimal strings (they exceed 64 bits)."""
    __tablename__ = "trailing_stops"

    order_id = Column(String(66), primary_key=True)
    oracle_ref = Column(String(128), nullable=False)
    initial_stop_price = Column(String(80), nullable=False)
    trailing_distance_bps = Column(Integer, nullable=False)
    current_stop_price = Column(String(80), nullable=False)
    configured_at = Column(Integer, nullable=False, index=True)
    last_update_at = Column(Integer, nullable=False)
    update_frequency = Column(Integer, nullable=False)
    written_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    def to_config(self) -> TrailingStopConfig:
        return TrailingStopConfig(
            order_id=self.order_id,
            oracle_ref=self.oracle_ref,
            initial_stop_price=int(self.initial_stop_price),
            trailing_distance_bps=self.trailing_distance_bps,
            current_stop_price=int(self.current_stop_price),
            configured_at=self.configured_at,
            last_update_at=self.last_update_at,
            update_frequency=self.update_frequency,
        )


class SqlRegistry(TrailingStopRegistry):
    """
    SQLite-backed registry.

    Each write is one transaction that replaces the full row, so readers see
    either the old record or the new one.
    """

    def __init__(self, db_path: str = "storage/trailing_stops.db") -> None:
        """
        Initialize registry database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        super().__init__()

        if db_path == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(f"sqlite:///{db_path}", echo=False)

        Base.metadata.create_all(self.engine)

        log.info(f"[Registry] SQLite registry at {db_path}")

    def _load(self, order_id: str) -> TrailingStopConfig | None:
        with Session(self.engine) as session:
            row = session.get(TrailingStopRecord, order_id)
            return row.to_config() if row else None

    def _store(self, config: TrailingStopConfig) -> None:
        with Session(self.engine) as session:
            session.merge(TrailingStopRecord(
                order_id=config.order_id,
                oracle_ref=config.oracle_ref,
                initial_stop_price=str(config.initial_stop_price),
                trailing_distance_bps=config.trailing_distance_bps,
                current_stop_price=str(config.current_stop_price),
                configured_at=config.configured_at,
                last_update_at=config.last_update_at,
                update_frequency=config.update_frequency,
                written_at=datetime.now(timezone.utc),
            ))
            session.commit()

    def _delete(self, order_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(TrailingStopRecord, order_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def _ids(self) -> list[str]:
        with Session(self.engine) as session:
            rows = (
                session.query(TrailingStopRecord.order_id)
                .filter(TrailingStopRecord.configured_at != 0)
                .order_by(TrailingStopRecord.configured_at)
                .all()
            )
            return [row.order_id for row in rows]
