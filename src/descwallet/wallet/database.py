"""
Ledger persistence.

MemoryDatabase keeps nothing beyond the process; SqlDatabase stores the
ledger with SQLAlchemy Core in a SQLite file. Sled-style configurations map
their tree name to a table prefix so several trees can share one file.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from loguru import logger
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from descwallet.config import DatabaseConfig, MemoryConfig, SledConfig, SqliteConfig
from descwallet.models import (
    BlockTime,
    KeychainKind,
    LocalUtxo,
    OutPoint,
    TransactionRecord,
    TxOut,
)


class Database(ABC):
    """Storage collaborator for the ledger and the derivation cursors."""

    @abstractmethod
    def load_utxos(self) -> list[LocalUtxo]:
        """All stored wallet outputs, spent or not"""

    @abstractmethod
    def load_transactions(self) -> list[TransactionRecord]:
        """All stored wallet transactions"""

    @abstractmethod
    def load_last_index(self, keychain: KeychainKind) -> int | None:
        """Last revealed derivation index for a keychain"""

    @abstractmethod
    def store_last_index(self, keychain: KeychainKind, index: int) -> None:
        """Persist the last revealed derivation index"""

    @abstractmethod
    def write_batch(
        self,
        utxos: Iterable[LocalUtxo] = (),
        deleted_utxos: Iterable[OutPoint] = (),
        transactions: Iterable[TransactionRecord] = (),
        deleted_transactions: Iterable[str] = (),
    ) -> None:
        """Apply a set of ledger changes atomically"""

    def close(self) -> None:
        pass


class MemoryDatabase(Database):
    def __init__(self) -> None:
        self._utxos: dict[OutPoint, LocalUtxo] = {}
        self._transactions: dict[str, TransactionRecord] = {}
        self._indexes: dict[KeychainKind, int] = {}

    def load_utxos(self) -> list[LocalUtxo]:
        return list(self._utxos.values())

    def load_transactions(self) -> list[TransactionRecord]:
        return list(self._transactions.values())

    def load_last_index(self, keychain: KeychainKind) -> int | None:
        return self._indexes.get(keychain)

    def store_last_index(self, keychain: KeychainKind, index: int) -> None:
        self._indexes[keychain] = index

    def write_batch(
        self,
        utxos: Iterable[LocalUtxo] = (),
        deleted_utxos: Iterable[OutPoint] = (),
        transactions: Iterable[TransactionRecord] = (),
        deleted_transactions: Iterable[str] = (),
    ) -> None:
        for utxo in utxos:
            self._utxos[utxo.outpoint] = utxo
        for outpoint in deleted_utxos:
            self._utxos.pop(outpoint, None)
        for record in transactions:
            self._transactions[record.txid] = record
        for txid in deleted_transactions:
            self._transactions.pop(txid, None)


class SqlDatabase(Database):
    def __init__(self, url: str, table_prefix: str = ""):
        self.engine = create_engine(url)
        self.metadata = MetaData()

        self.utxos = Table(
            f"{table_prefix}utxos",
            self.metadata,
            Column("txid", String(64), primary_key=True),
            Column("vout", Integer, primary_key=True),
            Column("value", BigInteger, nullable=False),
            Column("script", LargeBinary, nullable=False),
            Column("keychain", String(16), nullable=False),
            Column("is_spent", Boolean, nullable=False, default=False),
        )
        self.transactions = Table(
            f"{table_prefix}transactions",
            self.metadata,
            Column("txid", String(64), primary_key=True),
            Column("raw", LargeBinary, nullable=False),
            Column("height", Integer, nullable=True),
            Column("timestamp", BigInteger, nullable=True),
        )
        self.indexes = Table(
            f"{table_prefix}indexes",
            self.metadata,
            Column("keychain", String(16), primary_key=True),
            Column("last_index", Integer, nullable=False),
        )
        self.metadata.create_all(self.engine)
        logger.debug(f"Opened wallet database {url} (prefix={table_prefix!r})")

    def load_utxos(self) -> list[LocalUtxo]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.utxos)).all()
        return [
            LocalUtxo(
                outpoint=OutPoint(row.txid, row.vout),
                txout=TxOut(row.value, bytes(row.script)),
                keychain=KeychainKind(row.keychain),
                is_spent=bool(row.is_spent),
            )
            for row in rows
        ]

    def load_transactions(self) -> list[TransactionRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.transactions)).all()
        records = []
        for row in rows:
            confirmation = None
            if row.height is not None:
                confirmation = BlockTime(height=row.height, timestamp=row.timestamp or 0)
            records.append(TransactionRecord(row.txid, bytes(row.raw), confirmation))
        return records

    def load_last_index(self, keychain: KeychainKind) -> int | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.indexes.c.last_index).where(self.indexes.c.keychain == keychain.value)
            ).first()
        return None if row is None else row.last_index

    def store_last_index(self, keychain: KeychainKind, index: int) -> None:
        stmt = sqlite_insert(self.indexes).values(keychain=keychain.value, last_index=index)
        stmt = stmt.on_conflict_do_update(
            index_elements=["keychain"], set_={"last_index": stmt.excluded.last_index}
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def write_batch(
        self,
        utxos: Iterable[LocalUtxo] = (),
        deleted_utxos: Iterable[OutPoint] = (),
        transactions: Iterable[TransactionRecord] = (),
        deleted_transactions: Iterable[str] = (),
    ) -> None:
        with self.engine.begin() as conn:
            for utxo in utxos:
                stmt = sqlite_insert(self.utxos).values(
                    txid=utxo.outpoint.txid,
                    vout=utxo.outpoint.vout,
                    value=utxo.txout.value,
                    script=utxo.txout.script_pubkey,
                    keychain=utxo.keychain.value,
                    is_spent=utxo.is_spent,
                )
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["txid", "vout"],
                        set_={"is_spent": stmt.excluded.is_spent, "value": stmt.excluded.value},
                    )
                )
            for outpoint in deleted_utxos:
                conn.execute(
                    delete(self.utxos).where(
                        (self.utxos.c.txid == outpoint.txid) & (self.utxos.c.vout == outpoint.vout)
                    )
                )
            for record in transactions:
                confirmation = record.confirmation_time
                stmt = sqlite_insert(self.transactions).values(
                    txid=record.txid,
                    raw=record.raw,
                    height=confirmation.height if confirmation else None,
                    timestamp=confirmation.timestamp if confirmation else None,
                )
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["txid"],
                        set_={
                            "height": stmt.excluded.height,
                            "timestamp": stmt.excluded.timestamp,
                        },
                    )
                )
            for txid in deleted_transactions:
                conn.execute(delete(self.transactions).where(self.transactions.c.txid == txid))

    def close(self) -> None:
        self.engine.dispose()


def open_database(config: DatabaseConfig) -> Database:
    if isinstance(config, MemoryConfig):
        return MemoryDatabase()
    if isinstance(config, SqliteConfig):
        Path(config.path).parent.mkdir(parents=True, exist_ok=True)
        return SqlDatabase(f"sqlite:///{config.path}")
    if isinstance(config, SledConfig):
        directory = Path(config.path)
        directory.mkdir(parents=True, exist_ok=True)
        return SqlDatabase(f"sqlite:///{directory / 'wallet.sqlite'}", f"{config.tree_name}_")
    raise TypeError(f"Unknown database config: {type(config).__name__}")
