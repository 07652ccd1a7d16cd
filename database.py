import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from web3 import Web3

from errors import StoreError
from models import (MonitoredPool, MonitoredWallet, PoolState, PositionSnapshot, PriceAlert, Token,
                    TrackedMessage, utcnow)


def _ts(value: datetime) -> str:
    return value.isoformat()


def _dt(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Database:
    """
    sqlite3 store for everything the bot must rebuild after a restart.

    Every sqlite3 failure leaves this class as StoreError.
    """

    def __init__(self, db_path: str = "bot_data.db"):
        self.db_path = db_path
        self.local = threading.local()
        self.init_db()

    def get_connection(self):
        """Get thread-local database connection"""
        if not hasattr(self.local, 'conn'):
            self.local.conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
            self.local.conn.execute("PRAGMA journal_mode=WAL")
        return self.local.conn

    @contextmanager
    def _cursor(self):
        try:
            conn = self.get_connection()
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {self.db_path}: {e}") from e
        try:
            yield conn.cursor()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e

    def close(self):
        if hasattr(self.local, 'conn'):
            self.local.conn.close()
            del self.local.conn

    def init_db(self):
        """Initialize database tables"""
        with self._cursor() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id INTEGER NOT NULL,
                    message_id INTEGER NOT NULL,
                    checksum INTEGER,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pools (
                    id TEXT PRIMARY KEY,
                    chain_id INTEGER NOT NULL,
                    address TEXT NOT NULL,
                    token0 TEXT NOT NULL,
                    token1 TEXT NOT NULL,
                    fee INTEGER NOT NULL,
                    sqrt_price_x96 TEXT,
                    tick INTEGER,
                    liquidity TEXT,
                    monitoring_enabled BOOLEAN DEFAULT 1,
                    updated_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pool_id TEXT NOT NULL,
                    chat_id INTEGER NOT NULL,
                    target_price TEXT NOT NULL,
                    triggered BOOLEAN DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    id TEXT PRIMARY KEY,
                    token_id INTEGER NOT NULL,
                    owner TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tokens (
                    id TEXT PRIMARY KEY,
                    chain_id INTEGER NOT NULL,
                    address TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    decimals INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wallets (
                    address TEXT NOT NULL,
                    chat_id INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (address, chat_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wallet_snapshots (
                    address TEXT PRIMARY KEY,
                    snapshot TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    # Tracked messages

    @staticmethod
    def _message_from_row(row) -> TrackedMessage:
        return TrackedMessage(
            id=row[0],
            chat_id=row[1],
            message_id=row[2],
            checksum=row[3],
            metadata=json.loads(row[4]) if row[4] else {},
            created_at=_dt(row[5]),
            updated_at=_dt(row[6]),
        )

    def get_message(self, message_key: str) -> Optional[TrackedMessage]:
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT id, chat_id, message_id, checksum, metadata, created_at, updated_at
                FROM messages WHERE id = ?
            """, (message_key,))
            row = cursor.fetchone()
        return self._message_from_row(row) if row else None

    def save_message(self, message: TrackedMessage):
        """Insert or replace a tracked message record"""
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT OR REPLACE INTO messages (id, chat_id, message_id, checksum, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (message.id, message.chat_id, message.message_id, message.checksum,
                  json.dumps(message.metadata, default=str), _ts(message.created_at), _ts(message.updated_at)))

    def delete_message(self, message_key: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM messages WHERE id = ?", (message_key,))
            return cursor.rowcount > 0

    def find_messages(self, prefix: str) -> List[TrackedMessage]:
        """All tracked messages whose id starts with prefix, oldest first"""
        escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT id, chat_id, message_id, checksum, metadata, created_at, updated_at
                FROM messages WHERE id LIKE ? ESCAPE '\\'
                ORDER BY created_at
            """, (escaped + '%',))
            rows = cursor.fetchall()
        return [self._message_from_row(row) for row in rows]

    # Pools

    def save_pool(self, pool: MonitoredPool):
        state = pool.state
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT OR REPLACE INTO pools
                    (id, chain_id, address, token0, token1, fee, sqrt_price_x96, tick, liquidity,
                     monitoring_enabled, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (pool.id, pool.chain_id, pool.address,
                  json.dumps(pool.token0.to_dict()), json.dumps(pool.token1.to_dict()), pool.fee,
                  str(state.sqrt_price_x96) if state else None,
                  state.tick if state else None,
                  str(state.liquidity) if state else None,
                  1 if pool.monitoring_enabled else 0,
                  _ts(state.updated_at) if state else None))

    def get_pool(self, pool_key: str) -> Optional[MonitoredPool]:
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT chain_id, address, token0, token1, fee, sqrt_price_x96, tick, liquidity,
                       monitoring_enabled, updated_at
                FROM pools WHERE id = ?
            """, (pool_key,))
            row = cursor.fetchone()
        if not row:
            return None

        state = None
        if row[5] is not None:
            state = PoolState(int(row[5]), row[6], int(row[7]), _dt(row[9]) if row[9] else utcnow())
        return MonitoredPool(
            chain_id=row[0],
            address=row[1],
            token0=Token.from_dict(json.loads(row[2])),
            token1=Token.from_dict(json.loads(row[3])),
            fee=row[4],
            state=state,
            monitoring_enabled=bool(row[8]),
        )

    def delete_pool(self, pool_key: str):
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM pools WHERE id = ?", (pool_key,))
            cursor.execute("DELETE FROM alerts WHERE pool_id = ?", (pool_key,))

    # Price alerts

    def add_alert(self, pool_key: str, alert: PriceAlert) -> int:
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO alerts (pool_id, chat_id, target_price, triggered, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (pool_key, alert.chat_id, str(alert.target_price), 1 if alert.triggered else 0,
                  _ts(alert.created_at)))
            return cursor.lastrowid

    def get_alerts(self, pool_key: str) -> List[PriceAlert]:
        """Untriggered alerts of a pool"""
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT id, chat_id, target_price, created_at
                FROM alerts WHERE pool_id = ? AND triggered = 0
                ORDER BY id
            """, (pool_key,))
            rows = cursor.fetchall()
        return [PriceAlert(Decimal(row[2]), row[1], False, _dt(row[3]), row[0]) for row in rows]

    def mark_alert_triggered(self, alert_id: int):
        with self._cursor() as cursor:
            cursor.execute("UPDATE alerts SET triggered = 1 WHERE id = ?", (alert_id,))

    def delete_alerts(self, pool_key: str, chat_id: Optional[int] = None):
        with self._cursor() as cursor:
            if chat_id is None:
                cursor.execute("DELETE FROM alerts WHERE pool_id = ?", (pool_key,))
            else:
                cursor.execute("DELETE FROM alerts WHERE pool_id = ? AND chat_id = ?", (pool_key, chat_id))

    # Positions

    def save_position(self, position_key: str, token_id: int, owner: str, created_at: datetime):
        """Remember a position's first sighting; created_at of an existing row is kept"""
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT OR IGNORE INTO positions (id, token_id, owner, created_at)
                VALUES (?, ?, ?, ?)
            """, (position_key, token_id, owner, _ts(created_at)))

    def get_position(self, position_key: str) -> Optional[Dict]:
        with self._cursor() as cursor:
            cursor.execute("SELECT token_id, owner, created_at FROM positions WHERE id = ?", (position_key,))
            row = cursor.fetchone()
        if not row:
            return None
        return {'token_id': row[0], 'owner': row[1], 'created_at': _dt(row[2])}

    def delete_position(self, position_key: str):
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM positions WHERE id = ?", (position_key,))

    # Tokens

    def save_token(self, token: Token):
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT OR REPLACE INTO tokens (id, chain_id, address, symbol, decimals)
                VALUES (?, ?, ?, ?, ?)
            """, (token.id, token.chain_id, token.address, token.symbol, token.decimals))

    def get_tokens(self) -> List[Token]:
        with self._cursor() as cursor:
            cursor.execute("SELECT chain_id, address, symbol, decimals FROM tokens")
            rows = cursor.fetchall()
        return [Token(*row) for row in rows]

    # Wallets

    def add_wallet(self, address: str, chat_id: int) -> bool:
        """Add a wallet for a chat; False when the chat already monitors it"""
        address = Web3.to_checksum_address(address)
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT OR IGNORE INTO wallets (address, chat_id, created_at) VALUES (?, ?, ?)
            """, (address, chat_id, _ts(utcnow())))
            return cursor.rowcount > 0

    def remove_wallet(self, address: str, chat_id: int) -> bool:
        address = Web3.to_checksum_address(address)
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM wallets WHERE address = ? AND chat_id = ?", (address, chat_id))
            deleted = cursor.rowcount > 0
            cursor.execute("SELECT COUNT(*) FROM wallets WHERE address = ?", (address,))
            if cursor.fetchone()[0] == 0:
                cursor.execute("DELETE FROM wallet_snapshots WHERE address = ?", (address,))
        return deleted

    def get_chat_wallets(self, chat_id: int) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute("SELECT address FROM wallets WHERE chat_id = ? ORDER BY created_at", (chat_id,))
            return [row[0] for row in cursor.fetchall()]

    def get_wallets(self) -> List[MonitoredWallet]:
        """Every monitored wallet with its chats and last snapshot"""
        with self._cursor() as cursor:
            cursor.execute("SELECT address, chat_id FROM wallets ORDER BY created_at")
            rows = cursor.fetchall()
            cursor.execute("SELECT address, snapshot FROM wallet_snapshots")
            snapshots = {row[0]: row[1] for row in cursor.fetchall()}

        chats: Dict[str, List[int]] = {}
        for address, chat_id in rows:
            chats.setdefault(address, []).append(chat_id)
        return [
            MonitoredWallet(address, frozenset(chat_ids), self._decode_snapshot(snapshots.get(address)))
            for address, chat_ids in chats.items()
        ]

    @staticmethod
    def _decode_snapshot(raw: Optional[str]) -> Tuple[PositionSnapshot, ...]:
        if not raw:
            return ()
        return tuple(PositionSnapshot.from_dict(item) for item in json.loads(raw))

    def save_wallet_snapshot(self, address: str, snapshot: Tuple[PositionSnapshot, ...]):
        address = Web3.to_checksum_address(address)
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT OR REPLACE INTO wallet_snapshots (address, snapshot, updated_at) VALUES (?, ?, ?)
            """, (address, json.dumps([s.to_dict() for s in snapshot]), _ts(utcnow())))
