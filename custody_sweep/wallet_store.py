"""
Wallet Store

SQLite persistence for the custody engine.

Tables:
- wallets: Custodial wallets
- wallet_networks: One address per (wallet, network)
- encrypted_mnemonics: Fernet-encrypted seed phrases
- wallet_balance_monitor_config: Single externally edited config row
- sweep_transactions: Sweep ledger (transfers and failures)
"""

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

MONITOR_CONFIG_COLUMNS = (
    'threshold_usd',
    'evm_destination_address',
    'btc_destination_address',
    'tron_destination_address',
    'interval_ms',
)


@dataclass
class NetworkAddress:
    wallet_id: str
    chain_id: str
    address: str


@dataclass
class Wallet:
    """Custodial wallet with its network addresses"""
    id: str
    name: str
    device_id: Optional[str]
    created_at: Optional[str] = None
    networks: List[NetworkAddress] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)

    def __repr__(self):
        return f"Wallet({self.id}: {self.name}, {len(self.networks)} networks)"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WalletStore:
    """
    SQLite wallet repository

    Features:
    - Parametrized get_one/get_all/execute helpers
    - Cascading wallet deletion
    - Unique address per (wallet, network)
    - Monitor configuration row
    - Sweep ledger
    """

    def __init__(self, db_path: str = "custody_sweep.db"):
        """
        Args:
            db_path: Path to SQLite database (":memory:" for tests)
        """
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Wallet store initialized: {self.db_path}")

    def _initialize_db(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self):
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS wallets (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                device_id TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS wallet_networks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet_id TEXT NOT NULL,
                network TEXT NOT NULL,
                address TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id) ON DELETE CASCADE,
                UNIQUE (wallet_id, network)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS encrypted_mnemonics (
                wallet_id TEXT PRIMARY KEY,
                encrypted_mnemonic TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS wallet_balance_monitor_config (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                threshold_usd REAL,
                evm_destination_address TEXT,
                btc_destination_address TEXT,
                tron_destination_address TEXT,
                interval_ms INTEGER,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sweep_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet_id TEXT NOT NULL,
                chain_id TEXT NOT NULL,
                transfer_type TEXT,
                symbol TEXT,
                amount TEXT,
                tx_hash TEXT,
                destination TEXT,
                status TEXT NOT NULL,
                error_kind TEXT,
                error_message TEXT,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id) ON DELETE CASCADE,
                CONSTRAINT valid_type CHECK (transfer_type IS NULL OR transfer_type IN ('native', 'token')),
                CONSTRAINT valid_status CHECK (status IN ('success', 'failed'))
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_networks_wallet ON wallet_networks(wallet_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_sweeps_wallet ON sweep_transactions(wallet_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_sweeps_created ON sweep_transactions(created_at)")

        self.conn.commit()
        logger.debug("Wallet store tables created successfully")

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def get_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict]:
        row = self.conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row else None

    def get_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict]:
        return [dict(row) for row in self.conn.execute(sql, tuple(params)).fetchall()]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and commit; returns affected row count"""
        try:
            cursor = self.conn.execute(sql, tuple(params))
            self.conn.commit()
            return cursor.rowcount
        except sqlite3.Error:
            self.conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def create_wallet(self, wallet_id: str, name: str, device_id: Optional[str] = None) -> Wallet:
        created_at = _now()
        self.execute(
            "INSERT INTO wallets (id, name, device_id, created_at) VALUES (?, ?, ?, ?)",
            (wallet_id, name, device_id, created_at),
        )
        logger.info(f"💾 Wallet created: {wallet_id} ({name})")
        return Wallet(wallet_id, name, device_id, created_at)

    def delete_wallet(self, wallet_id: str) -> bool:
        deleted = self.execute("DELETE FROM wallets WHERE id = ?", (wallet_id,)) > 0
        if deleted:
            logger.info(f"Wallet deleted with dependents: {wallet_id}")
        return deleted

    def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        row = self.get_one("SELECT * FROM wallets WHERE id = ?", (wallet_id,))
        if not row:
            return None
        return Wallet(row['id'], row['name'], row['device_id'], row['created_at'],
                      self.get_wallet_networks(row['id']))

    def list_wallets(self) -> List[Wallet]:
        """All wallets with their network addresses, oldest first"""
        rows = self.get_all("SELECT * FROM wallets ORDER BY created_at, id")
        networks: Dict[str, List[NetworkAddress]] = {}
        for row in self.get_all("SELECT wallet_id, network, address FROM wallet_networks ORDER BY id"):
            networks.setdefault(row['wallet_id'], []).append(
                NetworkAddress(row['wallet_id'], row['network'], row['address'])
            )
        return [
            Wallet(row['id'], row['name'], row['device_id'], row['created_at'],
                   networks.get(row['id'], []))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Network addresses
    # ------------------------------------------------------------------

    def add_network_address(self, wallet_id: str, chain_id: str, address: str) -> NetworkAddress:
        """Add or replace the address for (wallet, network)"""
        self.execute("""
            INSERT INTO wallet_networks (wallet_id, network, address, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (wallet_id, network) DO UPDATE SET address = excluded.address
        """, (wallet_id, chain_id, address, _now()))
        return NetworkAddress(wallet_id, chain_id, address)

    def remove_network_address(self, wallet_id: str, chain_id: str) -> bool:
        return self.execute(
            "DELETE FROM wallet_networks WHERE wallet_id = ? AND network = ?",
            (wallet_id, chain_id),
        ) > 0

    def get_wallet_networks(self, wallet_id: str) -> List[NetworkAddress]:
        rows = self.get_all(
            "SELECT wallet_id, network, address FROM wallet_networks WHERE wallet_id = ? ORDER BY id",
            (wallet_id,),
        )
        return [NetworkAddress(r['wallet_id'], r['network'], r['address']) for r in rows]

    # ------------------------------------------------------------------
    # Encrypted seeds
    # ------------------------------------------------------------------

    def store_encrypted_seed(self, wallet_id: str, encrypted: str) -> None:
        self.execute("""
            INSERT INTO encrypted_mnemonics (wallet_id, encrypted_mnemonic, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT (wallet_id) DO UPDATE SET encrypted_mnemonic = excluded.encrypted_mnemonic
        """, (wallet_id, encrypted, _now()))

    def get_encrypted_seed(self, wallet_id: str) -> Optional[str]:
        row = self.get_one(
            "SELECT encrypted_mnemonic FROM encrypted_mnemonics WHERE wallet_id = ?", (wallet_id,)
        )
        return row['encrypted_mnemonic'] if row else None

    # ------------------------------------------------------------------
    # Monitor configuration
    # ------------------------------------------------------------------

    def ensure_monitor_config(self, defaults: Dict[str, Any]) -> None:
        """Insert the config row from defaults if it does not exist yet"""
        if self.get_monitor_config_row() is not None:
            return
        values = [defaults.get(column) for column in MONITOR_CONFIG_COLUMNS]
        self.execute(f"""
            INSERT INTO wallet_balance_monitor_config (id, {', '.join(MONITOR_CONFIG_COLUMNS)}, updated_at)
            VALUES (1, ?, ?, ?, ?, ?, ?)
        """, (*values, _now()))
        logger.info("💾 Monitor configuration seeded from defaults")

    def get_monitor_config_row(self) -> Optional[Dict]:
        return self.get_one("SELECT * FROM wallet_balance_monitor_config WHERE id = 1")

    def update_monitor_config(self, **fields) -> None:
        """
        Update the monitor configuration row

        Args:
            **fields: Any of threshold_usd, evm_destination_address,
                btc_destination_address, tron_destination_address, interval_ms
        """
        unknown = set(fields) - set(MONITOR_CONFIG_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown monitor config fields: {sorted(unknown)}")
        self.ensure_monitor_config({})
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        self.execute(
            f"UPDATE wallet_balance_monitor_config SET {assignments}, updated_at = ? WHERE id = 1",
            (*fields.values(), _now()),
        )
        logger.info(f"💾 Monitor configuration updated: {sorted(fields)}")

    # ------------------------------------------------------------------
    # Sweep ledger
    # ------------------------------------------------------------------

    def record_sweep_transfer(self, wallet_id: str, chain_id: str, status: str,
                              transfer_type: Optional[str] = None, symbol: Optional[str] = None,
                              amount: Optional[str] = None, tx_hash: Optional[str] = None,
                              destination: Optional[str] = None, error_kind: Optional[str] = None,
                              error_message: Optional[str] = None) -> bool:
        """
        Record a sweep transfer or failure

        Returns:
            Success status
        """
        try:
            self.execute("""
                INSERT INTO sweep_transactions (
                    wallet_id, chain_id, transfer_type, symbol, amount, tx_hash,
                    destination, status, error_kind, error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (wallet_id, chain_id, transfer_type, symbol, amount, tx_hash,
                  destination, status, error_kind, error_message, _now()))
            logger.debug(f"💾 Sweep ledger: {wallet_id}/{chain_id} {status} {tx_hash or ''}")
            return True
        except sqlite3.Error as e:
            logger.error(f"✗ Failed to record sweep for {wallet_id}/{chain_id}: {e}")
            return False

    def get_sweep_history(self, wallet_id: Optional[str] = None, limit: int = 50) -> List[Dict]:
        if wallet_id:
            return self.get_all(
                "SELECT * FROM sweep_transactions WHERE wallet_id = ? ORDER BY id DESC LIMIT ?",
                (wallet_id, limit),
            )
        return self.get_all("SELECT * FROM sweep_transactions ORDER BY id DESC LIMIT ?", (limit,))

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Wallet store closed")
