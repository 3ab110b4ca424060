"""
SQLite store for rules, encrypted API keys and execution logs

- One shared connection guarded by a re-entrant lock
- ACID transactions for multi-statement operations
- Idempotent schema with additive column migration
- Every read and write is scoped by tenant hash except get_all_enabled_rules()
"""

import sqlite3
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union
from contextlib import contextmanager

from torbox_rules.encryption import EncryptionService, generate_key
from torbox_rules.errors import (
    CredentialNotFoundError,
    PersistenceError,
    RuleNotFoundError,
    RuleValidationError,
)
from torbox_rules.logging import get_logger
from torbox_rules.models import (
    ActionConfig,
    AutomationRule,
    Condition,
    ExecutionLog,
    ProcessedItem,
    format_db_timestamp,
    parse_timestamp,
    trigger_from_dict,
    utcnow,
)

logger = get_logger(__name__)

MAX_LOG_LIMIT = 1000

# Columns added after the first release of rule_execution_log
_LOG_COLUMN_MIGRATIONS = (
    ('processed_items', 'TEXT'),
    ('total_items', 'INTEGER'),
    ('partial', 'BOOLEAN'),
)

_RULE_COLUMNS = (
    'id, api_key_hash, name, enabled, trigger_config, conditions, '
    'action_config, created_at, updated_at'
)

_LOG_COLUMNS = (
    'id, rule_id, rule_name, api_key_hash, execution_type, items_processed, '
    'total_items, success, error_message, processed_items, executed_at, partial'
)


def _timestamp_now() -> str:
    # Microseconds keep updated_at distinct across quick successive edits
    return utcnow().strftime('%Y-%m-%d %H:%M:%S.%f')


class RuleStore:
    """
    Persistent storage for automation rules

    Tables:
    - server_key: the single AES-256 key (id = 1)
    - api_keys: encrypted TorBox API keys by tenant hash
    - automation_rules: rule definitions (JSON trigger/conditions/action)
    - rule_execution_log: one row per rule run
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[str, Path] = 'data/torbox.db',
                 encryption: Optional[EncryptionService] = None):
        """
        Initialize store and schema

        Args:
            db_path: Path to SQLite database file
            encryption: Encryption service (created if not provided)
        """
        self.db_path = Path(db_path)
        self.encryption = encryption or EncryptionService()
        self._lock = threading.RLock()
        self._conn = None

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Schema creation and column migration run before anything else can
        # touch the connection
        with self._lock:
            self._init_database()

        logger.info(f"Rule store initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get the shared connection, opening it on first use"""
        if self._conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA foreign_keys=ON')
            self._conn = conn

        return self._conn

    @contextmanager
    def _connection(self, operation: str):
        """
        Hold the connection lock; re-raise sqlite failures as PersistenceError

        Usage:
            with self._connection('count rules') as conn:
                conn.execute(...)
        """
        with self._lock:
            try:
                yield self._get_connection()
            except sqlite3.Error as e:
                logger.error(f"Database operation failed ({operation}): {e}")
                raise PersistenceError(operation, str(e)) from e

    @contextmanager
    def _transaction(self, operation: str):
        """Context manager for multi-statement transactions"""
        with self._connection(operation) as conn:
            conn.execute('BEGIN')
            try:
                yield conn
                conn.execute('COMMIT')
            except Exception:
                conn.execute('ROLLBACK')
                raise

    # ========================================================================
    # Schema
    # ========================================================================

    def _init_database(self):
        """Initialize database schema and run migrations"""
        with self._transaction('initialize schema') as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            self._create_schema(conn)
            self._migrate_columns(conn)

            current_version = conn.execute('SELECT MAX(version) FROM schema_version').fetchone()[0]
            if current_version is None:
                conn.execute('INSERT INTO schema_version (version) VALUES (?)', (self.SCHEMA_VERSION,))
                logger.info(f"Created database schema v{self.SCHEMA_VERSION}")

    def _create_schema(self, conn: sqlite3.Connection):
        conn.execute('''
            CREATE TABLE IF NOT EXISTS server_key (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                encryption_key BLOB NOT NULL,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        conn.execute('''
            CREATE TABLE IF NOT EXISTS api_keys (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                api_key_hash TEXT UNIQUE NOT NULL,
                encrypted_api_key BLOB NOT NULL,
                nonce BLOB NOT NULL,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                last_used_at TIMESTAMP
            )
        ''')

        conn.execute('''
            CREATE TABLE IF NOT EXISTS automation_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                api_key_hash TEXT NOT NULL,
                name TEXT NOT NULL,
                enabled BOOLEAN DEFAULT 1,
                trigger_config TEXT NOT NULL,
                conditions TEXT NOT NULL,
                action_config TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Base shape of the log table; later columns come from _migrate_columns
        conn.execute('''
            CREATE TABLE IF NOT EXISTS rule_execution_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id INTEGER NOT NULL,
                rule_name TEXT NOT NULL,
                api_key_hash TEXT NOT NULL,
                execution_type TEXT NOT NULL,
                items_processed INTEGER DEFAULT 0,
                success BOOLEAN DEFAULT 1,
                error_message TEXT,
                executed_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        conn.execute('CREATE INDEX IF NOT EXISTS idx_rules_api_key_hash ON automation_rules(api_key_hash)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_rules_enabled ON automation_rules(enabled)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_logs_rule_id ON rule_execution_log(rule_id)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_logs_api_key_hash ON rule_execution_log(api_key_hash)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_logs_executed_at ON rule_execution_log(executed_at)')

    def _migrate_columns(self, conn: sqlite3.Connection):
        """Add nullable log columns missing from databases created by older releases"""
        existing = {row['name'] for row in conn.execute('PRAGMA table_info(rule_execution_log)')}
        for column, column_type in _LOG_COLUMN_MIGRATIONS:
            if column not in existing:
                conn.execute(f'ALTER TABLE rule_execution_log ADD COLUMN {column} {column_type}')
                logger.info(f"Added column rule_execution_log.{column}")

    # ========================================================================
    # Server key & credentials
    # ========================================================================

    def initialize_encryption(self):
        """
        Load the server key, generating and persisting it on first boot

        Raises:
            EncryptionKeyError: Stored key has the wrong length
        """
        with self._transaction('initialize encryption') as conn:
            row = conn.execute('SELECT encryption_key FROM server_key WHERE id = 1').fetchone()
            if row is None:
                key = generate_key()
                conn.execute('INSERT INTO server_key (id, encryption_key) VALUES (1, ?)', (key,))
                logger.info("Generated new server encryption key")
            else:
                key = bytes(row['encryption_key'])
                logger.debug("Loaded server encryption key")

        self.encryption.initialize(key)

    def save_credential(self, raw_api_key: str) -> str:
        """
        Encrypt and store an API key (insert or replace by hash)

        Returns:
            Tenant hash for the key
        """
        api_key_hash = self.encryption.hash_credential(raw_api_key)
        ciphertext, nonce = self.encryption.encrypt_credential(raw_api_key)

        with self._connection('save API key') as conn:
            conn.execute('''
                INSERT INTO api_keys (api_key_hash, encrypted_api_key, nonce, last_used_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(api_key_hash) DO UPDATE SET
                    encrypted_api_key = excluded.encrypted_api_key,
                    nonce = excluded.nonce,
                    last_used_at = excluded.last_used_at
            ''', (api_key_hash, ciphertext, nonce, _timestamp_now()))

        return api_key_hash

    def get_credential(self, api_key_hash: str) -> str:
        """
        Decrypt the stored API key for a tenant and refresh last_used_at

        Raises:
            CredentialNotFoundError: No key stored for this hash
            DecryptionError: Stored ciphertext does not decrypt
        """
        with self._connection('get API key') as conn:
            row = conn.execute(
                'SELECT encrypted_api_key, nonce FROM api_keys WHERE api_key_hash = ?',
                (api_key_hash,)
            ).fetchone()

            if row is None:
                raise CredentialNotFoundError(api_key_hash)

            raw = self.encryption.decrypt_credential(row['encrypted_api_key'], row['nonce'])

            conn.execute(
                'UPDATE api_keys SET last_used_at = ? WHERE api_key_hash = ?',
                (_timestamp_now(), api_key_hash)
            )

        return raw

    # ========================================================================
    # Rules
    # ========================================================================

    def save_rule(self, rule: AutomationRule) -> int:
        """
        Insert a new rule or update an existing one owned by the same tenant

        Returns:
            Rule ID (new for inserts, unchanged for updates)

        Raises:
            RuleNotFoundError: Update matched no rule for this tenant
        """
        trigger_json = json.dumps(rule.trigger.to_dict())
        conditions_json = json.dumps([c.to_dict() for c in rule.conditions])
        action_json = json.dumps(rule.action.to_dict())
        now = _timestamp_now()

        if rule.id is None:
            with self._connection('create rule') as conn:
                cursor = conn.execute('''
                    INSERT INTO automation_rules
                        (api_key_hash, name, enabled, trigger_config, conditions,
                         action_config, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (rule.tenant_hash, rule.name, int(rule.enabled), trigger_json,
                      conditions_json, action_json, now, now))
                rule.id = cursor.lastrowid

            rule.created_at = parse_timestamp(now)
            rule.updated_at = rule.created_at
            logger.debug(f"Created rule {rule.id} '{rule.name}'")
            return rule.id

        with self._connection('update rule') as conn:
            cursor = conn.execute('''
                UPDATE automation_rules
                SET name = ?, enabled = ?, trigger_config = ?, conditions = ?,
                    action_config = ?, updated_at = ?
                WHERE id = ? AND api_key_hash = ?
            ''', (rule.name, int(rule.enabled), trigger_json, conditions_json,
                  action_json, now, rule.id, rule.tenant_hash))

        if cursor.rowcount == 0:
            raise RuleNotFoundError(rule.id)

        rule.updated_at = parse_timestamp(now)
        logger.debug(f"Updated rule {rule.id} '{rule.name}'")
        return rule.id

    def get_rule(self, rule_id: int, api_key_hash: str) -> Optional[AutomationRule]:
        """Get a rule by ID for its owner, None if absent"""
        with self._connection('get rule') as conn:
            row = conn.execute(
                f'SELECT {_RULE_COLUMNS} FROM automation_rules WHERE id = ? AND api_key_hash = ?',
                (rule_id, api_key_hash)
            ).fetchone()

        if not row:
            return None

        return self._row_to_rule(row)

    def get_rules_by_api_key(self, api_key_hash: str) -> List[AutomationRule]:
        """List a tenant's rules, newest first"""
        with self._connection('list rules') as conn:
            rows = conn.execute(
                f'SELECT {_RULE_COLUMNS} FROM automation_rules WHERE api_key_hash = ? '
                'ORDER BY created_at DESC, id DESC',
                (api_key_hash,)
            ).fetchall()

        return self._rows_to_rules(rows)

    def count_rules_by_api_key(self, api_key_hash: str) -> int:
        with self._connection('count rules') as conn:
            return conn.execute(
                'SELECT COUNT(*) FROM automation_rules WHERE api_key_hash = ?',
                (api_key_hash,)
            ).fetchone()[0]

    def get_all_enabled_rules(self) -> List[AutomationRule]:
        """All enabled rules across every tenant (scheduler only)"""
        with self._connection('list enabled rules') as conn:
            rows = conn.execute(
                f'SELECT {_RULE_COLUMNS} FROM automation_rules WHERE enabled = 1 ORDER BY id'
            ).fetchall()

        return self._rows_to_rules(rows)

    def delete_rule(self, rule_id: int, api_key_hash: str) -> bool:
        """
        Delete a rule and its execution logs

        Returns:
            False if the tenant owns no rule with this ID
        """
        with self._transaction('delete rule') as conn:
            exists = conn.execute(
                'SELECT COUNT(*) FROM automation_rules WHERE id = ? AND api_key_hash = ?',
                (rule_id, api_key_hash)
            ).fetchone()[0]

            if not exists:
                return False

            conn.execute('DELETE FROM rule_execution_log WHERE rule_id = ?', (rule_id,))
            conn.execute(
                'DELETE FROM automation_rules WHERE id = ? AND api_key_hash = ?',
                (rule_id, api_key_hash)
            )

        logger.debug(f"Deleted rule {rule_id} and its execution logs")
        return True

    def _row_to_rule(self, row: sqlite3.Row) -> AutomationRule:
        """
        Convert SQLite row to AutomationRule

        Raises:
            RuleValidationError: Stored JSON no longer parses into a rule
        """
        name = row['name']
        try:
            trigger_data = json.loads(row['trigger_config'])
            conditions_data = json.loads(row['conditions'])
            action_data = json.loads(row['action_config'])
        except ValueError as e:
            raise RuleValidationError(name, f"Stored rule JSON is invalid: {e}")

        return AutomationRule(
            id=row['id'],
            tenant_hash=row['api_key_hash'],
            name=name,
            enabled=bool(row['enabled']),
            trigger=trigger_from_dict(trigger_data, name),
            conditions=[Condition.from_dict(c, name) for c in conditions_data],
            action=ActionConfig.from_dict(action_data, name),
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at']),
        )

    def _rows_to_rules(self, rows) -> List[AutomationRule]:
        rules = []
        for row in rows:
            try:
                rules.append(self._row_to_rule(row))
            except RuleValidationError as e:
                logger.warning(f"Skipping unreadable rule {row['id']}: {e.reason}")
        return rules

    # ========================================================================
    # Execution logs
    # ========================================================================

    def log_execution(self, log: ExecutionLog) -> int:
        """
        Append an execution log row

        A per-item list that cannot be serialized is dropped; the row is still
        written.

        Returns:
            Log row ID
        """
        processed_json = None
        if log.processed_items is not None:
            try:
                processed_json = json.dumps([item.to_dict() for item in log.processed_items])
            except (TypeError, ValueError) as e:
                logger.warning(f"Dropping processed items for rule {log.rule_id}: {e}")

        executed_at = format_db_timestamp(log.executed_at) if log.executed_at else _timestamp_now()

        with self._connection('log execution') as conn:
            cursor = conn.execute(f'''
                INSERT INTO rule_execution_log ({_LOG_COLUMNS})
                VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (log.rule_id, log.rule_name, log.tenant_hash, log.execution_type,
                  log.items_processed, log.total_items, int(log.success),
                  log.error_message, processed_json, executed_at, int(log.partial)))
            log.id = cursor.lastrowid

        log.executed_at = parse_timestamp(executed_at)
        return log.id

    def cleanup_old_logs(self, days_to_keep: int) -> int:
        """
        Delete execution logs older than the retention window

        Returns:
            Number of rows deleted
        """
        with self._connection('cleanup old logs') as conn:
            cursor = conn.execute(
                "DELETE FROM rule_execution_log WHERE executed_at < datetime('now', ?)",
                (f'-{int(days_to_keep)} days',)
            )

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} execution logs older than {days_to_keep} days")

        return deleted

    def get_execution_logs(self, rule_id: Optional[int], api_key_hash: str,
                           limit: int = 100) -> List[ExecutionLog]:
        """
        Recent execution logs for a tenant, most recent first

        Args:
            rule_id: Restrict to one rule (None for all of the tenant's rules)
            api_key_hash: Tenant hash
            limit: Maximum rows, clamped to [0, 1000]
        """
        limit = max(0, min(int(limit), MAX_LOG_LIMIT))

        query = f'SELECT {_LOG_COLUMNS} FROM rule_execution_log WHERE api_key_hash = ?'
        params = [api_key_hash]

        if rule_id is not None:
            query += ' AND rule_id = ?'
            params.append(rule_id)

        query += ' ORDER BY executed_at DESC, id DESC LIMIT ?'
        params.append(limit)

        with self._connection('get execution logs') as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_log(row) for row in rows]

    def get_last_run_time(self, rule_id: int, execution_type: str) -> Optional[datetime]:
        """Time of a rule's most recent execution of the given type, or None"""
        with self._connection('get last run time') as conn:
            row = conn.execute('''
                SELECT executed_at FROM rule_execution_log
                WHERE rule_id = ? AND execution_type = ?
                ORDER BY executed_at DESC, id DESC LIMIT 1
            ''', (rule_id, execution_type)).fetchone()

        return parse_timestamp(row['executed_at']) if row else None

    def _row_to_log(self, row: sqlite3.Row) -> ExecutionLog:
        processed_items = None
        if row['processed_items']:
            try:
                processed_items = [ProcessedItem.from_dict(p) for p in json.loads(row['processed_items'])]
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Ignoring unreadable processed items on log {row['id']}: {e}")

        items_processed = row['items_processed'] or 0
        total_items = row['total_items']

        return ExecutionLog(
            id=row['id'],
            rule_id=row['rule_id'],
            rule_name=row['rule_name'],
            tenant_hash=row['api_key_hash'],
            execution_type=row['execution_type'],
            items_processed=items_processed,
            total_items=items_processed if total_items is None else total_items,
            success=bool(row['success']),
            error_message=row['error_message'],
            processed_items=processed_items,
            partial=bool(row['partial']),
            executed_at=parse_timestamp(row['executed_at']),
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def health_check(self) -> bool:
        """Check if database is accessible"""
        try:
            with self._connection('health check') as conn:
                conn.execute('SELECT 1')
            return True
        except PersistenceError as e:
            logger.error(f"Store health check failed: {e.message}")
            return False

    def reset_after_fork(self):
        """
        Drop the connection inherited from the parent process

        An SQLite handle must not be used across fork(), so the child opens
        its own on next use. The inherited handle is left untouched.
        """
        self._lock = threading.RLock()
        self._conn = None

    def close(self):
        """Close the shared connection"""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
