#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
LiveRelay - Database Manager

SQLite persistence for follows, the subscription ledger, poll checkpoints,
delivery records, cooldown marks and the encrypted app credential.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import InvalidToken

from core.models import (
    Credential,
    DeliveryRecord,
    DesiredFollow,
    RemoteSubscription,
    normalize_entity_name,
    parse_iso,
    to_iso,
    utcnow,
)
from database.crypto import TokenEncryptor

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema.sql"


class DatabaseManager:
    """
    Gestionnaire principal de la base de données.

    Gère :
    - Follows (live et clips) par salon Discord
    - Ledger des subscriptions EventSub
    - Checkpoints de polling des clips
    - Messages livrés et cooldowns
    - Credential Twitch chiffré
    - Logs d'audit

    Every write is a single statement keyed by the table's uniqueness
    constraint, so concurrent writers on the same key never lose updates.
    """

    def __init__(self, db_path: str = "liverelay.db", key_file: str = ".liverelay.key"):
        """
        Args:
            db_path: Chemin vers le fichier SQLite (créé si absent)
            key_file: Chemin vers la clé de chiffrement
        """
        self.db_path = db_path
        self.encryptor = TokenEncryptor(key_file=key_file)

        if not Path(db_path).exists():
            logger.warning(f"⚠️ Database file not found, creating: {db_path}")

        self._setup_connection()
        self.ensure_schema()
        logger.info(f"DatabaseManager initialized: {db_path}")

    def _setup_connection(self):
        """Configure les paramètres SQLite."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("PRAGMA synchronous = NORMAL")

    def ensure_schema(self):
        """Apply schema.sql (idempotent, every statement is IF NOT EXISTS)."""
        schema_sql = SCHEMA_FILE.read_text(encoding="utf-8")
        with self._get_connection() as conn:
            conn.executescript(schema_sql)

    @contextmanager
    def _get_connection(self):
        """
        Context manager pour les connexions SQLite.

        Usage:
            with manager._get_connection() as conn:
                cursor = conn.execute(...)
        """
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}", exc_info=True)
            raise
        finally:
            conn.close()

    # ==================== FOLLOWS ====================

    def add_follow(self, guild_id: str, channel_id: str, entity_name: str,
                   follow_kind: str) -> bool:
        """
        Ajoute un follow.

        Returns:
            True si créé, False si le follow existait déjà
        """
        entity_name = normalize_entity_name(entity_name)
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO desired_follows
                    (guild_id, channel_id, entity_name, follow_kind, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (guild_id, channel_id, entity_name, follow_kind, to_iso(utcnow()))
            )
            created = cursor.rowcount > 0
            if created:
                self._log_audit(conn, "follow_added", {
                    "guild_id": guild_id,
                    "channel_id": channel_id,
                    "entity_name": entity_name,
                    "follow_kind": follow_kind,
                })
            return created

    def remove_follow(self, channel_id: str, entity_name: str, follow_kind: str) -> bool:
        """
        Supprime un follow.

        Returns:
            True si supprimé, False si introuvable
        """
        entity_name = normalize_entity_name(entity_name)
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM desired_follows
                WHERE channel_id = ? AND entity_name = ? AND follow_kind = ?
                """,
                (channel_id, entity_name, follow_kind)
            )
            removed = cursor.rowcount > 0
            if removed:
                self._log_audit(conn, "follow_removed", {
                    "channel_id": channel_id,
                    "entity_name": entity_name,
                    "follow_kind": follow_kind,
                })
            return removed

    def get_follow(self, channel_id: str, entity_name: str,
                   follow_kind: str) -> Optional[DesiredFollow]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM desired_follows
                WHERE channel_id = ? AND entity_name = ? AND follow_kind = ?
                """,
                (channel_id, normalize_entity_name(entity_name), follow_kind)
            ).fetchone()
            return DesiredFollow.from_row(row) if row else None

    def get_channel_follows(self, channel_id: str,
                            follow_kind: Optional[str] = None) -> List[DesiredFollow]:
        """Follows configurés sur un salon, triés par nom."""
        query = "SELECT * FROM desired_follows WHERE channel_id = ?"
        params: List[Any] = [channel_id]
        if follow_kind:
            query += " AND follow_kind = ?"
            params.append(follow_kind)
        query += " ORDER BY entity_name, follow_kind"
        with self._get_connection() as conn:
            return [DesiredFollow.from_row(r) for r in conn.execute(query, params)]

    def get_entity_follows(self, entity_name: str, follow_kind: str) -> List[DesiredFollow]:
        """Every destination following entity_name for follow_kind."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM desired_follows
                WHERE entity_name = ? AND follow_kind = ?
                ORDER BY id
                """,
                (normalize_entity_name(entity_name), follow_kind)
            )
            return [DesiredFollow.from_row(r) for r in rows]

    def count_entity_follows(self, entity_name: str, follow_kind: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM desired_follows
                WHERE entity_name = ? AND follow_kind = ?
                """,
                (normalize_entity_name(entity_name), follow_kind)
            ).fetchone()
            return row[0]

    def get_followed_entities(self, follow_kind: str) -> List[str]:
        """Distinct entity names with at least one follow of this kind."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT entity_name FROM desired_follows
                WHERE follow_kind = ?
                ORDER BY entity_name
                """,
                (follow_kind,)
            )
            return [r["entity_name"] for r in rows]

    # ==================== SUBSCRIPTIONS ====================

    def upsert_subscription(self, subscription: RemoteSubscription) -> None:
        """
        Enregistre (ou remplace) la subscription pour (entity_name, event_kind).

        A stale row still holding the same remote id under another key is
        dropped first so subscription_id stays unique.
        """
        now = to_iso(utcnow())
        entity_name = normalize_entity_name(subscription.entity_name)
        with self._get_connection() as conn:
            conn.execute(
                """
                DELETE FROM remote_subscriptions
                WHERE subscription_id = ?
                  AND NOT (entity_name = ? AND event_kind = ?)
                """,
                (subscription.subscription_id, entity_name, subscription.event_kind)
            )
            conn.execute(
                """
                INSERT INTO remote_subscriptions
                    (subscription_id, entity_name, entity_id, event_kind, status,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(entity_name, event_kind) DO UPDATE SET
                    subscription_id = excluded.subscription_id,
                    entity_id = excluded.entity_id,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    subscription.subscription_id,
                    entity_name,
                    subscription.entity_id,
                    subscription.event_kind,
                    subscription.status,
                    now,
                    now,
                )
            )

    def get_subscription(self, entity_name: str, event_kind: str) -> Optional[RemoteSubscription]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM remote_subscriptions
                WHERE entity_name = ? AND event_kind = ?
                """,
                (normalize_entity_name(entity_name), event_kind)
            ).fetchone()
            return RemoteSubscription.from_row(row) if row else None

    def get_subscription_by_id(self, subscription_id: str) -> Optional[RemoteSubscription]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM remote_subscriptions WHERE subscription_id = ?",
                (subscription_id,)
            ).fetchone()
            return RemoteSubscription.from_row(row) if row else None

    def get_subscription_by_entity_id(self, entity_id: str,
                                      event_kind: str) -> Optional[RemoteSubscription]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM remote_subscriptions
                WHERE entity_id = ? AND event_kind = ?
                """,
                (entity_id, event_kind)
            ).fetchone()
            return RemoteSubscription.from_row(row) if row else None

    def list_subscriptions(self) -> List[RemoteSubscription]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM remote_subscriptions ORDER BY entity_name, event_kind"
            )
            return [RemoteSubscription.from_row(r) for r in rows]

    def delete_subscription(self, entity_name: str, event_kind: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM remote_subscriptions
                WHERE entity_name = ? AND event_kind = ?
                """,
                (normalize_entity_name(entity_name), event_kind)
            )
            return cursor.rowcount > 0

    def delete_subscription_by_id(self, subscription_id: str,
                                  updated_before: Optional[datetime] = None) -> bool:
        """
        Supprime une subscription locale par son ID Twitch.

        Args:
            subscription_id: ID distant
            updated_before: si fourni, ne supprime que si la ligne n'a pas
                été réécrite depuis cet instant

        Returns:
            True si une ligne a été supprimée
        """
        query = "DELETE FROM remote_subscriptions WHERE subscription_id = ?"
        params: List[Any] = [subscription_id]
        if updated_before is not None:
            query += " AND updated_at < ?"
            params.append(to_iso(updated_before))
        with self._get_connection() as conn:
            return conn.execute(query, params).rowcount > 0

    # ==================== POLLING ====================

    def get_checkpoint(self, entity_name: str) -> Optional[datetime]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT last_item_at FROM poll_checkpoints WHERE entity_name = ?",
                (normalize_entity_name(entity_name),)
            ).fetchone()
            return parse_iso(row["last_item_at"]) if row else None

    def advance_checkpoint(self, entity_name: str, last_item_at: datetime) -> bool:
        """
        Avance le checkpoint d'une entité.

        The WHERE clause of the upsert keeps the value non-decreasing even
        when two pollers race on the same entity.

        Returns:
            True si la valeur stockée a changé
        """
        now = to_iso(utcnow())
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO poll_checkpoints (entity_name, last_item_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(entity_name) DO UPDATE SET
                    last_item_at = excluded.last_item_at,
                    updated_at = excluded.updated_at
                WHERE excluded.last_item_at > poll_checkpoints.last_item_at
                """,
                (normalize_entity_name(entity_name), to_iso(last_item_at), now)
            )
            return cursor.rowcount > 0

    def delete_checkpoint(self, entity_name: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM poll_checkpoints WHERE entity_name = ?",
                (normalize_entity_name(entity_name),)
            )
            return cursor.rowcount > 0

    # ==================== DELIVERIES ====================

    def upsert_delivery(self, record: DeliveryRecord) -> None:
        """Insert or replace the handle for (item_id, channel_id)."""
        created_at = record.created_at or utcnow()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO delivery_records
                    (item_id, channel_id, message_id, entity_name, item_title, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id, channel_id) DO UPDATE SET
                    message_id = excluded.message_id,
                    entity_name = excluded.entity_name,
                    item_title = excluded.item_title
                """,
                (
                    record.item_id,
                    record.channel_id,
                    record.message_id,
                    normalize_entity_name(record.entity_name),
                    record.item_title,
                    to_iso(created_at),
                )
            )

    def update_delivery_title(self, item_id: str, item_title: str) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "UPDATE delivery_records SET item_title = ? WHERE item_id = ?",
                (item_title, item_id)
            ).rowcount

    def get_delivery(self, item_id: str, channel_id: str) -> Optional[DeliveryRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM delivery_records WHERE item_id = ? AND channel_id = ?",
                (item_id, channel_id)
            ).fetchone()
            return DeliveryRecord.from_row(row) if row else None

    def get_deliveries(self, item_id: str) -> List[DeliveryRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM delivery_records WHERE item_id = ? ORDER BY id",
                (item_id,)
            )
            return [DeliveryRecord.from_row(r) for r in rows]

    def delete_deliveries(self, item_id: str) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "DELETE FROM delivery_records WHERE item_id = ?",
                (item_id,)
            ).rowcount

    def get_recent_delivery_item_ids(self, since: datetime) -> List[str]:
        """Item ids with at least one delivery created after `since`."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT item_id, MIN(created_at) AS first_seen
                FROM delivery_records
                WHERE created_at > ?
                GROUP BY item_id
                ORDER BY first_seen
                """,
                (to_iso(since),)
            )
            return [r["item_id"] for r in rows]

    # ==================== COOLDOWNS ====================

    def get_cooldown(self, channel_id: str, entity_name: str) -> Optional[datetime]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT last_delivery_at FROM cooldown_marks
                WHERE channel_id = ? AND entity_name = ?
                """,
                (channel_id, normalize_entity_name(entity_name))
            ).fetchone()
            return parse_iso(row["last_delivery_at"]) if row else None

    def set_cooldown(self, channel_id: str, entity_name: str, when: datetime) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cooldown_marks
                    (channel_id, entity_name, last_delivery_at)
                VALUES (?, ?, ?)
                """,
                (channel_id, normalize_entity_name(entity_name), to_iso(when))
            )

    # ==================== TEMPLATES ====================

    def set_template(self, guild_id: str, kind: str, template: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO guild_templates (guild_id, kind, template, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (guild_id, kind, template, to_iso(utcnow()))
            )
            self._log_audit(conn, "template_set", {"guild_id": guild_id, "kind": kind})

    def get_template(self, guild_id: str, kind: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT template FROM guild_templates WHERE guild_id = ? AND kind = ?",
                (guild_id, kind)
            ).fetchone()
            return row["template"] if row else None

    def remove_template(self, guild_id: str, kind: str) -> bool:
        with self._get_connection() as conn:
            return conn.execute(
                "DELETE FROM guild_templates WHERE guild_id = ? AND kind = ?",
                (guild_id, kind)
            ).rowcount > 0

    # ==================== CREDENTIALS ====================

    def save_credential(self, credential: Credential) -> None:
        """Chiffre et stocke le credential applicatif (ligne unique id=1)."""
        refresh_encrypted = (
            self.encryptor.encrypt(credential.refresh_token)
            if credential.refresh_token else None
        )
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO credentials
                    (id, access_token_encrypted, refresh_token_encrypted, expires_at, updated_at)
                VALUES (1, ?, ?, ?, ?)
                """,
                (
                    self.encryptor.encrypt(credential.access_token),
                    refresh_encrypted,
                    to_iso(credential.expires_at),
                    to_iso(utcnow()),
                )
            )
        logger.debug(f"🔐 Credential stored (expires {to_iso(credential.expires_at)})")

    def load_credential(self) -> Optional[Credential]:
        """
        Récupère et déchiffre le credential.

        Returns:
            Credential, ou None si absent ou illisible (clé changée)
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE id = 1").fetchone()
        if not row:
            return None
        try:
            access_token = self.encryptor.decrypt(row["access_token_encrypted"])
            refresh_token = (
                self.encryptor.decrypt(row["refresh_token_encrypted"])
                if row["refresh_token_encrypted"] else None
            )
        except InvalidToken:
            logger.warning("⚠️ Stored credential cannot be decrypted, ignoring it")
            return None
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=parse_iso(row["expires_at"]),
        )

    def rotate_key(self) -> bool:
        """
        Génère une nouvelle clé et re-chiffre le credential avec elle.

        The old keys are dropped only once the stored values are re-encrypted.

        Returns:
            True si un credential a été re-chiffré
        """
        self.encryptor.add_key()
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE id = 1").fetchone()
            if row:
                refresh = row["refresh_token_encrypted"]
                conn.execute(
                    """
                    UPDATE credentials
                    SET access_token_encrypted = ?, refresh_token_encrypted = ?, updated_at = ?
                    WHERE id = 1
                    """,
                    (
                        self.encryptor.reencrypt(row["access_token_encrypted"]),
                        self.encryptor.reencrypt(refresh) if refresh else None,
                        to_iso(utcnow()),
                    )
                )
                self._log_audit(conn, "key_rotated", {"fingerprint": self.encryptor.get_key_fingerprint()})
        self.encryptor.drop_old_keys()
        logger.info(f"🔑 Encryption key rotated ({self.encryptor.get_key_fingerprint()})")
        return row is not None

    # ==================== AUDIT ====================

    def log_audit(self, event_type: str, details: Optional[Dict[str, Any]] = None,
                  severity: str = "info") -> None:
        with self._get_connection() as conn:
            self._log_audit(conn, event_type, details, severity)

    def _log_audit(self, conn: sqlite3.Connection, event_type: str,
                   details: Optional[Dict[str, Any]] = None, severity: str = "info"):
        conn.execute(
            """
            INSERT INTO audit_log (event_type, details, severity, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (event_type, json.dumps(details or {}), severity, to_iso(utcnow()))
        )

    def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?",
                (limit,)
            )
            return [dict(r) for r in rows]

    # ==================== STATS ====================

    def get_stats(self) -> Dict[str, int]:
        """Compteurs par table (pour relay_ctl status)."""
        tables = (
            "desired_follows",
            "remote_subscriptions",
            "poll_checkpoints",
            "delivery_records",
            "cooldown_marks",
        )
        with self._get_connection() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in tables
            }
