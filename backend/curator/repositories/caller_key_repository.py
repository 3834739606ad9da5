from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Literal

from backend.curator.repositories.common import new_id, optional_text, utc_now_iso
from backend.curator.repositories.database import Database
from backend.curator.repositories.secret_cipher import SecretCipher, is_encrypted

QuotaStatus = Literal["invalid", "quota_exceeded"]


@dataclass(frozen=True)
class CallerKeyRecord:
    key_id: str
    caller_id: str
    provider: str
    is_valid: bool
    quota_status: str | None
    last_validated_at: str | None
    created_at: str


class EncryptionNotConfiguredError(RuntimeError):
    pass


class CallerKeyRepository:
    """
    Per-caller ("bring your own") credentials, one per caller and provider.

    Secrets are encrypted with `cipher` before they reach SQLite. Without a cipher
    keys can still be listed and deleted, but not stored or read back.
    """

    def __init__(self, db: Database, *, cipher: SecretCipher | None = None) -> None:
        self._db = db
        self._cipher = cipher

    def put_key(self, *, caller_id: str, provider: str, secret_value: str) -> CallerKeyRecord:
        normalized_secret = secret_value.strip()
        if not normalized_secret:
            raise ValueError("secret_value must not be empty")
        stored_secret = self._require_cipher().encrypt(normalized_secret)

        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            existing = conn.execute(
                """
                SELECT key_id, created_at
                FROM caller_api_keys
                WHERE caller_id = ? AND provider = ?
                """,
                (caller_id, provider),
            ).fetchone()
            if existing is None:
                key_id = new_id("ckey")
                created_at = now_iso
                conn.execute(
                    """
                    INSERT INTO caller_api_keys (
                        key_id, caller_id, provider, secret_value, is_valid,
                        quota_status, last_validated_at, created_at
                    )
                    VALUES (?, ?, ?, ?, 1, NULL, ?, ?)
                    """,
                    (key_id, caller_id, provider, stored_secret, now_iso, created_at),
                )
            else:
                key_id = str(existing["key_id"])
                created_at = str(existing["created_at"])
                conn.execute(
                    """
                    UPDATE caller_api_keys
                    SET secret_value = ?, is_valid = 1, quota_status = NULL,
                        last_validated_at = ?
                    WHERE key_id = ?
                    """,
                    (stored_secret, now_iso, key_id),
                )

        return CallerKeyRecord(
            key_id=key_id,
            caller_id=caller_id,
            provider=provider,
            is_valid=True,
            quota_status=None,
            last_validated_at=now_iso,
            created_at=created_at,
        )

    def get_active_key(self, *, caller_id: str, provider: str) -> tuple[CallerKeyRecord, str] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT key_id, caller_id, provider, secret_value, is_valid,
                       quota_status, last_validated_at, created_at
                FROM caller_api_keys
                WHERE caller_id = ? AND provider = ? AND is_valid = 1
                      AND quota_status IS NULL
                """,
                (caller_id, provider),
            ).fetchone()
        if row is None:
            return None
        stored_secret = str(row["secret_value"])
        # Rows written before encryption was enabled hold the raw key.
        if not is_encrypted(stored_secret):
            return _record_from_row(row), stored_secret
        return _record_from_row(row), self._require_cipher().decrypt(stored_secret)

    def invalidate_key(self, key_id: str, *, quota_status: QuotaStatus) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE caller_api_keys
                SET is_valid = 0, quota_status = ?, last_validated_at = ?
                WHERE key_id = ?
                """,
                (quota_status, utc_now_iso(), key_id),
            )
        return cursor.rowcount > 0

    def delete_key(self, *, caller_id: str, key_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM caller_api_keys WHERE key_id = ? AND caller_id = ?",
                (key_id.strip(), caller_id),
            )
        return cursor.rowcount > 0

    def list_keys(self, *, caller_id: str | None = None) -> list[CallerKeyRecord]:
        query = """
            SELECT key_id, caller_id, provider, is_valid, quota_status,
                   last_validated_at, created_at
            FROM caller_api_keys
        """
        params: tuple[object, ...] = ()
        if caller_id is not None:
            query += " WHERE caller_id = ?"
            params = (caller_id,)
        query += " ORDER BY caller_id, provider"

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_record_from_row(row) for row in rows]

    def _require_cipher(self) -> SecretCipher:
        if self._cipher is None:
            raise EncryptionNotConfiguredError(
                "CURATOR_ENCRYPTION_SECRET must be set to store or read caller API keys."
            )
        return self._cipher


def _record_from_row(row: sqlite3.Row) -> CallerKeyRecord:
    return CallerKeyRecord(
        key_id=str(row["key_id"]),
        caller_id=str(row["caller_id"]),
        provider=str(row["provider"]),
        is_valid=bool(row["is_valid"]),
        quota_status=optional_text(row["quota_status"]),
        last_validated_at=optional_text(row["last_validated_at"]),
        created_at=str(row["created_at"]),
    )
