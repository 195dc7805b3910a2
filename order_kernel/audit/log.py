"""
Audit Log — append-only, cryptographically chained record of every decision.

Behavioral Contract:
- Append-only. No entry is ever modified or deleted.
- Each entry is hashed and chained to the previous entry (tamper-evident).
- Transitions, rejected commands, gate decisions and assignment decisions
  all land here with actor, timestamp and reason.
- Appends are serialised internally, so concurrent writers are safe.
"""

import hashlib
import json
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from order_kernel.models.audit import AuditEntry, AuditKind, StateTransitionRecord
from order_kernel.models.order import OrderState


def _compute_signature(entry: AuditEntry) -> str:
    entry_dict = entry.model_dump(mode="json")
    # Zero out signature before hashing (it's what we're computing)
    entry_dict["signature"] = ""
    entry_bytes = json.dumps(entry_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(entry_bytes).hexdigest()


class AuditLog:
    """
    Append-only audit log.
    Prototype: SQLite. A file path makes it durable across restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the audit table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                order_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                command TEXT,
                from_state TEXT,
                to_state TEXT,
                occurred_at TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                entry_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_order_id ON audit_log(order_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_kind ON audit_log(kind)
        """)
        self._conn.commit()

    def record(
        self,
        kind: AuditKind,
        order_id: str,
        actor: str,
        timestamp: datetime,
        command: Optional[str] = None,
        from_state: Optional[OrderState] = None,
        to_state: Optional[OrderState] = None,
        reason: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        entry = AuditEntry(
            id=f"aud_{uuid4().hex[:12]}",
            kind=kind,
            order_id=order_id,
            actor=actor,
            timestamp=timestamp,
            command=command,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            payload=payload or {},
        )
        return self.append(entry)

    def record_transition(self, record: StateTransitionRecord) -> AuditEntry:
        return self.record(
            kind=AuditKind.TRANSITION,
            order_id=record.order_id,
            actor=record.actor,
            timestamp=record.timestamp,
            command=record.event,
            from_state=record.from_state,
            to_state=record.to_state,
            reason=record.reason,
        )

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Append an entry. Computes the hash and chains it to the previous entry.
        """
        with self._write_lock:
            entry.prior_record_hash = self._get_latest_hash()
            entry.signature = _compute_signature(entry)

            self._conn.execute(
                """
                INSERT INTO audit_log (
                    id, kind, order_id, actor, command, from_state, to_state,
                    occurred_at, signature, prior_record_hash, entry_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.kind.value,
                    entry.order_id,
                    entry.actor,
                    entry.command,
                    entry.from_state.value if entry.from_state else None,
                    entry.to_state.value if entry.to_state else None,
                    entry.timestamp.isoformat(),
                    entry.signature,
                    entry.prior_record_hash,
                    json.dumps(entry.model_dump(mode="json"), default=str),
                ),
            )
            self._conn.commit()
        return entry

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM audit_log ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> AuditEntry:
        return AuditEntry.model_validate_json(row["entry_json"])

    def _select(self, sql: str, params: tuple = ()) -> List[AuditEntry]:
        with self._write_lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._deserialize(r) for r in rows]

    def get_by_id(self, entry_id: str) -> Optional[AuditEntry]:
        entries = self._select("SELECT entry_json FROM audit_log WHERE id = ?", (entry_id,))
        return entries[0] if entries else None

    def query_by_order(self, order_id: str) -> List[AuditEntry]:
        """Full history of one order, oldest first."""
        return self._select(
            "SELECT entry_json FROM audit_log WHERE order_id = ? ORDER BY rowid",
            (order_id,),
        )

    def query_by_kind(self, kind: AuditKind, order_id: Optional[str] = None) -> List[AuditEntry]:
        if order_id is None:
            return self._select(
                "SELECT entry_json FROM audit_log WHERE kind = ? ORDER BY rowid",
                (kind.value,),
            )
        return self._select(
            "SELECT entry_json FROM audit_log WHERE kind = ? AND order_id = ? ORDER BY rowid",
            (kind.value, order_id),
        )

    def transitions_for(self, order_id: str) -> List[StateTransitionRecord]:
        """The state history of an order as immutable transition records."""
        return [
            e.as_transition()
            for e in self.query_by_kind(AuditKind.TRANSITION, order_id)
        ]

    def rejections_for(self, order_id: str) -> List[AuditEntry]:
        return self.query_by_kind(AuditKind.REJECTED_COMMAND, order_id)

    def query_recent(self, limit: int = 50) -> List[AuditEntry]:
        entries = self._select(
            "SELECT entry_json FROM audit_log ORDER BY rowid DESC LIMIT ?",
            (limit,),
        )
        return list(reversed(entries))

    def verify_chain_integrity(self) -> bool:
        """Verify no entries have been tampered with."""
        with self._write_lock:
            rows = self._conn.execute(
                "SELECT entry_json, signature FROM audit_log ORDER BY rowid"
            ).fetchall()

        prior_signature = None
        for row in rows:
            entry = AuditEntry.model_validate_json(row["entry_json"])
            if entry.signature != row["signature"]:
                return False
            if _compute_signature(entry) != entry.signature:
                return False
            if entry.prior_record_hash != prior_signature:
                return False
            prior_signature = entry.signature
        return True

    def count(self) -> int:
        with self._write_lock:
            row = self._conn.execute("SELECT COUNT(*) as cnt FROM audit_log").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
