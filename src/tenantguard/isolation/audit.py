"""Signed, hash-chained audit trail for tenant isolation decisions.

Every block, risk warning, tenant parameter correction and predicate injection
made by the gateway can be recorded here. Records are linked by a SHA-256 hash
chain and optionally signed with Ed25519, so deleting or editing a record is
detectable after the fact.

Key Components:
    - SecurityAuditRecord: One isolation decision with signature and chain link
    - SecurityAuditStore: Thread-safe, bounded storage and verification

Example:
    >>> from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
    >>> from cryptography.hazmat.primitives import serialization
    >>>
    >>> private_key = Ed25519PrivateKey.generate()
    >>> signing_key = private_key.private_bytes(
    ...     encoding=serialization.Encoding.Raw,
    ...     format=serialization.PrivateFormat.Raw,
    ...     encryption_algorithm=serialization.NoEncryption(),
    ... )
    >>> verify_key = private_key.public_key().public_bytes(
    ...     encoding=serialization.Encoding.Raw,
    ...     format=serialization.PublicFormat.Raw,
    ... )
    >>> store = SecurityAuditStore(signing_key=signing_key, verify_key=verify_key)
    >>> record = store.record_decision(
    ...     tenant_id="tenant-a",
    ...     decision=AuditDecision.BLOCKED,
    ...     category="or_bypass",
    ...     query="SELECT * FROM orders WHERE tenant_id = $1 OR 1=1",
    ... )
    >>> store.verify_record(record)
    True
"""

import base64
import hashlib
import json
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .exceptions import sql_excerpt

logger = logging.getLogger(__name__)

UNSIGNED = "unsigned"
DEFAULT_MAX_RECORDS = 10000


class AuditDecision(Enum):
    BLOCKED = "blocked"
    WARNED = "warned"
    CORRECTED = "corrected"
    INJECTED = "injected"


# === Audit Record Dataclass ===


@dataclass(frozen=True)
class SecurityAuditRecord:
    """One tenant isolation decision.

    Attributes:
        record_id: Unique identifier (UUID format)
        timestamp: Decision time in UTC
        tenant_id: Tenant the statement was issued for
        decision: What the guard did
        category: Error category or decision detail
        risk: Risk level name at the time of the decision
        query_excerpt: At most 100 characters of the statement
        query_hash: SHA-256 of the normalized statement (16 chars)
        signature: Ed25519 signature in base64, or "unsigned"
        previous_record_hash: SHA-256 hash of the previous record
        sequence_number: Position in the chain, starting at 0
    """

    record_id: str
    timestamp: datetime
    tenant_id: Optional[str]
    decision: AuditDecision
    category: str
    risk: str
    query_excerpt: str
    query_hash: str
    signature: str
    previous_record_hash: Optional[str]
    sequence_number: int

    def _payload(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "tenant_id": self.tenant_id,
            "decision": self.decision.value,
            "category": self.category,
            "risk": self.risk,
            "query_excerpt": self.query_excerpt,
            "query_hash": self.query_hash,
            "sequence_number": self.sequence_number,
        }

    def to_signing_payload(self) -> bytes:
        """Canonical bytes covered by the signature.

        The signature and chain link are excluded since both are computed
        after the payload.
        """
        return json.dumps(self._payload(), sort_keys=True).encode("utf-8")

    def compute_hash(self) -> str:
        """SHA-256 over every field, used as the next record's chain link."""
        data = self._payload()
        data["signature"] = self.signature
        data["previous_record_hash"] = self.previous_record_hash
        serialized = json.dumps(data, sort_keys=True)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = self._payload()
        data["signature"] = self.signature
        data["previous_record_hash"] = self.previous_record_hash
        return data


# === Security Audit Store ===


class SecurityAuditStore:
    """Bounded, thread-safe storage for signed isolation decisions.

    When ``max_records`` is reached the oldest records are dropped; the chain
    remains verifiable from the oldest retained record onwards.

    Args:
        signing_key: Ed25519 private key bytes (32 bytes), optional.
        verify_key: Ed25519 public key bytes (32 bytes), optional.
        enabled: Whether decisions are recorded.
        strict_verification: Treat unsigned records and a missing verify key
            as verification failures.
        max_records: Retention bound.
    """

    def __init__(
        self,
        signing_key: Optional[bytes] = None,
        verify_key: Optional[bytes] = None,
        enabled: bool = True,
        strict_verification: bool = True,
        max_records: int = DEFAULT_MAX_RECORDS,
    ) -> None:
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        self._records: Deque[SecurityAuditRecord] = deque(maxlen=max_records)
        self._sequence_counter = 0
        self._last_record_hash: Optional[str] = None
        self._private_key = (
            Ed25519PrivateKey.from_private_bytes(signing_key) if signing_key else None
        )
        self._public_key = (
            Ed25519PublicKey.from_public_bytes(verify_key) if verify_key else None
        )
        self._enabled = enabled
        self._strict_verification = strict_verification
        self._lock = threading.Lock()

        if not signing_key:
            logger.warning(
                "SecurityAuditStore initialized without signing key. "
                "Records will be created with 'unsigned' signature."
            )
        if strict_verification and not verify_key:
            logger.warning(
                "SecurityAuditStore initialized with strict_verification=True "
                "but no verify_key. All signature verifications will fail."
            )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _sign(self, payload: bytes) -> str:
        if self._private_key is None:
            return UNSIGNED
        return base64.b64encode(self._private_key.sign(payload)).decode("utf-8")

    def _verify_signature(self, payload: bytes, signature_b64: str) -> bool:
        if signature_b64 == UNSIGNED or self._public_key is None:
            return not self._strict_verification
        try:
            self._public_key.verify(base64.b64decode(signature_b64), payload)
            return True
        except (InvalidSignature, ValueError) as e:
            logger.debug(f"Signature verification failed: {e}")
            return False

    def record_decision(
        self,
        tenant_id: Optional[str],
        decision: AuditDecision,
        category: str,
        query: str,
        risk: str = "SAFE",
    ) -> Optional[SecurityAuditRecord]:
        """Append a signed record for one isolation decision.

        Args:
            tenant_id: Request tenant.
            decision: What the guard did with the statement.
            category: Error category or short detail.
            query: The statement; only an excerpt and a hash are stored.
            risk: Risk level name.

        Returns:
            The stored record, or None when the store is disabled.
        """
        if not self._enabled:
            return None

        with self._lock:
            unsigned = SecurityAuditRecord(
                record_id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc),
                tenant_id=tenant_id,
                decision=decision,
                category=category,
                risk=risk,
                query_excerpt=sql_excerpt(query),
                query_hash=self.compute_query_hash(query),
                signature="",
                previous_record_hash=self._last_record_hash,
                sequence_number=self._sequence_counter,
            )
            record = replace(unsigned, signature=self._sign(unsigned.to_signing_payload()))
            self._last_record_hash = record.compute_hash()
            self._sequence_counter += 1
            self._records.append(record)
            return record

    def verify_record(self, record: SecurityAuditRecord) -> bool:
        """Verify a single record's signature."""
        return self._verify_signature(record.to_signing_payload(), record.signature)

    def verify_chain_integrity(self) -> Tuple[bool, Optional[str]]:
        """Verify the retained chain hasn't been tampered with.

        Checks contiguous sequence numbers, hash links and signatures.

        Returns:
            Tuple of (is_valid, error_message_if_invalid)
        """
        with self._lock:
            records = list(self._records)
        if not records:
            return True, None

        if records[0].sequence_number == 0 and records[0].previous_record_hash is not None:
            return False, "First record should have no previous_record_hash"

        first_sequence = records[0].sequence_number
        for i, record in enumerate(records):
            if record.sequence_number != first_sequence + i:
                return (
                    False,
                    f"Sequence gap detected at position {i}: "
                    f"expected {first_sequence + i}, got {record.sequence_number}",
                )
            if i > 0 and record.previous_record_hash != records[i - 1].compute_hash():
                return (
                    False,
                    f"Chain integrity mismatch at record {i}: possible tampering detected",
                )
            if not self.verify_record(record):
                return (
                    False,
                    f"Signature verification failed for record {i} (id: {record.record_id})",
                )
        return True, None

    def get_records(
        self,
        tenant_id: Optional[str] = None,
        decision: Optional[AuditDecision] = None,
    ) -> List[SecurityAuditRecord]:
        """Retained records, optionally filtered by tenant and decision."""
        with self._lock:
            records = list(self._records)
        return [
            r
            for r in records
            if (tenant_id is None or r.tenant_id == tenant_id)
            and (decision is None or r.decision is decision)
        ]

    def clear_records(self) -> None:
        """Clear all records (testing only)."""
        with self._lock:
            self._records.clear()
            self._sequence_counter = 0
            self._last_record_hash = None
            logger.warning("Audit records cleared - this should only happen in tests")

    @staticmethod
    def compute_query_hash(query: str) -> str:
        """SHA-256 of the whitespace-normalized, lower-cased statement, 16 chars."""
        if not query:
            return "0" * 16
        normalized = " ".join(query.lower().split())
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
