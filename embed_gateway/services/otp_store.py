"""In-memory one-time passcode store with per-identity atomic verification."""

from __future__ import annotations

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

OTP_TTL_SECONDS = 300
CODE_MIN = 100000
CODE_MAX = 999999
_LOCK_STRIPES = 64


class VerificationOutcome(str, Enum):
    NO_RECORD = "no_record"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    VERIFIED = "verified"


@dataclass(frozen=True)
class OtpRecord:
    identity: str
    code: str
    expires_at: float


def normalize_identity(raw_identity: str) -> str:
    return str(raw_identity or "").strip().casefold()


def generate_code() -> str:
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


class OtpStore:
    """Maps a normalized identity to its single live OTP record.

    The store never sweeps on its own: an expired record stays until a
    verification touches it or ``purge_expired`` is called.
    """

    def __init__(
        self,
        ttl_seconds: int = OTP_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] = generate_code,
    ):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._code_factory = code_factory
        self._records: Dict[str, OtpRecord] = {}
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _lock_for(self, identity: str) -> threading.Lock:
        return self._locks[hash(identity) % _LOCK_STRIPES]

    def issue(self, identity: str) -> str:
        key = normalize_identity(identity)
        record = OtpRecord(
            identity=key,
            code=self._code_factory(),
            expires_at=self._clock() + self._ttl_seconds,
        )
        with self._lock_for(key):
            self._records[key] = record
        return record.code

    def verify(self, identity: str, candidate_code: str) -> VerificationOutcome:
        key = normalize_identity(identity)
        candidate = str(candidate_code or "").strip()
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None:
                return VerificationOutcome.NO_RECORD
            if self._clock() > record.expires_at:
                del self._records[key]
                return VerificationOutcome.EXPIRED
            if not hmac.compare_digest(record.code.encode("utf-8"), candidate.encode("utf-8")):
                return VerificationOutcome.MISMATCH
            del self._records[key]
            return VerificationOutcome.VERIFIED

    def peek(self, identity: str) -> Optional[OtpRecord]:
        """Current record for ``identity``, read under its stripe lock. Does not consume it."""
        key = normalize_identity(identity)
        with self._lock_for(key):
            return self._records.get(key)

    def purge_expired(self) -> int:
        """Drop every record whose expiry instant has passed. Returns how many were dropped."""
        now = self._clock()
        purged = 0
        for key in list(self._records.keys()):
            with self._lock_for(key):
                record = self._records.get(key)
                if record is not None and now > record.expires_at:
                    del self._records[key]
                    purged += 1
        if purged:
            logger.info("Purged %d expired OTP record(s)", purged)
        return purged

    def __len__(self) -> int:
        return len(self._records)
