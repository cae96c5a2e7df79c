"""Consent ledger: which scopes a subject approved for a client.

Keyed by (subject_id, client_id) with upsert semantics. A missing entry
always means "no consent".
"""

import logging
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from oauth.stores import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentGrant:
    subject_id: str
    client_id: str
    scopes: frozenset
    remember: bool
    granted_at: int

    def covers(self, scopes: Iterable[str]) -> bool:
        return self.scopes.issuperset(scopes)


class ConsentLedger:
    def __init__(self):
        self._grants: dict[tuple, ConsentGrant] = {}
        self._locks = KeyedLocks()

    def has_consent(self, subject_id: str, client_id: str, scopes: Iterable[str]) -> bool:
        grant = self._grants.get((subject_id, client_id))
        return grant is not None and grant.covers(scopes)

    def get(self, subject_id: str, client_id: str) -> Optional[ConsentGrant]:
        return self._grants.get((subject_id, client_id))

    def grant(self, subject_id: str, client_id: str, scopes: Iterable[str], remember: bool) -> ConsentGrant:
        """Record consent, replacing any earlier grant for the same pair."""
        key = (subject_id, client_id)
        grant = ConsentGrant(
            subject_id=subject_id,
            client_id=client_id,
            scopes=frozenset(scopes),
            remember=remember,
            granted_at=int(time.time()),
        )
        with self._locks(key):
            self._grants[key] = grant
        logger.info(f"[CONSENT] {subject_id} granted {sorted(grant.scopes)} to {client_id} (remember={remember})")
        return grant

    def revoke(self, subject_id: str, client_id: str) -> bool:
        key = (subject_id, client_id)
        with self._locks(key):
            removed = self._grants.pop(key, None)
        if removed:
            logger.info(f"[CONSENT] Consent revoked: {subject_id} / {client_id}")
        return removed is not None

    def discard_transient(self, subject_id: str, client_id: str) -> None:
        """Drop a grant that was not meant to be remembered, once used."""
        key = (subject_id, client_id)
        with self._locks(key):
            grant = self._grants.get(key)
            if grant is not None and not grant.remember:
                del self._grants[key]

    def grants_for(self, subject_id: str) -> list[ConsentGrant]:
        return [g for (s, _), g in list(self._grants.items()) if s == subject_id]
