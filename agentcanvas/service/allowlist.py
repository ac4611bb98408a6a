from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from agentcanvas.logging import get_logger, redact_email
from agentcanvas.service.errors import StaticAllowlistEntryError
from agentcanvas.service.validation import normalize_email
from agentcanvas.storage.atomic import AtomicOps
from agentcanvas.storage.kv import KVStore
from agentcanvas.storage.models import AllowlistEntry

logger = get_logger(__name__)

ALLOWLIST_KEY_PREFIX = "allowlist:"
ALLOWLIST_INDEX_KEY = "allowlist:index"
STATIC_ADDED_BY = "system"


def _entry_key(email: str) -> str:
    return f"{ALLOWLIST_KEY_PREFIX}{email}"


class AllowlistGate:
    """Sign-in gate: the static ``ALLOWED_EMAILS`` list union the dynamic store.

    Static entries double as the administrator set and can never be removed
    through the API. Dynamic entries live under ``allowlist:<email>`` with
    the set ``allowlist:index`` listing them.
    """

    def __init__(
        self,
        store: KVStore,
        ops: AtomicOps,
        *,
        static_emails: Iterable[str] = (),
        super_admin_emails: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.ops = ops
        self.static_emails: List[str] = []
        for email in static_emails:
            normalized = normalize_email(email)
            if normalized and normalized not in self.static_emails:
                self.static_emails.append(normalized)
        self.super_admin_emails = {normalize_email(e) for e in super_admin_emails if e}

    def is_static(self, email: str) -> bool:
        return normalize_email(email) in self.static_emails

    def is_admin(self, email: Optional[str]) -> bool:
        return bool(email) and self.is_static(email)

    def is_super_admin(self, email: Optional[str]) -> bool:
        return bool(email) and normalize_email(email) in self.super_admin_emails

    async def is_allowed(self, email: str) -> bool:
        normalized = normalize_email(email)
        if normalized in self.static_emails:
            return True
        return await self.store.get(_entry_key(normalized)) is not None

    async def add(self, email: str, added_by: Optional[str]) -> bool:
        """Add a dynamic entry; False when the address is already stored."""
        normalized = normalize_email(email)
        entry = AllowlistEntry(
            email=normalized,
            added_at=datetime.now(timezone.utc).isoformat(),
            added_by=added_by or "unknown",
        )
        payload = json.dumps(
            {"email": entry.email, "addedAt": entry.added_at, "addedBy": entry.added_by}
        )
        created = await self.ops.set_if_absent_indexed(
            _entry_key(normalized), payload, ALLOWLIST_INDEX_KEY, normalized
        )
        if created:
            logger.info("allowlist_entry_added", subject=redact_email(normalized))
        return created

    async def remove(self, email: str) -> bool:
        """Remove a dynamic entry; False when absent.

        Raises ``StaticAllowlistEntryError`` without touching the store when
        the address is configured statically.
        """
        normalized = normalize_email(email)
        if normalized in self.static_emails:
            raise StaticAllowlistEntryError()
        removed = await self.ops.delete_indexed(
            _entry_key(normalized), ALLOWLIST_INDEX_KEY, normalized
        )
        if removed:
            logger.info("allowlist_entry_removed", subject=redact_email(normalized))
        return removed

    async def _dynamic_entries(self) -> List[AllowlistEntry]:
        entries: List[AllowlistEntry] = []
        for member in sorted(await self.store.smembers(ALLOWLIST_INDEX_KEY)):
            raw = await self.store.get(_entry_key(member))
            if raw is None:
                # Index outlived its entry; drop the member unless it was re-added meanwhile
                if await self.ops.prune_index(_entry_key(member), ALLOWLIST_INDEX_KEY, member):
                    logger.info("allowlist_index_repaired", subject=redact_email(member))
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning("allowlist_entry_corrupt", subject=redact_email(member))
                data = {}
            entries.append(
                AllowlistEntry(
                    email=member,
                    added_at=data.get("addedAt"),
                    added_by=data.get("addedBy"),
                    source="kv",
                )
            )
        return entries

    async def list(self) -> List[AllowlistEntry]:
        """Static entries first, then dynamic ones newest first."""
        dynamic = await self._dynamic_entries()
        by_email = {entry.email: entry for entry in dynamic}
        static: List[AllowlistEntry] = []
        for email in self.static_emails:
            if email in by_email:
                by_email[email].source = "both"
            else:
                static.append(
                    AllowlistEntry(email=email, added_at=None, added_by=STATIC_ADDED_BY, source="env")
                )
        entries = dynamic + static
        entries.sort(key=lambda e: e.added_at or "", reverse=True)
        entries.sort(key=lambda e: e.source != "env")
        return entries


__all__ = ["AllowlistGate", "ALLOWLIST_KEY_PREFIX", "ALLOWLIST_INDEX_KEY"]
