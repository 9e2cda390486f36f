from __future__ import annotations

import re
import string
from typing import Any, Dict, Iterable, List, Optional

import idna
import phonenumbers
from phonenumbers.phonenumberutil import NumberParseException

from ..logging import get_logger
from ..models import HandleSet
from .fetch import RowFetcher, StoreQuery
from .schema import SchemaCache, SchemaCapabilities

logger = get_logger("chatvault.store.identity")

LIKE_ESCAPE = "\\"
_TYPE_PREFIX = re.compile(r"^[EPS]:(?=.)")
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def ascii_lower(value: str) -> str:
    """Lower-case ASCII letters only, the way SQLite's lower() does."""
    return value.translate(_ASCII_LOWER)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input only ever matches literally."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def normalize_phone(value: str, default_region: str | None = None) -> str:
    cleaned = _TYPE_PREFIX.sub("", value.strip())
    parsed = phonenumbers.parse(cleaned, default_region or None)
    if not phonenumbers.is_valid_number(parsed):
        raise ValueError(f"Invalid phone number: {value}")
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_email(value: str) -> str:
    cleaned = _TYPE_PREFIX.sub("", value.strip())
    if "@" not in cleaned:
        raise ValueError(f"Invalid email address: {value}")
    local, domain = cleaned.split("@", 1)
    ascii_domain = idna.encode(domain.strip()).decode("ascii")
    return f"{local.strip().lower()}@{ascii_domain.lower()}"


def candidate_identifiers(participant: str, default_region: str | None = None) -> List[str]:
    """The participant as typed plus its canonical phone/email forms."""
    raw = participant.strip()
    candidates = [raw]
    stripped = _TYPE_PREFIX.sub("", raw)
    if stripped != raw:
        candidates.append(stripped)
    if "@" in stripped:
        try:
            candidates.append(normalize_email(stripped))
        except (ValueError, UnicodeError):
            logger.debug("email_normalization_failed", participant=raw)
    elif any(ch.isdigit() for ch in stripped):
        try:
            candidates.append(normalize_phone(stripped, default_region=default_region))
        except (NumberParseException, ValueError):
            logger.debug("phone_normalization_failed", participant=raw)
    return _unique(candidates)


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


class IdentityResolver:
    """Maps a participant string onto the handle ids recorded in the store.

    Strategies run in order and the first non-empty answer wins: exact handle
    (expanded through person_centric_id when available), chat display name,
    handle substring, and finally the input itself.
    """

    def __init__(
        self,
        fetch: RowFetcher,
        schema_cache: SchemaCache,
        *,
        substring_cap: int = 10,
        default_region: str | None = "US",
    ) -> None:
        self._fetch = fetch
        self._schema_cache = schema_cache
        self._substring_cap = substring_cap
        self._default_region = default_region

    async def resolve_handles(self, participant: str, store_path: str) -> HandleSet:
        query = participant.strip()
        if not query:
            return HandleSet(query=participant, handles=[participant], strategy="fallback")

        capabilities = await self._schema_cache.capabilities(store_path, self._fetch)

        exact = await self._match_exact(query, capabilities, store_path)
        if exact is not None:
            return exact

        by_chat = await self._match_chat_name(query, store_path)
        if by_chat:
            return HandleSet(query=query, handles=by_chat, strategy="chat_name")

        by_substring = await self._match_substring(query, store_path)
        if by_substring:
            return HandleSet(query=query, handles=by_substring, strategy="substring")

        logger.info("identity_unresolved", participant=query)
        return HandleSet(query=query, handles=[query], strategy="fallback")

    async def _match_exact(
        self, query: str, capabilities: SchemaCapabilities, store_path: str
    ) -> Optional[HandleSet]:
        candidates = [ascii_lower(value) for value in candidate_identifiers(query, self._default_region)]
        placeholders = ", ".join("?" for _ in candidates)
        person_column = "person_centric_id" if capabilities.person_centric_id else "NULL"
        clauses = [f"lower(id) IN ({placeholders})"]
        params: List[Any] = list(candidates)
        if capabilities.uncanonicalized_id:
            clauses.append(f"lower(uncanonicalized_id) IN ({placeholders})")
            params.extend(candidates)

        rows = await self._fetch(
            StoreQuery(
                f"SELECT id, {person_column} AS person_centric_id FROM handle "
                f"WHERE {' OR '.join(clauses)} ORDER BY id",
                params,
                "identity_exact",
            ),
            store_path,
        )
        handles = _unique(row.get("id") for row in rows)
        if not handles:
            return None

        person_ids = _unique(row.get("person_centric_id") for row in rows)
        if person_ids:
            placeholders = ", ".join("?" for _ in person_ids)
            grouped = await self._fetch(
                StoreQuery(
                    f"SELECT id FROM handle WHERE person_centric_id IN ({placeholders}) ORDER BY id",
                    person_ids,
                    "identity_person",
                ),
                store_path,
            )
            expanded = _unique([*handles, *(row.get("id") for row in grouped)])
            if len(expanded) > len(handles):
                return HandleSet(query=query, handles=sorted(expanded), strategy="person")
        return HandleSet(query=query, handles=handles, strategy="handle")

    async def _match_chat_name(self, query: str, store_path: str) -> List[str]:
        rows = await self._fetch(
            StoreQuery(
                """
                SELECT DISTINCT h.id AS id
                FROM chat c
                JOIN chat_handle_join chj ON chj.chat_id = c.ROWID
                JOIN handle h ON h.ROWID = chj.handle_id
                WHERE lower(c.display_name) = lower(?)
                ORDER BY h.id
                """,
                (query,),
                "identity_chat_name",
            ),
            store_path,
        )
        return _unique(row.get("id") for row in rows)

    async def _match_substring(self, query: str, store_path: str) -> List[str]:
        pattern = f"%{escape_like(ascii_lower(query))}%"
        rows = await self._fetch(
            StoreQuery(
                "SELECT DISTINCT id FROM handle WHERE lower(id) LIKE ? ESCAPE ? ORDER BY id LIMIT ?",
                (pattern, LIKE_ESCAPE, self._substring_cap),
                "identity_substring",
            ),
            store_path,
        )
        return _unique(row.get("id") for row in rows)


__all__ = [
    "IdentityResolver",
    "LIKE_ESCAPE",
    "ascii_lower",
    "candidate_identifiers",
    "escape_like",
    "normalize_email",
    "normalize_phone",
]
