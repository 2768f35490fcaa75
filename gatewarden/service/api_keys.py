from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock, sha256_hex
from gatewarden.service.errors import (
    ExpiredError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.results import Outcome
from gatewarden.storage.errors import ConstraintViolation
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import ApiKey, SecurityEventType, Severity, utcnow

logger = get_logger(__name__)

AVAILABLE_SCOPES: Dict[str, Tuple[str, ...]] = {
    "threat-models": ("read", "write", "delete"),
    "findings": ("read", "write", "delete"),
    "reports": ("read", "generate"),
    "uploads": ("read", "write", "delete"),
    "admin": ("read", "write"),
}

_VISIBLE_KEY_CHARS = 6
_KEY_ATTEMPTS = 3


def known_scopes() -> set[str]:
    valid = {"*"}
    for resource, actions in AVAILABLE_SCOPES.items():
        valid.add(f"{resource}:*")
        valid.update(f"{resource}:{action}" for action in actions)
    return valid


def validate_scopes(scopes: Iterable[str]) -> Tuple[bool, List[str]]:
    valid = known_scopes()
    errors = [f"Invalid scope: {scope}" for scope in scopes if scope not in valid]
    return not errors, errors


def has_scope(scopes: Iterable[str], required: str) -> bool:
    """True for ``*``, the exact scope, or ``<resource>:*``.

    The ``<resource>:*`` wildcard is an extension beyond exact matching; it
    exists because ``validate_scopes`` accepts it when a key is issued.
    """
    granted = set(scopes)
    if "*" in granted or required in granted:
        return True
    resource = required.split(":", 1)[0]
    return f"{resource}:*" in granted


@dataclass(frozen=True)
class IssuedApiKey:
    """A key record plus its plaintext, which is never shown again."""

    record: ApiKey
    key: str


class ApiKeyRegistry:
    """Long-lived credentials stored only as SHA-256 digests."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        *,
        prefix: str = "gwk_",
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.prefix = prefix
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _new_key(self) -> str:
        return f"{self.prefix}{secrets.token_hex(32)}"

    def _display_prefix(self, key: str) -> str:
        return key[: len(self.prefix) + _VISIBLE_KEY_CHARS]

    async def generate_api_key(
        self,
        account_id: str,
        name: str,
        scopes: Optional[List[str]] = None,
        expires_in_days: Optional[int] = None,
    ) -> IssuedApiKey:
        scopes = list(scopes or [])
        ok, errors = validate_scopes(scopes)
        if not ok:
            raise ValidationError("invalid api key scopes", detail={"errors": errors})
        if not name or not name.strip():
            raise ValidationError("api key name is required")
        if expires_in_days is not None and expires_in_days <= 0:
            raise ValidationError("expires_in_days must be positive")
        if self.store.get_account(account_id) is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})

        now = self._now()
        expires_at = now + timedelta(days=expires_in_days) if expires_in_days else None
        for _ in range(_KEY_ATTEMPTS):
            key = self._new_key()
            try:
                record = self.store.create_api_key(
                    ApiKey(
                        account_id=account_id,
                        name=name.strip(),
                        key_hash=sha256_hex(key),
                        key_prefix=self._display_prefix(key),
                        scopes=scopes,
                        expires_at=expires_at,
                        created_at=now,
                    )
                )
                break
            except ConstraintViolation:
                logger.warning("api_key_hash_collision", account_id=account_id)
        else:
            raise ConstraintViolation("could not allocate a unique api key")

        await self.events.log_event(
            SecurityEventType.API_KEY_CREATED,
            Severity.LOW,
            f"API key created: {record.name}",
            account_id=account_id,
            metadata={
                "api_key_id": record.id,
                "name": record.name,
                "scopes": scopes,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return IssuedApiKey(record=record, key=key)

    async def validate_api_key(self, key: str) -> Outcome[ApiKey]:
        if not key or not key.startswith(self.prefix):
            return Outcome.fail(InvalidTokenError("Invalid API key"))
        record = self.store.get_api_key_by_hash(sha256_hex(key))
        if record is None or not record.is_active:
            return Outcome.fail(InvalidTokenError("Invalid API key"))

        now = self._now()
        if record.expires_at is not None and record.expires_at < now:
            await self.deactivate_api_key(record.id, "expired")
            return Outcome.fail(ExpiredError("API key has expired"))

        self.store.update_api_key(record.id, last_used_at=now)
        await self.events.log_event(
            SecurityEventType.API_KEY_USED,
            Severity.LOW,
            f"API key used: {record.name}",
            account_id=record.account_id,
            metadata={"api_key_id": record.id, "name": record.name},
        )
        return Outcome.ok(record)

    def list_api_keys(self, account_id: str) -> List[ApiKey]:
        """Records only; digests stay in the store layer's hands."""
        return self.store.list_api_keys(account_id)

    async def deactivate_api_key(self, key_id: str, reason: str = "user_request") -> ApiKey:
        record = self.store.get_api_key(key_id)
        if record is None:
            raise NotFoundError("API key not found", detail={"api_key_id": key_id})
        updated = self.store.update_api_key(
            key_id,
            is_active=False,
            deactivated_at=self._now(),
            deactivation_reason=reason,
        )
        await self.events.log_event(
            SecurityEventType.API_KEY_DELETED,
            Severity.MEDIUM,
            f"API key deactivated: {record.name}",
            account_id=record.account_id,
            metadata={"api_key_id": key_id, "name": record.name, "reason": reason},
        )
        return updated or record

    async def rotate_api_key(self, key_id: str) -> IssuedApiKey:
        record = self.store.get_api_key(key_id)
        if record is None:
            raise NotFoundError("API key not found", detail={"api_key_id": key_id})
        if not record.is_active:
            raise ValidationError("inactive API keys cannot be rotated", detail={"api_key_id": key_id})
        key = self._new_key()
        updated = self.store.update_api_key(
            key_id,
            key_hash=sha256_hex(key),
            key_prefix=self._display_prefix(key),
            last_used_at=None,
        )
        await self.events.log_event(
            SecurityEventType.API_KEY_ROTATED,
            Severity.MEDIUM,
            f"API key rotated: {record.name}",
            account_id=record.account_id,
            metadata={"api_key_id": key_id, "name": record.name},
        )
        return IssuedApiKey(record=updated or record, key=key)

    async def cleanup_expired_keys(self) -> int:
        deactivated = self.store.deactivate_expired_api_keys(self._now())
        if deactivated:
            logger.info("expired_api_keys_deactivated", count=deactivated)
        return deactivated

    @staticmethod
    def available_scopes() -> List[Dict[str, object]]:
        return [
            {"resource": resource, "actions": list(actions)}
            for resource, actions in AVAILABLE_SCOPES.items()
        ]
