from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock
from gatewarden.service.errors import NotFoundError, ValidationError
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.sessions import SessionRegistry
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    Device,
    DeviceType,
    SecurityEventType,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str
    ip_address: str
    location: Optional[str] = None
    device_name: Optional[str] = None
    # Random value the client keeps across visits (cookie or app install id)
    device_salt: Optional[str] = None


def detect_device_type(user_agent: str) -> DeviceType:
    ua = user_agent.lower()
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return DeviceType.MOBILE
    if "tablet" in ua or "ipad" in ua:
        return DeviceType.TABLET
    if any(marker in ua for marker in ("desktop", "windows", "mac", "linux")):
        return DeviceType.DESKTOP
    return DeviceType.UNKNOWN


def detect_browser(user_agent: str) -> str:
    ua = user_agent.lower()
    # Edge and Opera also claim Chrome, and Chrome also claims Safari
    for marker, name in (
        ("edg", "Edge"),
        ("opr", "Opera"),
        ("opera", "Opera"),
        ("chrome", "Chrome"),
        ("firefox", "Firefox"),
        ("safari", "Safari"),
    ):
        if marker in ua:
            return name
    return "Unknown"


def detect_os(user_agent: str) -> str:
    ua = user_agent.lower()
    if "windows" in ua:
        return "Windows"
    if "iphone" in ua or "ipad" in ua:
        return "iOS"
    if "android" in ua:
        return "Android"
    if "mac" in ua:
        return "macOS"
    if "linux" in ua:
        return "Linux"
    return "Unknown"


def device_name(user_agent: str) -> str:
    return (
        f"{detect_browser(user_agent)} on {detect_os(user_agent)} "
        f"({detect_device_type(user_agent).value})"
    )


def device_fingerprint(secret: str, user_agent: str, ip_address: str, salt: str) -> str:
    """Pure function of stable connection attributes; same inputs, same id."""
    material = "\x1f".join((user_agent, ip_address, salt)).encode()
    return hmac.new(secret.encode(), material, hashlib.sha256).hexdigest()


class DeviceRegistry:
    """Fingerprints client devices and tracks owner trust."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        sessions: SessionRegistry,
        *,
        fingerprint_secret: str,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.sessions = sessions
        self._secret = fingerprint_secret
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _salt_for(self, account_id: str, info: DeviceInfo) -> str:
        if info.device_salt:
            # Scoped so two accounts sharing a browser never share a device id
            return f"{account_id}:{info.device_salt}"
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        if account.device_salt:
            return account.device_salt
        salt = secrets.token_hex(16)
        self.store.update_account(account_id, device_salt=salt)
        return salt

    def fingerprint(self, account_id: str, info: DeviceInfo) -> str:
        return device_fingerprint(
            self._secret, info.user_agent, info.ip_address, self._salt_for(account_id, info)
        )

    async def register_device(self, account_id: str, info: DeviceInfo) -> Device:
        device_id = self.fingerprint(account_id, info)
        now = self._now()
        existing = self.store.get_device(device_id)
        if existing is not None:
            # Removed devices come back untrusted
            updated = self.store.update_device(
                device_id,
                last_active_at=now,
                ip_address=info.ip_address,
                location=info.location or existing.location,
                is_active=True,
            )
            return updated or existing

        device = self.store.upsert_device(
            Device(
                id=device_id,
                account_id=account_id,
                device_type=detect_device_type(info.user_agent),
                name=info.device_name or device_name(info.user_agent),
                browser=detect_browser(info.user_agent),
                os=detect_os(info.user_agent),
                user_agent=info.user_agent,
                ip_address=info.ip_address,
                location=info.location,
                created_at=now,
                last_active_at=now,
            )
        )
        await self.events.log_event(
            SecurityEventType.DEVICE_REGISTERED,
            Severity.LOW,
            f"New device registered: {device.name}",
            account_id=account_id,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
            metadata={
                "device_id": device.id,
                "device_type": device.device_type.value,
                "browser": device.browser,
                "os": device.os,
            },
        )
        return device

    def _owned_device(self, device_id: str, account_id: str) -> Device:
        device = self.store.get_device(device_id)
        if device is None or device.account_id != account_id:
            raise NotFoundError("device not found", detail={"device_id": device_id})
        return device

    def get_user_devices(self, account_id: str, include_inactive: bool = False) -> List[Device]:
        return self.store.list_devices(account_id, include_inactive=include_inactive)

    async def trust_device(self, device_id: str, account_id: str) -> Device:
        device = self._owned_device(device_id, account_id)
        if not device.is_active:
            raise ValidationError("removed devices cannot be trusted", detail={"device_id": device_id})
        if device.is_trusted:
            return device
        device = self.store.update_device(device_id, is_trusted=True) or device
        await self.events.log_event(
            SecurityEventType.DEVICE_TRUSTED,
            Severity.LOW,
            f"Device marked as trusted: {device.name}",
            account_id=account_id,
            metadata={"device_id": device_id},
        )
        return device

    async def remove_device(self, device_id: str, account_id: str) -> int:
        """Deactivate the device and end its sessions; returns the sessions ended."""
        device = self._owned_device(device_id, account_id)
        self.store.update_device(
            device_id, is_active=False, is_trusted=False, last_active_at=self._now()
        )
        terminated = await self.sessions.terminate_device_sessions(device_id, account_id)
        await self.events.log_event(
            SecurityEventType.DEVICE_REMOVED,
            Severity.MEDIUM,
            f"Device removed: {device.name}",
            account_id=account_id,
            metadata={
                "device_id": device_id,
                "device_name": device.name,
                "terminated_sessions": terminated,
            },
        )
        return terminated

    def is_device_trusted(self, device_id: str) -> bool:
        device = self.store.get_device(device_id)
        return bool(device and device.is_active and device.is_trusted)

    async def update_device_activity(
        self, device_id: str, location: Optional[str] = None
    ) -> Device:
        changes: dict = {"last_active_at": self._now()}
        if location:
            changes["location"] = location
        device = self.store.update_device(device_id, **changes)
        if device is None:
            raise NotFoundError("device not found", detail={"device_id": device_id})
        return device

    async def cleanup_inactive_devices(self, days_inactive: int = 90) -> int:
        cutoff = self._now() - timedelta(days=days_inactive)
        deactivated = self.store.deactivate_devices_inactive_since(cutoff)
        if deactivated:
            logger.info("inactive_devices_deactivated", count=deactivated, days=days_inactive)
        return deactivated
