from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatewarden.config import get_settings, reset_settings_cache
from gatewarden.logging import get_logger
from gatewarden.service.activity import ActivityTracker
from gatewarden.service.api_keys import ApiKeyRegistry
from gatewarden.service.auth import AuthService
from gatewarden.service.common import PolicyResolver
from gatewarden.service.devices import DeviceRegistry
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.lockout import CredentialGuard
from gatewarden.service.notifications import EmailNotifier
from gatewarden.service.password_reset import PasswordResetFlow
from gatewarden.service.passwords import PasswordHashing
from gatewarden.service.rate_limit import (
    CounterStore,
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
)
from gatewarden.service.scheduler import SweepScheduler
from gatewarden.service.sessions import SessionRegistry
from gatewarden.service.sso import SSOCorrelator
from gatewarden.service.stats import SecurityStats
from gatewarden.service.two_factor import SecondFactorIssuer
from gatewarden.storage.memory import MemoryStore
from gatewarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore()
        self.cache: Optional[RedisCache] = None
        counters: CounterStore = InMemoryCounterStore()
        if self.settings.use_redis_rate_limits and self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
                counters = RedisCounterStore(cache)
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limit counters are process-local; limits apply per instance.",
                )

        self.policies = PolicyResolver(self.store, self.settings)
        self.hashing = PasswordHashing()
        self.notifier = EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.events = SecurityEventLog(self.store)
        self.rate_limiter = RateLimiter(counters)
        self.sessions = SessionRegistry(self.store, self.events, self.policies)
        self.guard = CredentialGuard(
            self.store, self.events, self.sessions, self.policies, self.notifier
        )
        self.activity = ActivityTracker(
            self.store,
            self.events,
            self.sessions,
            self.policies,
            inactive_cutoff_minutes=self.settings.inactive_session_cutoff_minutes,
        )
        self.devices = DeviceRegistry(
            self.store,
            self.events,
            self.sessions,
            fingerprint_secret=self.settings.device_fingerprint_secret,
        )
        self.two_factor = SecondFactorIssuer(
            self.store,
            self.events,
            self.policies,
            self.notifier,
            code_ttl_minutes=self.settings.two_factor_code_ttl_minutes,
        )
        self.api_keys = ApiKeyRegistry(
            self.store, self.events, prefix=self.settings.api_key_prefix
        )
        self.password_reset = PasswordResetFlow(
            self.store,
            self.events,
            self.sessions,
            self.policies,
            self.notifier,
            self.hashing,
            token_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.sso = SSOCorrelator(self.store, self.events)
        self.stats = SecurityStats(self.store)
        self.auth = AuthService(
            self.store,
            self.events,
            self.policies,
            self.rate_limiter,
            self.guard,
            self.sessions,
            self.devices,
            self.activity,
            self.two_factor,
            self.api_keys,
            self.hashing,
        )
        self.scheduler = SweepScheduler.standard(
            activity=self.activity,
            sessions=self.sessions,
            guard=self.guard,
            password_reset=self.password_reset,
            two_factor=self.two_factor,
            api_keys=self.api_keys,
            devices=self.devices,
            session_interval_seconds=self.settings.session_sweep_interval_seconds,
            maintenance_interval_seconds=self.settings.maintenance_sweep_interval_seconds,
            device_interval_seconds=self.settings.device_sweep_interval_seconds,
            device_inactive_days=self.settings.device_inactive_days,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.is_configured,
            sweeps=self.scheduler.names(),
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
