"""
Feature flags for Ascent using LaunchDarkly.

CRITICAL REQUIREMENTS:
- Flags are tri-state: UNKNOWN until the source has answered, then ENABLED
  or DISABLED. UNKNOWN never means "off" - a guard waiting on a flag is
  Pending, not denied and not allowed.
- Within one decision a flag is read exactly once (FeatureFlagState snapshot).
- Push is preferred over polling: LaunchDarkly streaming updates are applied
  to the evaluator cache as they arrive.
- All flag usage MUST go through this module.

Resolution order for a flag value:
1. FEATURE_FLAG_<NAME> environment override (advisor.dashboard ->
   FEATURE_FLAG_ADVISOR_DASHBOARD)
2. The configured FeatureFlagSource (LaunchDarkly, or tenant overrides)

Usage:
    from ascent_access.platform.feature_flags import FeatureFlagEvaluator, FeatureFlag

    evaluator = FeatureFlagEvaluator(source)
    state = evaluator.snapshot([FeatureFlag.ADVISOR_DASHBOARD], tenant_id="uni_123")
    if state.get(FeatureFlag.ADVISOR_DASHBOARD) is FlagState.ENABLED:
        ...
"""

import asyncio
import logging
import os
import threading
from abc import ABC, abstractmethod
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import ldclient
from ldclient import Context
from ldclient.config import Config

from ascent_access.platform.errors import SourceUnavailableError

logger = logging.getLogger(__name__)

# Tenant key used for B2C callers with no university
GLOBAL_TENANT = "b2c_default"


class FeatureFlag(str, Enum):
    """
    Enumeration of known feature flags.

    Keep in sync with LaunchDarkly configuration and config/access_policy.yml.
    """
    ADVISOR_DASHBOARD = "advisor.dashboard"
    UNIVERSITY_PORTAL = "university.portal"
    AI_COACH = "ai.coach"


class FlagState(str, Enum):
    """Tri-state flag result."""
    UNKNOWN = "unknown"
    ENABLED = "enabled"
    DISABLED = "disabled"

    @classmethod
    def from_bool(cls, value: Optional[bool]) -> "FlagState":
        if value is None:
            return cls.UNKNOWN
        return cls.ENABLED if value else cls.DISABLED


FlagName = Union[FeatureFlag, str]


def _flag_key(flag: FlagName) -> str:
    return flag.value if isinstance(flag, FeatureFlag) else str(flag)


def _env_override(flag: FlagName) -> Optional[bool]:
    """Read FEATURE_FLAG_<NAME> from the environment, if set."""
    env_name = "FEATURE_FLAG_" + "".join(
        c if c.isalnum() else "_" for c in _flag_key(flag)
    ).upper()
    raw = os.getenv(env_name)
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


class FeatureFlagState(Mapping):
    """
    Read-only view of flag states taken once per evaluation.

    Flags not in the snapshot read as UNKNOWN.
    """

    def __init__(self, states: Dict[str, FlagState]):
        self._states = MappingProxyType(dict(states))

    def __getitem__(self, key: FlagName) -> FlagState:
        return self._states[_flag_key(key)]

    def __iter__(self):
        return iter(self._states)

    def __len__(self) -> int:
        return len(self._states)

    def get(self, key: FlagName, default: FlagState = FlagState.UNKNOWN) -> FlagState:
        return self._states.get(_flag_key(key), default)

    def __repr__(self) -> str:
        return f"FeatureFlagState({dict(self._states)!r})"


# ============================================================================
# Flag sources
# ============================================================================


class FeatureFlagSource(ABC):
    """
    External source of raw flag values.

    get() returns None while the source has no answer yet and raises
    SourceUnavailableError when the source fails.
    """

    @abstractmethod
    def get(self, flag: str, tenant_id: str) -> Optional[bool]:
        """Return the raw flag value for a tenant."""

    def subscribe(self, callback) -> None:
        """Register callback(flag_key) for pushed changes. Optional."""

    def close(self) -> None:
        """Release source resources."""


class TenantFlagSource(FeatureFlagSource):
    """
    In-process flag source with per-tenant overrides.

    Resolution order:
    1. Tenant override (if the tenant has an explicit override)
    2. Platform default
    3. False
    """

    def __init__(self, platform_defaults: Optional[Dict[str, bool]] = None):
        self._lock = threading.Lock()
        self._platform: Dict[str, bool] = dict(platform_defaults or {})
        self._overrides: Dict[Tuple[str, str], bool] = {}
        self._listeners = []

    def get(self, flag: str, tenant_id: str) -> Optional[bool]:
        with self._lock:
            override = self._overrides.get((tenant_id, flag))
            if override is not None:
                return override
            return self._platform.get(flag, False)

    def set_platform_flag(self, flag: FlagName, enabled: bool) -> None:
        with self._lock:
            self._platform[_flag_key(flag)] = enabled
        self._notify(_flag_key(flag))

    def set_tenant_override(self, tenant_id: str, flag: FlagName, enabled: bool) -> None:
        with self._lock:
            self._overrides[(tenant_id, _flag_key(flag))] = enabled
        logger.info(
            "Tenant flag override set",
            extra={"tenant_id": tenant_id, "flag": _flag_key(flag), "enabled": enabled},
        )
        self._notify(_flag_key(flag))

    def clear_tenant_override(self, tenant_id: str, flag: FlagName) -> None:
        with self._lock:
            self._overrides.pop((tenant_id, _flag_key(flag)), None)
        self._notify(_flag_key(flag))

    def subscribe(self, callback) -> None:
        self._listeners.append(callback)

    def _notify(self, flag: str) -> None:
        for callback in list(self._listeners):
            callback(flag)


class LaunchDarklyFlagSource(FeatureFlagSource):
    """
    LaunchDarkly streaming source with graceful degradation.

    If LAUNCHDARKLY_SDK_KEY is not set, every flag resolves to its configured
    platform default. If the SDK is configured but has not finished
    initializing, flags resolve to None (UNKNOWN) until the stream connects.
    """

    def __init__(
        self,
        sdk_key: Optional[str] = None,
        platform_defaults: Optional[Dict[str, bool]] = None,
    ):
        self._sdk_key = sdk_key if sdk_key is not None else os.getenv("LAUNCHDARKLY_SDK_KEY")
        self._defaults = dict(platform_defaults or {})
        self._client = None
        self._initialized = False
        self._init_lock = threading.Lock()
        self._pending_listeners = []

    def _initialize(self) -> None:
        """Lazy initialization of the LaunchDarkly client."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return

            if not self._sdk_key:
                logger.warning(
                    "LAUNCHDARKLY_SDK_KEY not set - feature flags will use defaults"
                )
                self._initialized = True
                return

            try:
                # Streaming keeps flag changes flowing to the evaluator cache
                config = Config(
                    sdk_key=self._sdk_key,
                    stream=True,
                    initial_reconnect_delay=0.1,
                )
                ldclient.set_config(config)
                self._client = ldclient.get()
                for callback in self._pending_listeners:
                    self._attach_listener(callback)

                if self._client.is_initialized():
                    logger.info("LaunchDarkly client initialized successfully")
                else:
                    logger.warning("LaunchDarkly client not yet initialized - flags are unknown")
            except Exception as e:
                logger.error(
                    "Failed to initialize LaunchDarkly client",
                    extra={"error": str(e)},
                )
                raise SourceUnavailableError("feature_flags", reason=str(e)) from e

            self._initialized = True

    def _build_context(self, tenant_id: str) -> Context:
        """Tenant-level targeting context."""
        return Context.builder(tenant_id).kind("organization").set("tenant_id", tenant_id).build()

    def get(self, flag: str, tenant_id: str) -> Optional[bool]:
        self._initialize()

        if not self._client:
            logger.debug(
                "Feature flag check without client - using default",
                extra={"flag": flag, "default": self._defaults.get(flag, False)},
            )
            return self._defaults.get(flag, False)

        if not self._client.is_initialized():
            return None

        try:
            result = self._client.variation(flag, self._build_context(tenant_id), None)
        except Exception as e:
            logger.error(
                "Feature flag evaluation failed",
                extra={"flag": flag, "tenant_id": tenant_id, "error": str(e)},
            )
            raise SourceUnavailableError("feature_flags", reason=str(e)) from e

        logger.debug(
            "Feature flag evaluated",
            extra={"flag": flag, "tenant_id": tenant_id, "result": result},
        )
        if result is None:
            return self._defaults.get(flag, False)
        return bool(result)

    def subscribe(self, callback) -> None:
        if self._client is None:
            self._pending_listeners.append(callback)
            return
        self._attach_listener(callback)

    def _attach_listener(self, callback) -> None:
        self._client.flag_tracker.add_listener(lambda change: callback(change.key))

    def close(self) -> None:
        """Close the LaunchDarkly client."""
        if self._client:
            try:
                self._client.close()
            except Exception as e:
                logger.error("Failed to close LaunchDarkly client", extra={"error": str(e)})


# ============================================================================
# Evaluator
# ============================================================================


class FeatureFlagEvaluator:
    """
    Non-blocking tri-state flag evaluator with a push-updated cache.

    evaluate() only reads the cache; refresh() and pushed updates fill it.
    A flag that has never been resolved for a tenant is UNKNOWN.
    """

    def __init__(self, source: FeatureFlagSource):
        self._source = source
        self._lock = threading.Lock()
        self._cache: Dict[Tuple[str, str], FlagState] = {}
        source.subscribe(self._on_source_change)

    @property
    def source(self) -> FeatureFlagSource:
        return self._source

    def evaluate(self, flag: FlagName, tenant_id: Optional[str] = None) -> FlagState:
        """Return the current state of a flag without touching the source."""
        override = _env_override(flag)
        if override is not None:
            return FlagState.from_bool(override)
        with self._lock:
            return self._cache.get((tenant_id or GLOBAL_TENANT, _flag_key(flag)), FlagState.UNKNOWN)

    def apply_update(self, flag: FlagName, value: Optional[bool], tenant_id: Optional[str] = None) -> None:
        """Apply a pushed value. None resets the flag to UNKNOWN."""
        key = (tenant_id or GLOBAL_TENANT, _flag_key(flag))
        with self._lock:
            if value is None:
                self._cache.pop(key, None)
            else:
                self._cache[key] = FlagState.from_bool(value)

    def refresh(self, flags: Iterable[FlagName], tenant_id: Optional[str] = None) -> None:
        """
        Pull the given flags from the source into the cache.

        Raises:
            SourceUnavailableError: If the source fails, whatever it raised
        """
        tenant = tenant_id or GLOBAL_TENANT
        for flag in flags:
            name = _flag_key(flag)
            if _env_override(name) is not None:
                continue
            try:
                value = self._source.get(name, tenant)
            except SourceUnavailableError:
                raise
            except Exception as e:
                logger.error(
                    "Feature flag source failed",
                    extra={"flag": name, "tenant_id": tenant, "error": str(e)},
                    exc_info=True,
                )
                raise SourceUnavailableError("feature_flags", reason=str(e)) from e
            self.apply_update(name, value, tenant)

    def snapshot(
        self,
        flags: Iterable[FlagName],
        tenant_id: Optional[str] = None,
        refresh_missing: bool = True,
    ) -> FeatureFlagState:
        """
        Take a consistent, read-only view of the given flags.

        Flags still UNKNOWN are pulled from the source first when
        refresh_missing is set.

        Raises:
            SourceUnavailableError: If a refresh was needed and the source failed
        """
        names = [_flag_key(f) for f in flags]
        if refresh_missing:
            missing = [n for n in names if self.evaluate(n, tenant_id) is FlagState.UNKNOWN]
            if missing:
                self.refresh(missing, tenant_id)
        return FeatureFlagState({n: self.evaluate(n, tenant_id) for n in names})

    async def resolve(
        self,
        flags: Iterable[FlagName],
        tenant_id: Optional[str] = None,
    ) -> FeatureFlagState:
        """
        Async snapshot. Source reads for missing flags run off the event loop.

        Raises:
            SourceUnavailableError: If the source failed
        """
        names = [_flag_key(f) for f in flags]
        missing = [n for n in names if self.evaluate(n, tenant_id) is FlagState.UNKNOWN]
        if missing:
            await asyncio.to_thread(self.refresh, missing, tenant_id)
        return self.snapshot(names, tenant_id, refresh_missing=False)

    def _on_source_change(self, flag: str) -> None:
        """Re-read a changed flag for every tenant that has it cached."""
        with self._lock:
            tenants = [t for (t, name) in self._cache if name == flag]
        for tenant in tenants:
            try:
                self.apply_update(flag, self._source.get(flag, tenant), tenant)
            except SourceUnavailableError:
                logger.warning(
                    "Pushed flag change could not be re-read - marking unknown",
                    extra={"flag": flag, "tenant_id": tenant},
                )
                self.apply_update(flag, None, tenant)
