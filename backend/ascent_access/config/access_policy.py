"""
Access policy configuration loader.

Loads named route guards, platform flag defaults and the onboarding grace
window from config/access_policy.yml.

Consumers:
  - AccessEngine: onboarding grace window, named guards
  - TenantFlagSource / LaunchDarklyFlagSource: platform flag defaults
  - Access API routes: Retry-After for pending decisions

Usage:
    from ascent_access.config.access_policy import get_access_policy_loader

    loader = get_access_policy_loader()
    spec = loader.get_guard("advisor_dashboard")
    grace = loader.get_onboarding_grace()   # timedelta(minutes=5)
"""

import logging
import os
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

from ascent_access.platform.access_policy import RouteGuardSpec
from ascent_access.platform.errors import UnknownGuardError

logger = logging.getLogger(__name__)

_FALLBACK_ONBOARDING_GRACE_MINUTES = 5
_FALLBACK_RETRY_AFTER_SECONDS = 2

CONFIG_PATH_ENV = "ACCESS_POLICY_CONFIG"


class AccessPolicyLoader:
    """
    Thread-safe singleton loader for config/access_policy.yml.

    Guards are parsed once per load; a malformed guard is skipped with an
    error log rather than failing the whole file.
    """

    _instance: Optional["AccessPolicyLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv(CONFIG_PATH_ENV)
        self._raw: Dict[str, Any] = {}
        self._guards: Dict[str, RouteGuardSpec] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "access_policy.yml",
            Path(os.getcwd()) / "config" / "access_policy.yml",
            Path(os.getcwd()) / ".." / "config" / "access_policy.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"access_policy.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading access policy from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning("access_policy.yml not found, using fallback defaults")
                self._raw = {}

            self._guards = self._parse_guards(self._raw.get("guards") or {})
            logger.info(
                "Loaded access policy: guards=%s, flag_defaults=%d",
                sorted(self._guards),
                len(self.get_flag_defaults()),
            )

    @staticmethod
    def _parse_guards(raw_guards: Dict[str, Any]) -> Dict[str, RouteGuardSpec]:
        guards: Dict[str, RouteGuardSpec] = {}
        for name, body in raw_guards.items():
            try:
                guards[name] = RouteGuardSpec.build(
                    allowed_roles=body.get("allowed_roles") or [],
                    required_flag=body.get("required_flag"),
                    requires_onboarding_check=bool(body.get("requires_onboarding_check", False)),
                    name=name,
                    role_redirect_path=body.get("role_redirect_path"),
                )
            except (ValueError, AttributeError) as e:
                logger.error("Skipping malformed guard %s: %s", name, e)
        return guards

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get_guard(self, name: str) -> RouteGuardSpec:
        """
        Return a named guard.

        Raises:
            UnknownGuardError: If no guard with that name is configured
        """
        guard = self._guards.get(name)
        if guard is None:
            raise UnknownGuardError(name)
        return guard

    def get_guards(self) -> Dict[str, RouteGuardSpec]:
        return dict(self._guards)

    def get_flag_defaults(self) -> Dict[str, bool]:
        return {str(k): bool(v) for k, v in (self._raw.get("flag_defaults") or {}).items()}

    def get_onboarding_grace(self) -> timedelta:
        minutes = self._raw.get("onboarding_grace_minutes", _FALLBACK_ONBOARDING_GRACE_MINUTES)
        return timedelta(minutes=float(minutes))

    def get_pending_retry_after(self) -> int:
        return int(self._raw.get("pending_retry_after_seconds", _FALLBACK_RETRY_AFTER_SECONDS))


def get_access_policy_loader(config_path: Optional[str] = None) -> AccessPolicyLoader:
    """Get the global access policy loader."""
    return AccessPolicyLoader(config_path)
