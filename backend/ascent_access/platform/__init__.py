"""
Platform-level modules for access control.

This package contains:
- access_policy: Guard specs, decisions and the decision function
- feature_flags: Tri-state feature flag evaluation (LaunchDarkly)
- impersonation: Session-scoped impersonation overlay store
- guard: Guard pipeline and per-caller access session
- errors: Consistent error handling

Import from the submodules directly; this package does not re-export them.
"""
