"""
Configuration management for Sandbox Sessions.

This module handles the loading, validation, and caching of library settings.
It enforces logical constraints (e.g., positive timeouts, absolute mount
paths) and reloads itself whenever Django's test utilities override the
``SANDBOX_SESSIONS`` setting.
"""

from datetime import timedelta

from django.conf import settings
from django.test.signals import setting_changed
from django.utils.module_loading import import_string
from django.utils.translation import gettext_lazy as _
from django.core.exceptions import ImproperlyConfigured


DEFAULTS = {
    # Transport
    "HEADER": "user-agent",
    "PATH": None,
    # Resources
    "REPO": "default",
    "SANDBOX": "sandbox_sessions.sandboxes.DatabaseSandbox",
    "CHECKOUT_OPTIONS": {},
    # Session Lifecycle
    "TIMEOUT": timedelta(seconds=15),
    "SLIDING_TIMEOUT": True,
    "LINK_OWNER": False,
    "OWNER_CHECK_INTERVAL": timedelta(seconds=1),
    "CALL_TIMEOUT": timedelta(seconds=5),
    "MAX_SESSIONS": None,
    # Error Policy
    "RAISE_ON_GRANT_ERROR": False,
}

IMPORT_STRINGS = ("SANDBOX",)

TYPE_VALIDATORS = {
    "HEADER": str,
    "PATH": (str, type(None)),
    "REPO": (str, list, tuple),
    "SANDBOX": (str, type),
    "CHECKOUT_OPTIONS": dict,
    "TIMEOUT": timedelta,
    "SLIDING_TIMEOUT": bool,
    "LINK_OWNER": bool,
    "OWNER_CHECK_INTERVAL": timedelta,
    "CALL_TIMEOUT": timedelta,
    "MAX_SESSIONS": (int, type(None)),
    "RAISE_ON_GRANT_ERROR": bool,
}

DURATION_SETTINGS = ("TIMEOUT", "OWNER_CHECK_INTERVAL", "CALL_TIMEOUT")


class SandboxSessionsSettings:
    """
    Lazy settings container for Sandbox Sessions.
    """

    __slots__ = ("_user_settings", "_cache")

    def __init__(self, user_settings=None):
        self._user_settings = user_settings or {}
        self._cache = {}
        self._validate_all()

    def _get_setting(self, setting_name: str):
        return self._user_settings.get(setting_name, DEFAULTS[setting_name])

    def __getattr__(self, setting_name: str):
        if setting_name not in DEFAULTS:
            raise AttributeError(_(f"Invalid setting: '{setting_name}'."))

        if setting_name in self._cache:
            return self._cache[setting_name]

        value = self._get_setting(setting_name)

        if setting_name in IMPORT_STRINGS and isinstance(value, str):
            value = self._import_from_string(setting_name, value)

        self._cache[setting_name] = value
        return value

    @property
    def repos(self) -> tuple:
        """The configured database aliases, always as a tuple."""
        repo = self.REPO
        return (repo,) if isinstance(repo, str) else tuple(repo)

    def _import_from_string(self, setting_name: str, path: str):
        try:
            return import_string(path)
        except ImportError as exc:
            raise ImproperlyConfigured(
                _(f"Could not import '{path}' for '{setting_name}'.")
            ) from exc

    def _validate_all(self):
        self._validate_unknown_settings()
        self._validate_primitive_types()
        self._validate_business_logic()

    def _validate_unknown_settings(self):
        unknown = sorted(set(self._user_settings) - set(DEFAULTS))
        if unknown:
            raise ImproperlyConfigured(_(f"Unknown settings: {', '.join(unknown)}."))

    def _validate_primitive_types(self):
        for setting_name, expected_types in TYPE_VALIDATORS.items():
            value = self._get_setting(setting_name)
            # bool is an int subclass; MAX_SESSIONS=True is a typo, not a cap.
            if isinstance(value, bool) and expected_types is not bool:
                raise ImproperlyConfigured(_(f"'{setting_name}' has invalid type."))
            if not isinstance(value, expected_types):
                raise ImproperlyConfigured(_(f"'{setting_name}' has invalid type."))

    def _validate_business_logic(self):
        self._validate_durations()
        self._validate_repo()
        self._validate_path()
        self._validate_session_cap()

    def _validate_durations(self):
        for setting_name in DURATION_SETTINGS:
            if self._get_setting(setting_name) <= timedelta(0):
                raise ImproperlyConfigured(_(f"{setting_name} must be positive."))

    def _validate_repo(self):
        repo = self._get_setting("REPO")
        aliases = [repo] if isinstance(repo, str) else list(repo)
        if not aliases:
            raise ImproperlyConfigured(_("REPO must name at least one database."))
        if not all(isinstance(alias, str) and alias for alias in aliases):
            raise ImproperlyConfigured(_("REPO entries must be non-empty strings."))

    def _validate_path(self):
        path = self._get_setting("PATH")
        if path is not None and not path.startswith("/"):
            raise ImproperlyConfigured(_("PATH must start with '/'."))

    def _validate_session_cap(self):
        max_sessions = self._get_setting("MAX_SESSIONS")
        if max_sessions is not None and max_sessions < 1:
            raise ImproperlyConfigured(_("MAX_SESSIONS must be at least 1."))

    def reload(self, new_user_settings=None):
        self._user_settings = new_user_settings or {}
        self._cache.clear()
        self._validate_all()


sandbox_sessions_settings = SandboxSessionsSettings(
    getattr(settings, "SANDBOX_SESSIONS", None)
)


def reload_sandbox_sessions_settings(*args, **kwargs):
    if kwargs.get("setting") == "SANDBOX_SESSIONS":
        sandbox_sessions_settings.reload(kwargs.get("value"))


setting_changed.connect(reload_sandbox_sessions_settings)
