from django.conf import settings
from django.core.checks import Error, Warning, register

from sandbox_sessions.settings import sandbox_sessions_settings

MIDDLEWARE_PATH = "sandbox_sessions.middleware.SandboxMiddleware"


@register()
def check_middleware_order(app_configs, **kwargs):
    errors = []
    middleware = list(getattr(settings, "MIDDLEWARE", None) or [])

    if MIDDLEWARE_PATH in middleware and middleware[0] != MIDDLEWARE_PATH:
        errors.append(
            Warning(
                "SandboxMiddleware is not the first entry in MIDDLEWARE.",
                hint="Middleware listed before it may touch the database "
                "outside the sandboxed connection.",
                obj="settings.MIDDLEWARE",
                id="sandbox_sessions.W001",
            )
        )
    return errors


@register()
def check_repo_aliases(app_configs, **kwargs):
    errors = []
    databases = getattr(settings, "DATABASES", {})

    for alias in sandbox_sessions_settings.repos:
        if alias not in databases:
            errors.append(
                Error(
                    f"Database alias '{alias}' is not defined in DATABASES.",
                    hint="Fix settings.SANDBOX_SESSIONS['REPO'].",
                    obj="settings.SANDBOX_SESSIONS['REPO']",
                    id="sandbox_sessions.E001",
                )
            )
    return errors
