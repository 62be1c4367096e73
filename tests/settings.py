import os
import tempfile

SECRET_KEY = "sandbox-sessions-tests"

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "sandbox_sessions",
]

# File-backed so connections opened on different threads see the same data.
SANDBOX_DATABASE = os.path.join(
    tempfile.gettempdir(), f"sandbox-sessions-tests-{os.getpid()}.sqlite3"
)

DATABASES = {
    "default": {"ENGINE": "django.db.backends.sqlite3", "NAME": ":memory:"},
    "sandbox": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": SANDBOX_DATABASE,
        "TEST": {"NAME": SANDBOX_DATABASE},
    },
}

MIDDLEWARE = ["sandbox_sessions.middleware.SandboxMiddleware"]

ROOT_URLCONF = "tests.urls"

USE_TZ = True

SANDBOX_SESSIONS = {
    "PATH": "/sandbox",
    "SANDBOX": "tests.sandboxes.RecordingSandbox",
}
