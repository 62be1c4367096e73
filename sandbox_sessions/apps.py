import atexit

from django.apps import AppConfig


class SandboxSessionsConfig(AppConfig):
    name = "sandbox_sessions"
    verbose_name = "Sandbox Sessions"

    def ready(self):
        # run extra user configuration checks
        import sandbox_sessions.checks  # noqa: F401

        # connections must be checked back in even if a test run is aborted
        from sandbox_sessions.broker import shutdown_broker

        atexit.register(shutdown_broker)
