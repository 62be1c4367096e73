"""
Constants for the sandbox session lifecycle.

A session moves strictly forward through its states; the stop reason records
which teardown path returned its connections to the pool.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class SESSION_STATE(models.TextChoices):
    """
    Lifecycle states of a sandbox session.

    Attributes:
        STARTING: Connections are being checked out.
        ACTIVE: Connections are held and may be granted to other threads.
        STOPPED: Connections have been checked back in.
    """

    STARTING = "starting", _("Starting")
    ACTIVE = "active", _("Active")
    STOPPED = "stopped", _("Stopped")


class STOP_REASON(models.TextChoices):
    """Why a session was torn down."""

    STOPPED = "stopped", _("Stopped")
    TIMEOUT = "timeout", _("Timed out")
    OWNER_DOWN = "owner_down", _("Owner terminated")
    SHUTDOWN = "shutdown", _("Shutdown")
    ERROR = "error", _("Error")
