"""
In-memory sandbox used across the test suite.

Records every call so tests can assert on checkout/checkin balance and on
which threads were granted access.
"""

import itertools
import threading

from sandbox_sessions.base.sandbox import BaseSandbox


class CheckoutRefused(Exception):
    pass


class Handle:
    _ids = itertools.count(1)

    def __init__(self, alias):
        self.alias = alias
        self.id = next(self._ids)

    def __repr__(self):
        return f"Handle({self.alias!r}, {self.id})"


class RecordingSandbox(BaseSandbox):
    def __init__(self, refuse=(), fail_checkin=False, fail_allow=False, gate=None):
        self.refuse = set(refuse)
        self.fail_checkin = fail_checkin
        self.fail_allow = fail_allow
        self.gate = gate
        self.events = []
        self._lock = threading.Lock()

    def _record(self, *event):
        with self._lock:
            self.events.append(event)

    def _count(self, kind):
        with self._lock:
            return sum(1 for event in self.events if event[0] == kind)

    @property
    def checkouts(self):
        return self._count("checkout")

    @property
    def checkins(self):
        return self._count("checkin")

    def grants(self):
        with self._lock:
            return [event for event in self.events if event[0] == "allow"]

    def releases(self):
        with self._lock:
            return [event for event in self.events if event[0] == "release"]

    def checkout(self, alias, **options):
        if self.gate is not None:
            self.gate.wait(5)
        if alias in self.refuse:
            raise CheckoutRefused(alias)
        handle = Handle(alias)
        self._record("checkout", alias, handle, options)
        return handle

    def checkin(self, alias, handle):
        self._record("checkin", alias, handle)
        if self.fail_checkin:
            raise RuntimeError("checkin refused")

    def allow(self, alias, handle, grantee):
        if self.fail_allow:
            raise RuntimeError("allow refused")
        self._record("allow", alias, handle, grantee)

    def release(self, alias, handle, grantee):
        self._record("release", alias, handle, grantee)
