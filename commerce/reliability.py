"""Reliability wrappers — fault isolation and graceful degradation.

Used around everything adjacent to the fulfillment transaction
(confirmation emails, monitoring lookups) so that their failure can never
roll back or block a committed order/entitlement. Never wrap the
fulfillment write itself in these.

- with_fallback(fn, fallback): run fn, substitute fallback on any error
- optional(fn): run a nice-to-have operation, log and continue on error
- isolate(fn, boundary_name, critical_error): like optional, but errors
  the classifier marks critical are re-raised
- Bulkhead: caps concurrent calls into one downstream dependency
- FeatureFlags: optional features that can be switched off at runtime

The bulkhead registry and the feature flags are built once per app in
init_app() and stored on app.extensions; handlers look them up through
get_bulkheads() / get_feature_flags().
"""

import logging
import threading

from flask import current_app

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Graceful degradation
# ──────────────────────────────────────────────

def with_fallback(fn, fallback, service_name="unknown", on_error=None):
    """Return fn() or `fallback` if it raises. Errors are logged, not raised."""
    try:
        return fn()
    except Exception as e:
        logger.warning(f"{service_name} failed, using fallback: {e}")
        if on_error:
            on_error(e)
        return fallback


def optional(fn, service_name="unknown", on_error=None):
    """Run a non-critical operation. Failures are logged and swallowed."""
    try:
        fn()
    except Exception as e:
        logger.warning(f"Optional operation {service_name} failed (non-critical): {e}")
        if on_error:
            on_error(e)


# ──────────────────────────────────────────────
# Fault isolation
# ──────────────────────────────────────────────

def isolate(fn, boundary_name, fallback=None, critical_error=None, on_error=None):
    """Contain errors raised by fn inside a named boundary.

    Errors for which `critical_error(error)` is true propagate; everything
    else is logged and `fallback` is returned.
    """
    try:
        return fn()
    except Exception as e:
        if critical_error is not None and critical_error(e):
            logger.error(f"Critical error in {boundary_name}, propagating: {e}")
            raise

        logger.error(f"Error in {boundary_name}: {e}", exc_info=True)
        if on_error:
            try:
                on_error(e)
            except Exception as handler_error:
                logger.error(f"Error handler failed for {boundary_name}: {handler_error}")
        return fallback


class BulkheadFull(Exception):
    """Raised when no slot frees up within the bulkhead's wait budget."""


class Bulkhead:
    """Limit concurrent calls into a downstream dependency.

    Callers beyond `max_concurrent` wait for a free slot; with `max_wait`
    set they give up after that many seconds with BulkheadFull.
    """

    def __init__(self, name, max_concurrent, max_wait=None):
        self.name = name
        self.max_concurrent = max_concurrent
        self.max_wait = max_wait
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._active = 0
        self._waiting = 0

    def execute(self, fn, *args, **kwargs):
        with self._lock:
            self._waiting += 1
        try:
            acquired = self._slots.acquire(timeout=self.max_wait)
        finally:
            with self._lock:
                self._waiting -= 1

        if not acquired:
            raise BulkheadFull(
                f"Bulkhead {self.name} full ({self.max_concurrent} in flight)"
            )

        with self._lock:
            self._active += 1
        try:
            return fn(*args, **kwargs)
        finally:
            with self._lock:
                self._active -= 1
            self._slots.release()

    @property
    def active_count(self):
        return self._active

    @property
    def queue_size(self):
        return self._waiting

    def stats(self):
        return {
            "name": self.name,
            "max_concurrent": self.max_concurrent,
            "active_count": self._active,
            "queue_size": self._waiting,
            "utilization_percent": (self._active / self.max_concurrent) * 100,
        }


class BulkheadRegistry:
    """Named bulkheads, created on first use."""

    def __init__(self, default_max_concurrent=10, max_wait=None):
        self.default_max_concurrent = default_max_concurrent
        self.max_wait = max_wait
        self._bulkheads = {}
        self._lock = threading.Lock()

    def get_or_create(self, name, max_concurrent=None):
        with self._lock:
            if name not in self._bulkheads:
                self._bulkheads[name] = Bulkhead(
                    name,
                    max_concurrent or self.default_max_concurrent,
                    max_wait=self.max_wait,
                )
            return self._bulkheads[name]

    def get(self, name):
        return self._bulkheads.get(name)

    def all_stats(self):
        return [b.stats() for b in self._bulkheads.values()]


# ──────────────────────────────────────────────
# Feature flags
# ──────────────────────────────────────────────

class FeatureFlags:
    """Runtime switches for optional features. Unknown features are off."""

    DEFAULTS = ("purchase_emails", "refund_emails", "resend_emails")

    def __init__(self, disabled=()):
        self._lock = threading.Lock()
        self._flags = {name: name not in disabled for name in self.DEFAULTS}

    def is_enabled(self, feature):
        return self._flags.get(feature, False)

    def enable(self, feature):
        with self._lock:
            self._flags[feature] = True
        logger.info(f"Feature enabled: {feature}")

    def disable(self, feature):
        with self._lock:
            self._flags[feature] = False
        logger.info(f"Feature disabled: {feature}")

    def all(self):
        return dict(self._flags)


def when_feature_enabled(flags, feature, fn, fallback=None):
    """Run fn only if `feature` is on. A failure switches the feature off."""
    if not flags.is_enabled(feature):
        logger.info(f"Feature {feature} disabled, skipping")
        return fallback

    try:
        return fn()
    except Exception as e:
        logger.warning(f"Feature {feature} failed, disabling: {e}")
        flags.disable(feature)
        return fallback


# ──────────────────────────────────────────────
# App wiring
# ──────────────────────────────────────────────

def init_app(app):
    """Build the per-process reliability objects and attach them to the app."""
    app.extensions["bulkheads"] = BulkheadRegistry(
        default_max_concurrent=app.config.get("EMAIL_MAX_CONCURRENT", 5),
        max_wait=app.config.get("EMAIL_QUEUE_TIMEOUT"),
    )
    app.extensions["feature_flags"] = FeatureFlags(
        disabled=app.config.get("FEATURE_FLAGS_DISABLED", []),
    )


def get_bulkheads():
    return current_app.extensions["bulkheads"]


def get_feature_flags():
    return current_app.extensions["feature_flags"]
