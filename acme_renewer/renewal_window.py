"""
Module containing the renewal window evaluator

A renewal window is the [start, end) interval suggested by an ACME server
(draft-ietf-acme-ari) to renew a certificate. should_renew_at() picks a random
instant within the window and decides if the caller should renew now, wait till
that instant or not renew at all.
"""
import random
from datetime import timedelta

from acme_renewer.x509 import utc

ONE_MICROSECOND = timedelta(microseconds=1)


class RenewalWindow:
    """Half-open [start, end) interval of aware UTC datetimes"""
    def __init__(self, start, end):
        start = utc(start)
        end = utc(end)
        if end < start:
            start, end = end, start
        self.start = start
        self.end = end

    @property
    def duration(self):
        """Length of the window"""
        return self.end - self.start

    def random_instant(self, rng=None):
        """Uniformly random instant within [start, end). start is returned for empty windows"""
        if rng is None:
            rng = random
        span = self.duration // ONE_MICROSECOND
        if span <= 0:
            return self.start
        return self.start + timedelta(microseconds=rng.randrange(span))

    def __eq__(self, other):
        if not isinstance(other, RenewalWindow):
            return NotImplemented
        return (self.start, self.end) == (other.start, other.end)

    def __repr__(self):
        return f'RenewalWindow(start={self.start.isoformat()}, end={self.end.isoformat()})'


def should_renew_at(window, now, max_wait, rng=None):
    """
    Returns the instant when the certificate should be renewed or None if the
    caller isn't willing to wait max_wait till the instant picked within window.
      - the picked instant is in the past: now is returned (renew immediately)
      - the picked instant is beyond now + max_wait: None is returned
      - otherwise the picked instant is returned
    """
    now = utc(now)
    renewal_time = window.random_instant(rng)

    if renewal_time <= now:
        return now

    if renewal_time > now + max_wait:
        return None

    return renewal_time


class RenewalInfo:
    """Renewal information provided by the ACME server for a certificate"""
    def __init__(self, window, explanation_url=None):
        self.window = window
        self.explanation_url = explanation_url

    def should_renew_at(self, now, max_wait, rng=None):
        """Shortcut for should_renew_at(self.window, now, max_wait, rng)"""
        return should_renew_at(self.window, now, max_wait, rng=rng)

    def __repr__(self):
        return f'RenewalInfo(window={self.window!r}, explanation_url={self.explanation_url!r})'
