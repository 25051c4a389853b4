"""
Custom route decorators for request identity.

- subject_required: ensures the upstream auth layer identified the caller
  (X-Subject-Id header) and exposes it as g.subject_id.
"""

from functools import wraps

from flask import g, request

from checkout_broker.errors import SubjectRequired

SUBJECT_HEADER = "X-Subject-Id"


def subject_required(f):
    """Require an authenticated subject for the request."""

    @wraps(f)
    def decorated(*args, **kwargs):
        subject_id = (request.headers.get(SUBJECT_HEADER) or "").strip()
        if not subject_id:
            raise SubjectRequired(f"Missing {SUBJECT_HEADER} header")
        g.subject_id = subject_id
        return f(*args, **kwargs)

    return decorated
