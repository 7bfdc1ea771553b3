from __future__ import annotations


class MementoError(Exception):
    status_code = 500


class ValidationError(MementoError):
    status_code = 400


class NotFoundError(MementoError):
    status_code = 404


class StoreUnavailable(MementoError):
    """Durable read or write of the subscriber store failed."""

    status_code = 500
