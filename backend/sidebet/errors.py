"""Exceptions raised by rule services when a request cannot produce a record."""

from __future__ import annotations


class SideBetError(Exception):
    """Base class for rule failures surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(SideBetError):
    status_code = 404


class PermissionDeniedError(SideBetError):
    status_code = 403


class RuleViolationError(SideBetError):
    status_code = 400


__all__ = ["SideBetError", "NotFoundError", "PermissionDeniedError", "RuleViolationError"]
