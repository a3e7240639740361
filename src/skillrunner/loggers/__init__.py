"""Operational audit loggers."""

from .base import AuditLogger, NullAuditLogger
from .jsonl import JsonlAuditLogger

__all__ = ("AuditLogger", "NullAuditLogger", "JsonlAuditLogger")
