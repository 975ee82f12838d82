"""Audit logging."""

from daybook.logs.logger import JsonlLogger

__all__ = ["JsonlLogger"]
