"""
Physical restore of a full backup.
"""

from .executor import LOG_FILE_TARGET_MB, RestoreExecutor, RestorePlan

__all__ = ["LOG_FILE_TARGET_MB", "RestoreExecutor", "RestorePlan"]
