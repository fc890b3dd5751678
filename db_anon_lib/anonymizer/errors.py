"""Errors raised by the anonymization engine, and the discovery issue log.

Hierarchy:
- AnonymizeError: base for everything raised on purpose
- ConfigurationError: settings file missing, unreadable or invalid
- InvalidModelError: selected type is not a mapped, anonymizable class
- ContractError: a model's to_anonymize() output can't be applied
- ModelProcessingError: wraps any failure while a model was being processed
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class AnonymizeError(Exception):
    """Base class for anonymization errors."""


class ConfigurationError(AnonymizeError):
    """Settings could not be loaded or validated."""


class InvalidModelError(AnonymizeError):
    """A type selected for anonymization is not usable as a record type."""

    def __init__(self, model: str, reason: str):
        self.model = model
        self.reason = reason
        super().__init__(f"Invalid model class: {model} ({reason})")


class ContractError(AnonymizeError):
    """A model does not honour the anonymization contract."""

    def __init__(self, model: str, message: str):
        self.model = model
        super().__init__(f"{model}: {message}")


class ModelProcessingError(AnonymizeError):
    """Processing of one model failed; the current chunk was rolled back."""

    def __init__(self, model: str, processed: int = 0):
        self.model = model
        self.processed = processed
        super().__init__(f"Anonymization of {model} failed after {processed} records")


class SkipReason(str, Enum):
    """Why discovery passed over a module."""
    IMPORT_ERROR = "import_error"
    INSPECT_ERROR = "inspect_error"


@dataclass
class DiscoveryIssue:
    """A module that discovery could not inspect."""
    reason: SkipReason
    module: str
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, str]:
        return {
            "reason": self.reason.value,
            "module": self.module,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class DiscoveryLog:
    """Collects modules skipped while scanning for anonymizable models.

    Skips are never fatal; they are kept here so callers can show them
    on request.

    Usage:
        log = DiscoveryLog()
        models = discover_models(["app.models"], log=log)
        for issue in log.issues:
            print(issue.module, issue.message)
    """

    def __init__(self):
        self._issues: List[DiscoveryIssue] = []

    def skip(self, reason: SkipReason, module: str, message: str):
        """Record a skipped module."""
        logger.debug("Skipping %s (%s): %s", module, reason.value, message)
        self._issues.append(DiscoveryIssue(reason=reason, module=module, message=message))

    @property
    def issues(self) -> List[DiscoveryIssue]:
        return self._issues

    def get_summary(self) -> Dict[str, int]:
        """Get count of skipped modules by reason."""
        summary: Dict[str, int] = {}
        for issue in self._issues:
            key = issue.reason.value
            summary[key] = summary.get(key, 0) + 1
        return summary

    def find(self, module: str) -> Optional[DiscoveryIssue]:
        for issue in self._issues:
            if issue.module == module:
                return issue
        return None
