"""
Diagnostic channel for recovered decode failures.

Decoders never swallow a problem silently: anything they skip or work
around is reported here and echoed to the module logger of the stage that
raised it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class DiagnosticEvent:
    level: int
    stage: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self):
        return f"[{self.stage}] {self.message}"


class Diagnostics:
    """Collects DiagnosticEvents and forwards them to logging."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.events: List[DiagnosticEvent] = []
        self.logger = logger

    def report(self, level: int, stage: str, message: str, **context):
        event = DiagnosticEvent(level, stage, message, context)
        self.events.append(event)
        logger = self.logger or logging.getLogger(f"tyasset.{stage}")
        logger.log(level, message)
        return event

    def debug(self, stage: str, message: str, **context):
        return self.report(logging.DEBUG, stage, message, **context)

    def info(self, stage: str, message: str, **context):
        return self.report(logging.INFO, stage, message, **context)

    def warning(self, stage: str, message: str, **context):
        return self.report(logging.WARNING, stage, message, **context)

    def error(self, stage: str, message: str, **context):
        return self.report(logging.ERROR, stage, message, **context)

    def by_level(self, level: int) -> List[DiagnosticEvent]:
        return [e for e in self.events if e.level >= level]

    @property
    def warnings(self) -> List[DiagnosticEvent]:
        return self.by_level(logging.WARNING)

    def __len__(self):
        return len(self.events)
