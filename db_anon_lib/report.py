from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """How an anonymization run ended"""
    COMPLETED = "completed"
    ABORTED = "aborted"      # declined at the environment guard, nothing written
    FAILED = "failed"        # a model raised; earlier chunks stay committed
    CANCELLED = "cancelled"  # stopped at a chunk boundary on request


class ModelReport(BaseModel):
    """Outcome for one model"""
    model:str
    table:Optional[str] = None
    total:int = 0
    processed:int = 0
    chunks:int = 0
    seconds:float = 0.0
    priority:bool = False

    @property
    def duration(self) -> str:
        return format_duration(self.seconds)


class RunReport(BaseModel):
    status:RunStatus = RunStatus.COMPLETED
    environment:Optional[str] = None
    models:List[ModelReport] = Field(default_factory=list)
    seconds:float = 0.0
    failed_model:Optional[str] = None
    error:Optional[str] = None
    skipped_modules:List[Dict[str, str]] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(m.processed for m in self.models)

    @property
    def chunks(self) -> int:
        return sum(m.chunks for m in self.models)

    @property
    def duration(self) -> str:
        return format_duration(self.seconds)

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.FAILED:
            return 1
        if self.status == RunStatus.CANCELLED:
            return 130
        return 0

    def get_model(self, model:str) -> Optional[ModelReport]:
        for m in self.models:
            if m.model == model:
                return m
        return None

    def write(self, path:Path|str):
        """Write the report as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))


def load_run_report(path:Path|str) -> RunReport:
    return RunReport.model_validate_json(Path(path).read_text())


_UNITS = [("d", 86400), ("h", 3600), ("m", 60), ("s", 1)]


def format_duration(seconds:float, parts:int = 3) -> str:
    """Short human readable duration with at most `parts` units, e.g. "1h 2m 3s".

    Durations under a second are shown in milliseconds.
    """
    if seconds < 1:
        return f"{int(round(seconds * 1000))}ms"

    remaining = int(round(seconds))
    pieces = []
    for unit, size in _UNITS:
        value, remaining = divmod(remaining, size)
        if value:
            pieces.append(f"{value}{unit}")
        if len(pieces) == parts:
            break
    return " ".join(pieces)
