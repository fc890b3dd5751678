"""Database anonymization package."""

from .contract import RELATIONS_KEY, Anonymizable, SoftDeleteMixin, install_soft_delete_filter
from .db import Database
from .discovery import discover_models, model_identifier
from .engine import AnonymizationEngine
from .guard import EnvironmentGuard
from .pipeline import AnonymizationPipeline, RunPlan, build_run_plan
from .settings import AnonymizeSettings, load_settings

__all__ = [
    "RELATIONS_KEY",
    "Anonymizable",
    "SoftDeleteMixin",
    "install_soft_delete_filter",
    "Database",
    "discover_models",
    "model_identifier",
    "AnonymizationEngine",
    "EnvironmentGuard",
    "AnonymizationPipeline",
    "RunPlan",
    "build_run_plan",
    "AnonymizeSettings",
    "load_settings",
]
