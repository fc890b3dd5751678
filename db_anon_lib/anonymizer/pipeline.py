"""Orchestrates an anonymization run.

Order of work:
    1. environment guard (may decline; nothing is written)
    2. discovery of anonymizable models (or an explicit model list)
    3. run plan: priority models in configured order, then the rest
    4. each model, one chunk at a time, through the AnonymizationEngine

Models are processed strictly one after another and chunks strictly in
sequence. A failing model stops the run; chunks already committed stay
committed.
"""

import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

from faker import Faker
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import sessionmaker

from ..report import ModelReport, RunReport, RunStatus
from .contract import Anonymizable, implements_rewrite
from .discovery import discover_models, is_mapped, matches_any, matches_selector, model_identifier
from .engine import AnonymizationEngine
from .errors import ContractError, DiscoveryLog, InvalidModelError, ModelProcessingError
from .guard import ConfirmFn, EnvironmentGuard
from .settings import AnonymizeSettings

logger = logging.getLogger(__name__)


@dataclass
class RunPlan:
    """Models to process, priority ones first."""
    priority: List[type] = field(default_factory=list)
    remainder: List[type] = field(default_factory=list)

    @property
    def models(self) -> List[type]:
        return self.priority + self.remainder

    def __iter__(self) -> Iterator[Tuple[type, bool]]:
        for model in self.priority:
            yield model, True
        for model in self.remainder:
            yield model, False

    def __len__(self) -> int:
        return len(self.priority) + len(self.remainder)


def build_run_plan(
    discovered: Sequence[type],
    priority_models: Sequence[str] = (),
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
) -> RunPlan:
    """Filter discovered models and order them.

    include narrows the set (when given), exclude always removes. Priority
    selectors that don't name an eligible model are ignored. Remaining models
    keep their discovery order.
    """
    eligible = [
        m for m in discovered
        if (not include or matches_any(m, include)) and not matches_any(m, exclude or ())
    ]

    for selector in include or ():
        if not any(matches_selector(m, selector) for m in discovered):
            logger.warning("Model %r was requested but not discovered", selector)

    priority: List[type] = []
    for selector in priority_models:
        match = next((m for m in eligible if matches_selector(m, selector)), None)
        if match is None:
            logger.debug("Priority model %r is not part of this run", selector)
            continue
        if match not in priority:
            priority.append(match)

    remainder = [m for m in eligible if m not in priority]
    return RunPlan(priority=priority, remainder=remainder)


def make_faker(settings: AnonymizeSettings) -> Faker:
    """Fake value generator for one run."""
    faker = Faker(settings.locale)
    if settings.seed is not None:
        faker.seed_instance(settings.seed)
    return faker


class RunListener:
    """Receives progress events. The default implementation only logs."""

    def phase(self, message: str):
        logger.info(message)

    def model_started(self, report: ModelReport):
        logger.info("Anonymizing data of %s table (%d records)", report.table, report.total)

    def chunk_committed(self, report: ModelReport, size: int):
        logger.debug("%s: %d/%d", report.model, report.processed, report.total)

    def model_finished(self, report: ModelReport):
        logger.info("%s completed in %s", report.model, report.duration)


class AnonymizationPipeline:
    """Runs anonymization over every eligible model.

    Usage:
        settings = load_settings("anonymize.yml")
        with Database.from_settings(settings) as db:
            pipeline = AnonymizationPipeline(settings, db.session_factory)
            report = pipeline.run(exclude=["AuditLog"])
            pipeline.print_summary(report)
    """

    def __init__(
        self,
        settings: AnonymizeSettings,
        session_factory: sessionmaker,
        models: Optional[Sequence[type]] = None,
        guard: Optional[EnvironmentGuard] = None,
        faker: Optional[Faker] = None,
        listener: Optional[RunListener] = None,
        confirm_fn: Optional[ConfirmFn] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.guard = guard or EnvironmentGuard.from_settings(settings, confirm_fn=confirm_fn)
        self.faker = faker or make_faker(settings)
        self.engine = AnonymizationEngine(session_factory, self.faker, settings.chunk_size)
        self.listener = listener or RunListener()
        self.discovery_log = DiscoveryLog()

        # Explicit model list; discovery is used when None
        self._models = list(models) if models is not None else None
        self._cancel = threading.Event()

    def discover(self) -> List[type]:
        """Models available to this pipeline, in discovery order."""
        if self._models is not None:
            return list(self._models)
        return discover_models(self.settings.model_packages, log=self.discovery_log)

    def plan(
        self,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
    ) -> RunPlan:
        return build_run_plan(
            self.discover(),
            priority_models=self.settings.priority_models,
            include=include,
            exclude=exclude,
        )

    def cancel(self):
        """Stop the run at the next chunk boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def validate_model(self, model: object):
        """Fail fast if model can't be anonymized.

        Raises:
            InvalidModelError: not a mapped Anonymizable class, or composite key
            ContractError: to_anonymize() not implemented
        """
        if not inspect.isclass(model):
            raise InvalidModelError(repr(model), "not a class")
        name = model_identifier(model)
        if not is_mapped(model):
            raise InvalidModelError(name, "not a mapped SQLAlchemy class")
        if not issubclass(model, Anonymizable):
            raise InvalidModelError(name, "does not inherit Anonymizable")
        if not implements_rewrite(model):
            raise ContractError(name, "to_anonymize() is not implemented")
        self.engine.primary_key(model)

    def run(
        self,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> RunReport:
        """Run anonymization and return the report.

        Args:
            include: Only these models (identifier or class name), if given
            exclude: Never these models
            force: Skip the confirmation prompt in restricted environments
        """
        report = RunReport(environment=self.settings.environment)

        proceed = self.guard.confirm_to_proceed(
            f'Environment "{self.settings.environment}" restricted.',
            self.guard.is_restricted,
            force=force,
        )
        if not proceed:
            report.status = RunStatus.ABORTED
            return report

        start = time.perf_counter()
        plan = self.plan(include, exclude)
        report.skipped_modules = [issue.to_dict() for issue in self.discovery_log.issues]
        self.listener.phase("Models data anonymization process has started.")

        for model, is_priority in plan:
            if self.cancelled:
                report.status = RunStatus.CANCELLED
                break

            if is_priority and model is plan.priority[0]:
                self.listener.phase("Anonymizing priority models.")
            elif plan.priority and plan.remainder and model is plan.remainder[0]:
                self.listener.phase("Anonymizing non-priority models.")

            model_report = ModelReport(model=model_identifier(model), priority=is_priority)
            report.models.append(model_report)
            try:
                self._process_model(model, model_report)
            except ModelProcessingError as e:
                logger.error("Anonymization of %s failed: %s", e.model, e.__cause__)
                report.status = RunStatus.FAILED
                report.failed_model = e.model
                report.error = str(e.__cause__ or e)
                break

            if self.cancelled and model_report.processed < model_report.total:
                report.status = RunStatus.CANCELLED
                break

        report.seconds = time.perf_counter() - start
        if report.status == RunStatus.COMPLETED:
            self.listener.phase(f"Anonymization done in {report.duration}")
        return report

    def _process_model(self, model: type, report: ModelReport):
        start = time.perf_counter()
        try:
            self.validate_model(model)
            report.table = getattr(sa_inspect(model).local_table, "name", None)
            report.total = self.engine.count(model)
            self.listener.model_started(report)

            def committed(size: int) -> bool:
                report.processed += size
                report.chunks += 1
                self.listener.chunk_committed(report, size)
                return not self.cancelled

            if report.total:
                self.engine.for_each_chunk(model, self.engine.anonymize_chunk, on_commit=committed)
        except Exception as e:
            raise ModelProcessingError(report.model, report.processed) from e
        finally:
            # Models with no records are charged no time
            if report.total:
                report.seconds = time.perf_counter() - start

        self.listener.model_finished(report)

    def print_summary(self, report: RunReport):
        """Print run summary."""
        print("\n" + "=" * 50)
        print(f"Anonymization {report.status.value.capitalize()}")
        print("=" * 50)
        print(f"Environment:        {report.environment}")
        print(f"Models processed:   {len(report.models)}")
        print(f"Records processed:  {report.processed}")
        print(f"Chunks committed:   {report.chunks}")
        print(f"Duration:           {report.duration}")
        if report.failed_model:
            print(f"Failed model:       {report.failed_model}")
            print(f"Error:              {report.error}")

        if self.discovery_log.issues:
            print(f"\nModules skipped during discovery: {len(self.discovery_log.issues)}")
            for issue in self.discovery_log.issues[:5]:
                print(f"  - {issue.module} ({issue.reason.value})")
