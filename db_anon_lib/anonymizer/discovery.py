"""Find anonymizable models by importing the packages that define them.

Every module below each configured package is imported and its classes are
checked for the Anonymizable capability. Discovery is best effort: a module
that fails to import is recorded in the DiscoveryLog and skipped.
"""

import importlib
import inspect
import logging
import pkgutil
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapper

from .contract import Anonymizable
from .errors import DiscoveryLog, SkipReason

logger = logging.getLogger(__name__)


def model_identifier(model: type) -> str:
    """Fully-qualified name of a model, e.g. "app.models.user.User"."""
    return f"{model.__module__}.{model.__qualname__}"


def matches_selector(model: type, selector: str) -> bool:
    """A selector names a model by identifier or by bare class name."""
    return selector in (model_identifier(model), model.__name__)


def matches_any(model: type, selectors: Iterable[str]) -> bool:
    return any(matches_selector(model, s) for s in selectors)


def is_mapped(model: type) -> bool:
    """Check that a class is mapped by SQLAlchemy."""
    return isinstance(sa_inspect(model, raiseerr=False), Mapper)


def is_anonymizable_model(obj: object) -> bool:
    """Check whether obj is a concrete mapped class with the Anonymizable capability."""
    return (
        inspect.isclass(obj)
        and obj is not Anonymizable
        and issubclass(obj, Anonymizable)
        and is_mapped(obj)
    )


def _iter_module_names(package_name: str, log: DiscoveryLog) -> List[str]:
    try:
        package = importlib.import_module(package_name)
    except Exception as e:
        log.skip(SkipReason.IMPORT_ERROR, package_name, f"{type(e).__name__}: {e}")
        return []

    names = [package.__name__]
    if hasattr(package, "__path__"):
        for info in pkgutil.walk_packages(
            package.__path__,
            prefix=package.__name__ + ".",
            onerror=lambda name: None,  # re-imported and logged below
        ):
            names.append(info.name)
    return names


def discover_models(
    packages: Sequence[str],
    log: Optional[DiscoveryLog] = None,
) -> List[type]:
    """Import every module under the given packages and collect anonymizable models.

    Args:
        packages: Dotted package (or module) names, e.g. ["app.models"]
        log: Optional collector for skipped modules

    Returns:
        Models in discovery order, each listed once. Only classes defined in
        the scanned modules are returned, not ones they import.
    """
    log = log if log is not None else DiscoveryLog()
    found: List[type] = []

    for package_name in packages:
        for module_name in _iter_module_names(package_name, log):
            try:
                module = importlib.import_module(module_name)
            except Exception as e:
                log.skip(SkipReason.IMPORT_ERROR, module_name, f"{type(e).__name__}: {e}")
                continue

            try:
                members = inspect.getmembers(module, inspect.isclass)
            except Exception as e:
                log.skip(SkipReason.INSPECT_ERROR, module_name, f"{type(e).__name__}: {e}")
                continue

            for _, obj in members:
                if obj.__module__ != module.__name__:
                    continue
                if is_anonymizable_model(obj) and obj not in found:
                    found.append(obj)

    logger.debug(
        "Discovered %d anonymizable models in %s (%d modules skipped)",
        len(found), ", ".join(packages), len(log.issues),
    )
    return found
