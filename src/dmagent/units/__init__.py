"""Automation unit discovery and execution."""

from .cache import CatalogCache
from .catalog import FileSystemCatalog, UnitCatalog, format_unit_catalog, missing_mandatory_params
from .errors import UnitError, UnitExecutionError, UnitNotFoundError, UnitTimeoutError
from .harness import UnitRunner, sweep_stale_scripts
from .models import Entry, ParamDetail, UnitInfo

__all__ = [
    "CatalogCache",
    "Entry",
    "FileSystemCatalog",
    "ParamDetail",
    "UnitCatalog",
    "UnitError",
    "UnitExecutionError",
    "UnitInfo",
    "UnitNotFoundError",
    "UnitRunner",
    "UnitTimeoutError",
    "format_unit_catalog",
    "missing_mandatory_params",
    "sweep_stale_scripts",
]
