"""
Error Handling and Logging Infrastructure for Site Ingestion

This module provides the package logger setup, the run logger of ensemble
ingestion and the exception hierarchy raised by readers, the harmonization
engine and the ensemble collector.

Error taxonomy:
- IngestError: base class, carries a context dictionary and timestamp
- ConfigurationError, UnknownSourceError, UnknownVariableError: caller
  mistakes, raised before any reader is called
- ReaderError and subclasses: raised by Source Readers
- SourceReadError: wraps a ReaderError inside the site pipeline
- InsufficientDataError: a quality filter cannot estimate its band
- CancelledError: a site was not processed before the global timeout
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_ingest_logging(log_level: str = "INFO",
                         log_file: Optional[str] = None,
                         console_output: bool = True) -> logging.Logger:
    """
    Configure the 'site_ingest' package logger.

    Handlers installed by an earlier call are closed and replaced, so
    repeated calls (one per ensemble run) do not duplicate output.

    Args:
        log_level: Level name ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Optional log file path; it receives every record down to DEBUG
        console_output: Whether to log to stdout at log_level

    Returns:
        logging.Logger: The package logger
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level '{log_level}'")

    logger = logging.getLogger('site_ingest')
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers = []
    if console_output:
        handlers.append((logging.StreamHandler(sys.stdout), level))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append((logging.FileHandler(log_path), logging.DEBUG))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler, handler_level in handlers:
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def describe_error(error: BaseException) -> str:
    """One-line description of an error: 'ErrorClass: message'."""
    return f"{type(error).__name__}: {error}"


class ProcessingLogger:
    """
    Run logger of ensemble ingestion.

    Writes the run banners, one record per failing site or variable, and
    counts site outcomes. The counts are reset at the start of every run and
    end up in EnsembleResult.summary.
    """

    STAT_NAMES = ('sites_processed', 'sites_failed', 'sites_cancelled', 'variables_failed')

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Args:
            logger: Logger to write to. Defaults to the 'site_ingest' logger.
        """
        self.logger = logger or logging.getLogger('site_ingest')
        self.workflow = None
        self.started_at = None
        self.processing_stats = dict.fromkeys(self.STAT_NAMES, 0)

    def log_processing_start(self, workflow: str, parameters: Dict[str, Any]) -> None:
        """
        Reset the counts and log the run banner.

        Args:
            workflow: Run name (e.g. 'ensemble')
            parameters: Run parameters, logged one per line
        """
        self.workflow = workflow
        self.started_at = datetime.now()
        self.processing_stats = dict.fromkeys(self.STAT_NAMES, 0)

        self.logger.info("-" * 60)
        self.logger.info(f"{workflow} ingestion started at {self.started_at:%Y-%m-%d %H:%M:%S}")
        for name, value in parameters.items():
            self.logger.info(f"  {name} = {value}")

    def log_site_result(self, result) -> None:
        """
        Count one SiteResult and log its failures.

        A cancelled site is counted separately from a failed one; variable
        failures of a successful site are logged as warnings.
        """
        site_id = result.site.site_id
        if result.error is not None:
            if isinstance(result.error, CancelledError):
                self.processing_stats['sites_cancelled'] += 1
                self.logger.warning(f"Site {site_id}: {describe_error(result.error)}")
                return
            self.processing_stats['sites_failed'] += 1
            self.logger.error(f"Site {site_id} failed: {describe_error(result.error)}")
            for key, value in getattr(result.error, 'context', {}).items():
                self.logger.error(f"  {key}: {value}")
            return

        self.processing_stats['sites_processed'] += 1
        for name, error in result.variable_errors.items():
            self.processing_stats['variables_failed'] += 1
            self.logger.warning(f"Site {site_id}: variable '{name}' failed: {describe_error(error)}")
        self.logger.debug(f"Site {site_id}: {len(result.series)} variables harmonized")

    def elapsed(self) -> Optional[str]:
        if self.started_at is None:
            return None
        return str(datetime.now() - self.started_at)

    def log_processing_complete(self) -> None:
        """Log the closing banner with the run counts."""
        self.logger.info(f"{self.workflow or 'ingestion'} finished after {self.elapsed()}")
        counts = ", ".join(f"{name}={count}" for name, count in self.processing_stats.items())
        self.logger.info(f"  {counts}")
        self.logger.info("-" * 60)

    def get_processing_summary(self) -> Dict[str, Any]:
        """Run name, start time, elapsed time and a copy of the counts."""
        return {
            'workflow': self.workflow,
            'start_time': self.started_at.isoformat() if self.started_at else None,
            'elapsed_time': self.elapsed(),
            'processing_stats': dict(self.processing_stats),
        }


class IngestError(Exception):
    """Base exception class for site ingestion errors"""

    def __init__(self, message: str, context: Optional[Dict] = None):
        """
        Args:
            message: Error message
            context: Identifiers of the failing request (site, source, variable)
        """
        super().__init__(message)
        self.context = context or {}
        self.timestamp = datetime.now()


class ConfigurationError(IngestError):
    """Malformed or unknown settings, invalid site specification"""
    pass


class UnknownSourceError(ConfigurationError):
    """Source identifier not present in the registry"""
    pass


class UnknownVariableError(ConfigurationError):
    """Standardized variable name has no mapping for the source"""
    pass


class InsufficientDataError(IngestError):
    """Record too short to estimate a quality-filter band"""
    pass


class CancelledError(IngestError):
    """Site job not completed before the ensemble timeout"""
    pass


class ReaderError(IngestError):
    """Base class for errors reported by a Source Reader"""
    pass


class NotFoundError(ReaderError):
    """Requested file, site or variable does not exist at the source"""
    pass


class RangeError(ReaderError):
    """Requested coordinate or date range is outside the source coverage"""
    pass


class AuthError(ReaderError):
    """Remote service rejected the credentials"""
    pass


class FormatError(ReaderError):
    """Source content could not be interpreted"""
    pass


class RemoteServiceError(ReaderError):
    """Transient network or server failure"""
    pass


class RateLimitError(RemoteServiceError):
    """Remote service throttled the request"""
    pass


class SourceReadError(IngestError):
    """Reader failure captured inside the site pipeline"""

    def __init__(self, message: str, cause: Optional[ReaderError] = None,
                 context: Optional[Dict] = None):
        super().__init__(message, context)
        self.cause = cause

    @property
    def reason(self) -> str:
        """Name of the wrapped reader error class"""
        return type(self.cause).__name__ if self.cause is not None else 'unknown'
