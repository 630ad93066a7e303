"""Error taxonomy for the ingestion pipeline."""

import logging
import warnings


class ConvologError(Exception):
    """Base class for errors raised by convolog."""


class FormatError(ConvologError):
    """Input does not match any known shape for its detected format.

    The message carries diagnostic context (archive entries, object keys)
    and is meant to be shown to the user verbatim.
    """


class UnsupportedFileError(FormatError):
    """File name and type match none of the supported formats."""


class NoDataError(ConvologError):
    """Format matched but yielded zero usable records."""


class MalformedRecordWarning(UserWarning):
    """A single message, line or conversation failed to parse and was skipped."""


def report_malformed(logger: logging.Logger, kind: str, detail: object) -> None:
    """Log and warn about a skipped record without interrupting the parse."""
    logger.warning("Skipping malformed %s: %s", kind, detail)
    warnings.warn(f"Skipping malformed {kind}: {detail}", MalformedRecordWarning, stacklevel=2)
