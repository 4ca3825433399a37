"""Eem error types and utilities."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, content: str) -> None:
    """Write content to a file atomically using temp file + rename.

    Writes to a temporary file in the same directory, fsyncs it,
    then atomically replaces the target path.
    """
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, content.encode())
        os.fsync(fd)
        os.close(fd)
        os.replace(tmp, str(path))
    except BaseException:
        os.close(fd)
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class EemError(Exception):
    """Base exception for Eem."""

    pass


class ScriptError(EemError):
    """Error while validating or executing a pipeline script."""

    pass


class ScriptSyntaxError(ScriptError):
    """Malformed script text. Raised before any execution side effect."""

    def __init__(self, message: str, line: int | None = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class UnresolvedReferenceError(ScriptError):
    """A pipe chain starts from a name no earlier statement bound."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unresolved reference: {name!r} is not bound by an earlier statement")


class UndefinedDatasetError(ScriptError):
    """A sink statement references a dataset that was never bound."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Undefined dataset: {name!r}")


class UnsupportedFormatError(EemError):
    """Flow export was asked for a format it cannot render."""

    def __init__(self, fmt: str):
        self.format = fmt
        super().__init__(f"Unsupported export format: {fmt!r}. Supported: json, dot, mermaid")


class NotFoundError(EemError):
    """Lookup miss for a flow, script or record."""

    pass


class NoActivitiesError(EemError):
    """Flow synthesis found nothing to build from."""

    pass


class ProcessingDisabledError(EemError):
    """The requested processing stage is turned off in settings."""

    pass


class FlowIntegrityError(EemError):
    """A flow edge references a node that is not part of the flow."""

    pass


class GatewayError(EemError):
    """Error returned by the embedding / completion service."""

    pass


class StorageError(EemError):
    """Error in blob storage or the semantic index."""

    pass


class TransientError(EemError):
    """A collaborator failure that is worth retrying (rate limit, timeout, connection)."""

    pass


class RetryExhaustedError(EemError):
    """A call kept failing after every attempt allowed by its policy."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
