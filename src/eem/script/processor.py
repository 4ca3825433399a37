"""Named script management: save, look up, list, delete and execute stored scripts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from eem.core.errors import NotFoundError
from eem.core.models import (
    NOT_FOUND,
    ExecutionStatus,
    Missing,
    PipelineExecutionResult,
    ScriptDefinition,
    utcnow,
)
from eem.script.interpreter import ScriptInterpreter
from eem.script.parser import parse
from eem.storage.repositories import ScriptRepository

logger = logging.getLogger(__name__)


class ScriptProcessor:
    """Outer boundary for scripts.

    Lookups by name return NOT_FOUND instead of raising, and execution
    always yields a PipelineExecutionResult.
    """

    def __init__(
        self,
        repository: ScriptRepository,
        interpreter: ScriptInterpreter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.interpreter = interpreter
        self.clock = clock

    def save(
        self,
        name: str,
        content: str,
        description: str = "",
        tags: list[str] | None = None,
        enabled: bool = True,
    ) -> ScriptDefinition:
        """Create or replace the script called ``name``.

        Raises:
            ValueError: empty name or content.
            ScriptSyntaxError: the content does not parse.
        """
        if not name or not name.strip():
            raise ValueError("Script name must not be empty")
        if not content or not content.strip():
            raise ValueError("Script content must not be empty")
        parse(content)

        now = self.clock()
        existing = self.repository.find_by_name(name)
        if existing is None:
            script = ScriptDefinition(
                name=name, text=content, description=description,
                tags=list(tags or []), enabled=enabled, created_at=now, modified_at=now,
            )
        else:
            script = existing
            script.text = content
            script.description = description or existing.description
            script.tags = list(tags) if tags is not None else existing.tags
            script.enabled = enabled
            script.modified_at = now
        self.repository.save(script)
        logger.info("Saved script %r (%s)", script.name, script.id)
        return script

    def require(self, name: str) -> ScriptDefinition:
        """Return the script called ``name`` or raise NotFoundError."""
        script = self.repository.find_by_name(name)
        if script is None:
            raise NotFoundError(f"Script not found: {name}")
        return script

    def get(self, name: str) -> ScriptDefinition | Missing:
        try:
            return self.require(name)
        except NotFoundError:
            return NOT_FOUND

    def list(self) -> list[ScriptDefinition]:
        return self.repository.list()

    def delete(self, name: str) -> bool | Missing:
        try:
            script = self.require(name)
        except NotFoundError:
            return NOT_FOUND
        return self.repository.delete(script.id)

    def execute(
        self, name: str, cancel_event: threading.Event | None = None
    ) -> PipelineExecutionResult | Missing:
        """Run a stored script and record its last run time."""
        try:
            script = self.require(name)
        except NotFoundError:
            return NOT_FOUND
        if not script.enabled:
            result = PipelineExecutionResult(flow_name=script.name, end_time=self.clock())
            result.status = ExecutionStatus.FAILED
            result.error_message = f"Script {name!r} is disabled"
            return result

        script.last_run = self.clock()
        result = self.interpreter.execute(script.text, cancel_event)
        self.repository.save(script)
        return result
