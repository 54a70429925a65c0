"""Tool dispatch: resolve, check, validate, invoke, and wrap every outcome.

Nothing raised by a handler escapes ``ToolDispatcher.execute`` except
cancellation. Every other failure becomes a ``ToolResult`` error the model
can read and react to.
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
import time
from typing import Any, Sequence

import jsonschema
from jsonschema.exceptions import SchemaError, best_match

from agent_runtime.errors import ToolArgumentError, ToolDenied, ToolErrorKind, UnknownToolError
from agent_runtime.models import ToolCall, ToolCallRecord, ToolDescriptor, ToolResult
from agent_runtime.registry import ToolRegistry
from agent_runtime.tools.context import ToolContext

logger = logging.getLogger(__name__)


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _serialize(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    return _json.dumps(raw, ensure_ascii=False, default=str)


class ToolDispatcher:
    """Executes tool calls against one frozen registry snapshot."""

    def __init__(self, registry: ToolRegistry, context: ToolContext) -> None:
        self.registry = registry
        self.context = context
        self._validators: dict[str, Any] = {}

    @property
    def settings(self):
        return self.context.settings

    def with_registry(self, registry: ToolRegistry, context: ToolContext | None = None) -> "ToolDispatcher":
        return ToolDispatcher(registry, context or self.context)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validator(self, descriptor: ToolDescriptor) -> Any:
        validator = self._validators.get(descriptor.name)
        if validator is None:
            cls = jsonschema.validators.validator_for(descriptor.parameters)
            cls.check_schema(descriptor.parameters)
            validator = cls(descriptor.parameters)
            self._validators[descriptor.name] = validator
        return validator

    def _argument_error(self, descriptor: ToolDescriptor, call: ToolCall) -> str | None:
        if call.argument_error:
            return call.argument_error
        if not descriptor.parameters:
            return None
        error = best_match(self._validator(descriptor).iter_errors(call.arguments))
        if error is None:
            return None
        location = "/".join(str(p) for p in error.absolute_path)
        return f"{location}: {error.message}" if location else error.message

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, call: ToolCall) -> ToolResult:
        result, _record = await self.execute_with_record(call)
        return result

    async def execute_with_record(self, call: ToolCall) -> tuple[ToolResult, ToolCallRecord]:
        record = ToolCallRecord(tool=call.name, tool_call_id=call.id, arguments=dict(call.arguments))
        t0 = time.monotonic()
        try:
            result = await self._dispatch(call, record)
        finally:
            record.latency_s = round(time.monotonic() - t0, 3)
        if result.is_error:
            record.error = result.message
            record.error_kind = result.error_kind
        else:
            record.result = result.payload
        return result, record

    async def _dispatch(self, call: ToolCall, record: ToolCallRecord) -> ToolResult:
        settings = self.context.settings

        try:
            descriptor = self.registry.resolve(call.name)
        except UnknownToolError as exc:
            available = ", ".join(self.registry.names()) or "(none)"
            logger.warning("Model requested unknown tool %r", call.name)
            return ToolResult.failure(call.id, ToolErrorKind.UNKNOWN_TOOL, f"{exc}. Available tools: {available}")
        record.source = descriptor.source

        if descriptor.capability not in settings.capabilities:
            logger.warning("Tool %s denied: capability %s not granted", call.name, descriptor.capability.value)
            return ToolResult.failure(
                call.id,
                ToolErrorKind.VALIDATION_DENIED,
                f"Capability '{descriptor.capability.value}' is not granted for this run",
            )

        try:
            problem = self._argument_error(descriptor, call)
        except SchemaError as exc:
            logger.error("Tool %s has an invalid parameter schema: %s", call.name, exc.message)
            return ToolResult.failure(call.id, ToolErrorKind.EXECUTION_FAILED, f"Invalid tool schema: {exc.message}")
        if problem is not None:
            return ToolResult.failure(call.id, ToolErrorKind.INVALID_ARGUMENTS, problem)

        try:
            raw = await descriptor.handler(self.context, **call.arguments)
        except ToolDenied as exc:
            return ToolResult.failure(call.id, ToolErrorKind.VALIDATION_DENIED, exc.reason)
        except ToolArgumentError as exc:
            return ToolResult.failure(call.id, ToolErrorKind.INVALID_ARGUMENTS, str(exc))
        except Exception as exc:
            logger.error("Tool %s failed: %s: %s", call.name, type(exc).__name__, exc, exc_info=True)
            return ToolResult.failure(call.id, ToolErrorKind.EXECUTION_FAILED, f"{type(exc).__name__}: {exc}")

        if isinstance(raw, ToolResult):
            if raw.is_error:
                return ToolResult.failure(call.id, raw.error_kind, raw.message)  # type: ignore[arg-type]
            raw = raw.payload or ""
        return ToolResult.success(call.id, _truncate(_serialize(raw), settings.tool_result_max_length))

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        records: list[ToolCallRecord] | None = None,
    ) -> list[ToolResult]:
        """Run every call of one assistant message; results follow call order."""
        if self.context.settings.parallel_tools and len(calls) > 1:
            outcomes = await asyncio.gather(*(self.execute_with_record(c) for c in calls))
        else:
            outcomes = [await self.execute_with_record(c) for c in calls]
        if records is not None:
            records.extend(record for _result, record in outcomes)
        return [result for result, _record in outcomes]
