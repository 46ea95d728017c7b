"""Shared enumerations used across the execution runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Session -----------------------------------------------------------------


class SessionStatus(StrEnum):
    """In-memory lifecycle of an execution session."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


class StartOutcome(StrEnum):
    """Result of a start request against the single-flight gate."""

    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


class Transport(StrEnum):
    WEBSOCKET = "websocket"
    SSE = "sse"


# -- Process -----------------------------------------------------------------


class ExitReason(StrEnum):
    """Why a sandboxed process stopped."""

    EXITED = "exited"
    TIMEOUT = "timeout"
    OUTPUT_BUDGET = "output_budget"
    TERMINATED = "terminated"
    SPAWN_FAILED = "spawn_failed"


class ErrorCode(StrEnum):
    """Machine-readable codes carried by ``error`` events."""

    SPAWN_FAILED = "spawn_failed"
    EXECUTION_TIMEOUT = "execution_timeout"
    OUTPUT_BUDGET_EXCEEDED = "output_budget_exceeded"
    EXTRACTION_FAILED = "extraction_failed"
    TRANSPORT_OVERFLOW = "transport_overflow"
    SESSION_ENDED = "session_ended"
    NOT_STARTED = "not_started"
    SHUTTING_DOWN = "shutting_down"


class Phase(StrEnum):
    """Pipeline phase an error was raised in."""

    SETUP = "setup"
    EXECUTION = "execution"
    EXTRACTION = "extraction"
    PERSIST = "persist"
    TRANSPORT = "transport"


# -- Graph -------------------------------------------------------------------


class NodeKind(StrEnum):
    AGENT = "agent"
    TASK = "task"
    CREW = "crew"
    STEP = "step"


class EdgeKind(StrEnum):
    ASSIGNED = "assigned"
    CONTEXT = "context"
    MEMBER = "member"
    FLOW = "flow"
    MESSAGE = "message"
