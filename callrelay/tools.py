from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .class_catalog import INFO_TYPES, describe
from .clock import Clock
from .config import RelayConfig
from .directory import Directory
from .log import log_event
from .metrics import RELAY
from .prompts import UNKNOWN_TOOL_MESSAGE
from .session_store import Session, ToolCallEntry
from .telephony import Telephony


class ToolExecutionError(RuntimeError):
    pass


class ReviewDecision(str, Enum):
    ACCEPT = "ACCEPT"
    LOOP = "LOOP"
    TOO_EARLY = "TOO_EARLY"
    INVALID = "INVALID"


@dataclass(frozen=True, slots=True)
class ToolReview:
    decision: ReviewDecision
    tool_name: str
    arguments: dict[str, Any]
    message: Optional[str] = None
    error: Optional[str] = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ToolResult:
    success: bool
    response_text: str
    detailed_info: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass(slots=True)
class ToolContext:
    session: Session
    telephony: Telephony
    directory: Directory


ATTENDANCE_ACTIONS = ("confirm", "not_attending")
ATTENDANCE_STATUSES = ("Attending", "Not Attending - Recording Requested", "Pending")
END_CALL_REASONS = (
    "task_completed",
    "customer_satisfied",
    "goodbye_received",
    "student_confirmed_attendance",
    "student_not_attending",
    "no_response",
    "technical_issue",
)

_GENERIC_REASONS = (
    "not specified",
    "no reason",
    "none",
    "n/a",
    "unknown",
    "busy",
    "can't make it",
    "cannot attend",
)
_UNCERTAIN_KEYWORDS = ("not sure", "don't know", "maybe", "unsure", "uncertain", "i think", "possibly", "might")
_INFO_KEYWORDS = (
    "class",
    "course",
    "material",
    "requirement",
    "location",
    "preparation",
    "instructor",
    "schedule",
    "syllabus",
    "homework",
    "what do i need",
    "when is",
    "where is",
    "who is teaching",
)
_SCHEDULE_KEYWORDS = (
    "confirm",
    "attend",
    "can't make",
    "cannot make",
    "won't make",
    "conflict",
    "busy",
    "available",
    "not attending",
    "cannot attend",
    "can't attend",
    "unable to attend",
)

# Argument that identifies "the same request" for duplicate detection.
PRIMARY_ARG: dict[str, str] = {
    "get_class_info": "infoType",
    "schedule_class": "action",
    "update_attendance": "status",
    "end_call": "reason",
}

FALLBACK_MESSAGES: dict[str, str] = {
    "get_class_info": (
        "I don't have those class details in front of me right now. "
        "You'll find everything in your enrollment email and on the student portal."
    ),
    "schedule_class": (
        "I've noted your request, but couldn't update the system right now. "
        "Someone from our team will follow up with you shortly."
    ),
    "update_attendance": (
        "I've noted your attendance, but couldn't update the system right now. "
        "Someone from our team will follow up with you shortly."
    ),
    "end_call": "Thank you for your time. Have a great day!",
}

_CLARIFY_INFO_TYPE = (
    "Which part of your class would you like to know about, for example the schedule or the location?"
)
_CLARIFY_ATTENDANCE = "Just to confirm, will you be able to attend your upcoming class?"
_CLARIFY_REASON = (
    "I'm sorry to hear that. Could you tell me a bit more about why you won't be able to make it?"
)
_CLARIFY_END = "Is there anything else I can help you with regarding your upcoming class?"


def _fn(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_SCHEMAS: list[dict[str, Any]] = [
    _fn(
        "end_call",
        "End the phone call when the conversation is complete and student is satisfied",
        {
            "reason": {
                "type": "string",
                "description": "Reason for ending the call",
                "enum": list(END_CALL_REASONS),
            },
            "summary": {"type": "string", "description": "Brief summary of what was accomplished in the call"},
            "studentResponse": {
                "type": "string",
                "description": "How the student responded (e.g. 'confirmed attendance', 'not available')",
            },
        },
        ["reason"],
    ),
    _fn(
        "get_class_info",
        "Get detailed information about a class, including requirements, materials, location, and preparation",
        {
            "infoType": {
                "type": "string",
                "description": "Type of information requested",
                "enum": list(INFO_TYPES),
            },
            "className": {"type": "string", "description": "Name of the class to get information about"},
            "specificQuestion": {
                "type": "string",
                "description": "Specific question the student asked about the class",
            },
        },
        ["infoType"],
    ),
    _fn(
        "schedule_class",
        "Help student confirm attendance or mark as not attending",
        {
            "action": {
                "type": "string",
                "description": "Type of attendance action",
                "enum": list(ATTENDANCE_ACTIONS),
            },
            "reason": {
                "type": "string",
                "description": (
                    "Reason for the action. REQUIRED for 'not_attending' and must be the specific reason "
                    "the student gave (e.g. 'work emergency', 'illness', 'family commitment')"
                ),
            },
        },
        ["action"],
    ),
    _fn(
        "update_attendance",
        "Update the student's attendance status in the enrollment records",
        {
            "status": {
                "type": "string",
                "description": "Attendance status",
                "enum": list(ATTENDANCE_STATUSES),
            },
            "reason": {"type": "string", "description": "Reason for not attending (if applicable)"},
        },
        ["status"],
    ),
]

KNOWN_TOOLS = frozenset(PRIMARY_ARG)


async def _run_with_timeout(clock: Clock, *, coro: Awaitable[ToolResult], deadline_ms: int) -> ToolResult:
    """
    Deterministic timeout based on Clock.sleep_ms(), not wall clock.
    Work exceptions propagate; expiry raises ToolExecutionError.
    """
    timeout_task = asyncio.create_task(clock.sleep_ms(deadline_ms - clock.now_ms()))
    work_task = asyncio.ensure_future(coro)
    done, pending = await asyncio.wait({timeout_task, work_task}, return_when=asyncio.FIRST_COMPLETED)

    if work_task in done:
        if timeout_task in pending:
            timeout_task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return work_task.result()

    work_task.cancel()
    await asyncio.gather(work_task, return_exceptions=True)
    raise ToolExecutionError("tool_timeout")


def _reason_is_generic(reason: str) -> bool:
    r = reason.strip().lower()
    return len(r) < 3 or any(g in r for g in _GENERIC_REASONS)


def _last_user_text(session: Session) -> str:
    for turn in reversed(session.conversation):
        if turn.role == "user":
            return turn.content
    return ""


ToolFn = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


class ToolDispatcher:
    """
    Validates, loop-guards and executes the assistant's tool requests for one call.

    review() decides; the caller applies mark_called() only for ACCEPT, then execute().
    """

    def __init__(
        self,
        *,
        clock: Clock,
        tool_timeout_ms: int = 8000,
        max_consecutive_tool_calls: int = 1,
        max_duplicate_tool_calls: int = 2,
        duplicate_window_ms: int = 2 * 60 * 1000,
        min_turns_for_tools: int = 3,
        metrics: Any | None = None,
        structured_logs: bool = False,
    ) -> None:
        self._clock = clock
        self._tool_timeout_ms = int(tool_timeout_ms)
        self._max_consecutive = max(1, int(max_consecutive_tool_calls))
        self._max_duplicate = max(1, int(max_duplicate_tool_calls))
        self._duplicate_window_ms = int(duplicate_window_ms)
        self._min_turns = int(min_turns_for_tools)
        self._metrics = metrics
        self._structured_logs = structured_logs
        self._tools: dict[str, ToolFn] = {
            "get_class_info": self._get_class_info,
            "schedule_class": self._schedule_class,
            "update_attendance": self._update_attendance,
            "end_call": self._end_call,
        }

    @classmethod
    def from_config(cls, config: RelayConfig, *, clock: Clock, metrics: Any | None = None) -> "ToolDispatcher":
        return cls(
            clock=clock,
            tool_timeout_ms=config.tool_timeout_ms,
            max_consecutive_tool_calls=config.max_consecutive_tool_calls,
            max_duplicate_tool_calls=config.max_duplicate_tool_calls,
            duplicate_window_ms=config.duplicate_tool_window_ms,
            min_turns_for_tools=config.min_turns_for_tools,
            metrics=metrics,
            structured_logs=config.structured_logging,
        )

    @staticmethod
    def schemas() -> list[dict[str, Any]]:
        return TOOL_SCHEMAS

    def _inc(self, key: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(RELAY[key], 1)

    def _log(self, event: str, **payload: object) -> None:
        log_event(self._structured_logs, "tools", event, **payload)

    # ---------------------------------------------------------------------
    # Guards
    # ---------------------------------------------------------------------

    def would_create_loop(self, session: Session, name: str, arguments: dict[str, Any]) -> bool:
        if session.consecutive_tool_calls >= self._max_consecutive:
            return True
        primary = PRIMARY_ARG.get(name)
        value = arguments.get(primary) if primary else None
        cutoff = self._clock.now_ms() - self._duplicate_window_ms
        same = sum(
            1
            for entry in session.tool_call_history
            if entry.tool_name == name
            and entry.timestamp_ms >= cutoff
            and (primary is None or entry.args.get(primary) == value)
        )
        return same >= self._max_duplicate

    def mark_called(self, session: Session, name: str, arguments: dict[str, Any]) -> None:
        session.tool_call_history.append(
            ToolCallEntry(tool_name=name, args=dict(arguments), timestamp_ms=self._clock.now_ms())
        )
        session.consecutive_tool_calls += 1

    def validate(
        self, name: str, arguments: dict[str, Any], *, user_text: str = "", has_student: bool = True
    ) -> tuple[Optional[str], Optional[str], list[str]]:
        """
        Returns (error, clarifying_question, warnings). error is None when the call is acceptable.
        """
        warnings: list[str] = []
        lowered = (user_text or "").lower()

        if name == "get_class_info":
            if not any(k in lowered for k in _INFO_KEYWORDS):
                warnings.append("User may not have explicitly requested class information")
            info_type = arguments.get("infoType")
            if not info_type:
                return "Missing required parameter: infoType", _CLARIFY_INFO_TYPE, warnings
            if info_type not in INFO_TYPES:
                return f"Invalid infoType: {info_type}", _CLARIFY_INFO_TYPE, warnings
            return None, None, warnings

        if name in ("schedule_class", "update_attendance"):
            if not any(k in lowered for k in _SCHEDULE_KEYWORDS):
                warnings.append("User may not have explicitly requested attendance/scheduling changes")
            if not has_student:
                warnings.append("No student information available for scheduling operations")
            if name == "schedule_class":
                action = arguments.get("action")
                if not action:
                    return "Missing required parameter: action", _CLARIFY_ATTENDANCE, warnings
                if action not in ATTENDANCE_ACTIONS:
                    return f"Invalid action: {action}", _CLARIFY_ATTENDANCE, warnings
                not_attending = action == "not_attending"
            else:
                status = arguments.get("status")
                if not status:
                    return "Missing required parameter: status", _CLARIFY_ATTENDANCE, warnings
                if status not in ATTENDANCE_STATUSES:
                    return f"Invalid status: {status}", _CLARIFY_ATTENDANCE, warnings
                not_attending = status.startswith("Not Attending")

            if not_attending and any(k in lowered for k in _UNCERTAIN_KEYWORDS):
                warnings.append(
                    "Student gave uncertain response - should motivate first before marking as not attending"
                )
            reason = str(arguments.get("reason") or "")
            if name == "schedule_class" and not_attending and not reason:
                return "Missing required reason for 'not_attending' action", _CLARIFY_REASON, warnings
            if not_attending and reason and _reason_is_generic(reason):
                return "Reason is too generic", _CLARIFY_REASON, warnings
            return None, None, warnings

        if name == "end_call":
            reason = arguments.get("reason")
            if not reason:
                return "Missing required parameter: reason", _CLARIFY_END, warnings
            if reason not in END_CALL_REASONS:
                return f"Invalid reason: {reason}", _CLARIFY_END, warnings
            return None, None, warnings

        return f"Unknown tool: {name}", UNKNOWN_TOOL_MESSAGE, warnings

    @staticmethod
    def needs_review_log(name: str, error: Optional[str], warnings: list[str], arguments: dict[str, Any]) -> bool:
        if error is not None or warnings:
            return True
        if name == "end_call" and arguments.get("reason") == "no_response":
            return True
        if name in ("schedule_class", "update_attendance") and not arguments.get("reason"):
            return True
        return False

    def review(self, session: Session, name: str, arguments: dict[str, Any]) -> ToolReview:
        if name not in KNOWN_TOOLS:
            self._inc("tool_invalid_total")
            self._log("tool_unknown", call_id=session.call_id, tool=name)
            return ToolReview(
                decision=ReviewDecision.INVALID,
                tool_name=name,
                arguments=arguments,
                message=UNKNOWN_TOOL_MESSAGE,
                error=f"Unknown tool: {name}",
            )

        user_text = _last_user_text(session)
        error, clarify, warnings = self.validate(
            name, arguments, user_text=user_text, has_student=session.student_context is not None
        )
        if self.needs_review_log(name, error, warnings, arguments):
            self._log(
                "tool_call_review",
                call_id=session.call_id,
                tool=name,
                arguments=arguments,
                error=error,
                warnings=warnings,
                user_text=user_text,
            )

        if name != "end_call":
            if self.would_create_loop(session, name, arguments):
                self._inc("tool_loop_blocked_total")
                self._log(
                    "tool_loop_blocked",
                    call_id=session.call_id,
                    tool=name,
                    consecutive=session.consecutive_tool_calls,
                )
                return ToolReview(decision=ReviewDecision.LOOP, tool_name=name, arguments=arguments)
            if len(session.conversation) < self._min_turns:
                self._inc("tool_too_early_total")
                return ToolReview(decision=ReviewDecision.TOO_EARLY, tool_name=name, arguments=arguments)

        if error is not None:
            self._inc("tool_invalid_total")
            return ToolReview(
                decision=ReviewDecision.INVALID,
                tool_name=name,
                arguments=arguments,
                message=clarify,
                error=error,
                warnings=tuple(warnings),
            )

        self._inc("tool_accepted_total")
        return ToolReview(
            decision=ReviewDecision.ACCEPT, tool_name=name, arguments=arguments, warnings=tuple(warnings)
        )

    # ---------------------------------------------------------------------
    # Execution
    # ---------------------------------------------------------------------

    async def execute(self, name: str, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        fn = self._tools.get(name)
        if fn is None:
            return ToolResult(success=False, response_text=UNKNOWN_TOOL_MESSAGE, error=f"unknown tool: {name}")

        deadline_ms = self._clock.now_ms() + self._tool_timeout_ms
        try:
            return await _run_with_timeout(self._clock, coro=fn(arguments, ctx), deadline_ms=deadline_ms)
        except Exception as e:
            self._inc("tool_failures_total")
            self._log(
                "tool_failed",
                call_id=ctx.session.call_id,
                tool=name,
                arguments=arguments,
                error=f"{type(e).__name__}: {e}",
            )
            return ToolResult(
                success=False,
                response_text=FALLBACK_MESSAGES[name],
                error=str(e) or type(e).__name__,
            )

    async def _get_class_info(self, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        info_type = str(arguments.get("infoType") or "")
        student = ctx.session.student_context
        target = str(arguments.get("className") or (student.class_name if student else "") or "your class")
        text, detailed = describe(info_type, target)
        ctx.session.info_requests.append(
            {
                "infoType": info_type,
                "className": target,
                "specificQuestion": arguments.get("specificQuestion"),
                "timestamp": self._clock.wall_iso(),
            }
        )
        return ToolResult(success=True, response_text=text, detailed_info=detailed)

    async def _schedule_class(self, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        action = str(arguments.get("action"))
        reason = arguments.get("reason")
        student = ctx.session.student_context
        status = "confirmed" if action == "confirm" else "not_attending"
        ctx.session.outcome = {"status": status, "reason": reason}
        detailed: dict[str, Any] = {"action": action, "reason": reason or "Not specified"}

        if student is None:
            text = (
                "Thank you for confirming your attendance! We look forward to seeing you in class."
                if action == "confirm"
                else "I've noted that you won't be able to attend your class. Thank you for letting us know."
            )
            return ToolResult(success=True, response_text=text, detailed_info=detailed)

        detailed.update(original_date=student.class_date, original_time=student.class_time)
        updated = await ctx.directory.record_outcome(student, status, reason)
        detailed["record_updated"] = updated
        if action == "confirm":
            text = (
                f"Perfect! I've confirmed your attendance for {student.class_name} on {student.class_date} "
                f"at {student.class_time}. We look forward to seeing you in class!"
                if updated
                else "Thanks for confirming! We look forward to seeing you in class. "
                "If you have any questions, feel free to reach out."
            )
        else:
            text = (
                f"I've marked you as not attending for your {student.class_name} class scheduled for "
                f"{student.class_date} at {student.class_time}. Thank you for letting us know. "
                "Someone from our team may follow up with you about makeup options."
                if updated
                else "I've noted that you won't be able to attend your class. "
                "Someone from our team will follow up with you about this."
            )
        return ToolResult(success=True, response_text=text, detailed_info=detailed)

    async def _update_attendance(self, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        status = str(arguments.get("status"))
        reason = arguments.get("reason")
        student = ctx.session.student_context
        if student is None:
            return ToolResult(
                success=False,
                response_text=FALLBACK_MESSAGES["update_attendance"],
                error="no_student_info",
            )

        ctx.session.outcome = {"status": status, "reason": reason}
        updated = await ctx.directory.record_outcome(student, status, reason)
        if updated:
            text = f"I've updated your attendance for {student.class_name} to {status}."
        else:
            text = "I've noted your attendance. Someone from our team will follow up with you about this."
        return ToolResult(
            success=True,
            response_text=text,
            detailed_info={"status": status, "reason": reason, "record_updated": updated},
        )

    async def _end_call(self, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        session = ctx.session
        info = {
            "reason": arguments.get("reason"),
            "summary": arguments.get("summary") or "No summary provided",
            "studentResponse": arguments.get("studentResponse") or "No response recorded",
            "timestamp": self._clock.wall_iso(),
            "call_duration_ms": self._clock.now_ms() - session.created_at_ms,
        }
        session.end_info = info
        return ToolResult(
            success=True,
            response_text="Call will be ended after the closing message",
            detailed_info=info,
        )
