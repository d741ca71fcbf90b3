"""Inbound commands accepted by the event router.

Producers are the navigation and message-capture collaborators plus the
settings/popup UI. Over the wire a command is a JSON object with a
``type`` field naming one of the classes below.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union


@dataclass(frozen=True)
class EvaluateNavigation:
    context_id: str
    url: str


@dataclass(frozen=True)
class ClassifyAndRecord:
    context_id: str
    text: str
    timestamp: Optional[datetime] = None
    platform: str = ""


@dataclass(frozen=True)
class ReportPageContext:
    """Page-level hints from the content collaborator.

    ``page_text`` is optional; when given, grading keywords are detected
    here instead of trusting ``has_grading_keywords``.
    """

    context_id: str
    url: str
    has_grading_keywords: bool = False
    page_text: Optional[str] = None


@dataclass(frozen=True)
class GetStatus:
    context_id: str


@dataclass(frozen=True)
class GetBlockStatus:
    pass


@dataclass(frozen=True)
class GetViolationCounts:
    pass


@dataclass(frozen=True)
class GetActivityLog:
    limit: int = 50


@dataclass(frozen=True)
class ResetBlock:
    pass


@dataclass(frozen=True)
class BlockEnded:
    """A collaborator's countdown reached zero."""


@dataclass(frozen=True)
class ReconfigureRules:
    """Replace user rule overrides, keyed by category (e.g. "ai_websites")."""

    overrides: dict[str, list[dict]] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconfigurePolicy:
    """Replace policy config; absent fields keep their current value."""

    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReloadRules:
    pass


@dataclass(frozen=True)
class ResetSettings:
    """Forget all stored state and return to the configured defaults."""


@dataclass(frozen=True)
class CloseContext:
    context_id: str


Command = Union[
    EvaluateNavigation,
    ClassifyAndRecord,
    ReportPageContext,
    GetStatus,
    GetBlockStatus,
    GetViolationCounts,
    GetActivityLog,
    ResetBlock,
    BlockEnded,
    ReconfigureRules,
    ReconfigurePolicy,
    ReloadRules,
    ResetSettings,
    CloseContext,
]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp: {value!r}")


def _require(payload: dict, key: str) -> Any:
    if key not in payload or payload[key] is None:
        raise ValueError(f"Missing field '{key}' for {payload.get('type')}")
    return payload[key]


def _require_str(payload: dict, key: str) -> str:
    value = _require(payload, key)
    if not isinstance(value, str):
        raise ValueError(f"Field '{key}' must be a string")
    return value


def _optional_str(payload: dict, key: str, default: Optional[str] = None) -> Optional[str]:
    value = payload.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"Field '{key}' must be a string")
    return value


def _optional_bool(payload: dict, key: str, default: bool = False) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"Field '{key}' must be true or false")
    return value


def _optional_int(payload: dict, key: str, default: int) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Field '{key}' must be an integer")
    return value


def _rule_overrides(value: Any) -> dict[str, list[dict]]:
    if not isinstance(value, dict):
        raise ValueError("ReconfigureRules.overrides must be an object")
    for category, rules in value.items():
        if not isinstance(rules, list) or not all(isinstance(rule, dict) for rule in rules):
            raise ValueError(f"Rules for '{category}' must be a list of objects")
    return value


def _policy_values(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError("ReconfigurePolicy.values must be an object")
    for key, item in value.items():
        if item is not None and not isinstance(item, (bool, int, float)):
            raise ValueError(f"Policy value '{key}' must be a number or boolean")
    return value


def parse_command(payload: dict) -> Command:
    """Build a command from its JSON form.

    Args:
        payload: Decoded JSON object with a ``type`` field

    Returns:
        The matching command dataclass

    Raises:
        ValueError: If the type is unknown or a field is missing or mistyped
    """
    if not isinstance(payload, dict):
        raise ValueError("Command must be a JSON object")

    command_type = payload.get("type")

    match command_type:
        case "EvaluateNavigation":
            return EvaluateNavigation(
                context_id=str(_require(payload, "context_id")),
                url=_require_str(payload, "url"),
            )
        case "ClassifyAndRecord":
            return ClassifyAndRecord(
                context_id=str(_require(payload, "context_id")),
                text=_require_str(payload, "text"),
                timestamp=parse_timestamp(payload.get("timestamp")),
                platform=_optional_str(payload, "platform", "") or "",
            )
        case "ReportPageContext":
            return ReportPageContext(
                context_id=str(_require(payload, "context_id")),
                url=_require_str(payload, "url"),
                has_grading_keywords=_optional_bool(payload, "has_grading_keywords"),
                page_text=_optional_str(payload, "page_text"),
            )
        case "GetStatus":
            return GetStatus(context_id=str(_require(payload, "context_id")))
        case "GetBlockStatus":
            return GetBlockStatus()
        case "GetViolationCounts" | "GetCounters":
            return GetViolationCounts()
        case "GetActivityLog":
            return GetActivityLog(limit=_optional_int(payload, "limit", 50))
        case "ResetBlock":
            return ResetBlock()
        case "BlockEnded":
            return BlockEnded()
        case "ReconfigureRules":
            return ReconfigureRules(overrides=_rule_overrides(payload.get("overrides", {})))
        case "ReconfigurePolicy":
            return ReconfigurePolicy(values=_policy_values(payload.get("values", {})))
        case "ReloadRules":
            return ReloadRules()
        case "ResetSettings":
            return ResetSettings()
        case "CloseContext":
            return CloseContext(context_id=str(_require(payload, "context_id")))
        case _:
            raise ValueError(f"Unknown command type: {command_type!r}")
