"""Data models for trafficlight events and commands."""

from trafficlight.models.events import (
    ActivityEntry,
    BlockActivated,
    BlockDeactivated,
    ContextStatus,
    CountsUpdated,
    OutboundEvent,
    RedirectRequested,
    StatusChanged,
    Tier,
)
from trafficlight.models.commands import (
    BlockEnded,
    ClassifyAndRecord,
    CloseContext,
    Command,
    EvaluateNavigation,
    GetActivityLog,
    GetBlockStatus,
    GetStatus,
    GetViolationCounts,
    ReconfigurePolicy,
    ReconfigureRules,
    ReloadRules,
    ReportPageContext,
    ResetBlock,
    ResetSettings,
    parse_command,
    parse_timestamp,
)

__all__ = [
    "ActivityEntry",
    "BlockActivated",
    "BlockDeactivated",
    "ContextStatus",
    "CountsUpdated",
    "OutboundEvent",
    "RedirectRequested",
    "StatusChanged",
    "Tier",
    "BlockEnded",
    "ClassifyAndRecord",
    "CloseContext",
    "Command",
    "EvaluateNavigation",
    "GetActivityLog",
    "GetBlockStatus",
    "GetStatus",
    "GetViolationCounts",
    "ReconfigurePolicy",
    "ReconfigureRules",
    "ReloadRules",
    "ReportPageContext",
    "ResetBlock",
    "ResetSettings",
    "parse_command",
    "parse_timestamp",
]
