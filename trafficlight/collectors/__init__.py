"""Collectors that feed inbound commands to the event router."""

from trafficlight.collectors.command_receiver import CommandReceiver, ReceiverConfig

__all__ = ["CommandReceiver", "ReceiverConfig"]
