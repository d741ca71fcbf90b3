"""Notifiers package for forwarding events to external services."""

from trafficlight.notifiers.slack import SlackConfig, SlackNotifier

__all__ = ["SlackConfig", "SlackNotifier"]
