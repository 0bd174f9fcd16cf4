"""Microsoft Graph collaborators.

This package provides:
- GraphClient: requests wrapper with retry and error mapping
- GraphMailSource: the Outlook mailbox as a MailSource
- GraphCalendarSink: an Outlook calendar as a CalendarSink

Usage:
    from concierge.auth import GraphAuth
    from concierge.graph import GraphCalendarSink, GraphClient, GraphMailSource

    client = GraphClient(GraphAuth.from_config(config.auth))
    mail = GraphMailSource(client)
    calendar = GraphCalendarSink(client, timezone=config.timezone)
"""

from concierge.graph.calendar import GraphCalendarSink, event_payload, flatten_event
from concierge.graph.client import GraphClient
from concierge.graph.mail import GraphMailSource, build_kql, message_from_graph

__all__ = [
    # Client
    "GraphClient",
    # Mail
    "GraphMailSource",
    "build_kql",
    "message_from_graph",
    # Calendar
    "GraphCalendarSink",
    "event_payload",
    "flatten_event",
]
