"""
Maison analytics. Client-side pieces that live outside the request cycle:
event collector, entry-point classification, device parsing, Result type.
"""

from __future__ import annotations

from maison.analytics.collector import EventCollector, HttpTransport, MemoryTransport, generate_session_id
from maison.analytics.device import DeviceInfo, parse_user_agent, resolve_device
from maison.analytics.entry_point import EntryPoint, classify_entry_point
from maison.analytics.result import AnalyticsError, Result

__all__ = [
    "EventCollector",
    "HttpTransport",
    "MemoryTransport",
    "generate_session_id",
    "DeviceInfo",
    "parse_user_agent",
    "resolve_device",
    "EntryPoint",
    "classify_entry_point",
    "AnalyticsError",
    "Result",
]
