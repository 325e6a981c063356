"""Kademlia lookup state and engine, provider records, IP group diversity filtering and routing table refresh."""

__version__ = "0.1.0"
__all__ = ["diversity", "options", "providers", "qpeerset", "query", "rtrefresh"]