"""Omnichannel helpdesk core: channel ingestion and automation workflows."""

__version__ = "0.1.0"
