"""Propstack CRM MCP server: composite real-estate CRM tools over the Propstack REST API."""

__version__ = "0.1.0"
