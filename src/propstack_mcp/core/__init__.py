"""Core logic: request execution, pagination, fan-out, scoring, aggregation, and data models.

This package is framework-agnostic. It has no dependency on MCP or FastMCP;
the server and the composite operations both import from here.
"""
