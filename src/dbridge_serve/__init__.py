"""MCP server and CLI for Diagram Bridge.

Run with ``dbridge-serve``. Stdout carries MCP JSON-RPC; all logging and
console output goes to stderr.
"""
