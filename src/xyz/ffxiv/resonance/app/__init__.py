"""
Resonance Application Layer

This package exposes the AT Protocol core to sync clients running in other
processes through a small local aiohttp server, and provides the command
line entry points.

Key Components:
- server.py: Web server setup, middleware and core wiring
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics abstraction (Telegraf/StatsD or no-op)
- handlers/: Request handlers for the gateway, accounts and internal endpoints
- cli.py: Entry point for running the gateway
- util/: One-shot command line utilities

It provides the following endpoints:
- Gateway endpoints (/gateway/*): authenticate, publish, client registry
- Account endpoints (/accounts/*): availability, auto and custom accounts
- Internal endpoints (/internal/*): liveness and session status
"""
