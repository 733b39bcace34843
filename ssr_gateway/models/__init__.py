"""
Data Models
===========

Pydantic data models for gateway options, runtime statistics and HTTP responses.

Models:
- schemas: Gateway options, cache/pool statistics, health and error responses
"""
