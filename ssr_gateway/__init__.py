"""
SSR Gateway
===========

Server-side rendering gateway that turns Python page modules plus a map of
named properties into HTML documents.

This package provides:
- Module loading with fingerprint-based compilation caching
- Process-isolated evaluation of page render functions with per-render timeouts
- Escape-safe HTML serialization of element trees
- A FastAPI example application and a command-line interface

Public entry point: ``ssr_gateway.core.gateway.new_with_options``.
"""

__version__ = "1.0.0"
__author__ = "SSR Gateway Team"
