"""
HTTP Application
================

FastAPI application serving static assets and server-rendered pages.
"""
