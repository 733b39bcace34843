"""
Test Suite
==========

Test suite matching the ssr_gateway/ package structure.

Test Categories:
- unit: Unit tests for individual components
- integration: Gateway, HTTP application and CLI tests against fixture page modules
"""
