"""
API Routes
==========

Route modules for the SSR gateway application.
"""
