"""
Rendering Module
===============

Element tree model and HTML serialization.

Components:
- elements: Tagged element tree variants (Text, Element, Fragment)
- html_serializer: Escape-safe HTML serialization of element trees
"""
