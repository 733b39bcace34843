"""
Module Loading
==============

Page module resolution, compilation and caching.

Components:
- loader: Path resolution under the source directory, compilation to code
  objects, dependency linking and fingerprint-validated caching
"""
