"""
Test Utilities
==============

Shared assertions and data generators.
"""
