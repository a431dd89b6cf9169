"""
Test Suite
==========

Unit tests run without a browser; integration tests launch Chromium through
Playwright and are skipped when no browser is installed.
"""
