"""
Configuration Management
=======================

Environment-based configuration using Pydantic Settings.

Components:
- settings: Rendering, worker and browser settings
- logging: Structured logging configuration
"""
