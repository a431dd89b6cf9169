"""
Data Models
===========

Pydantic models for chart data, render requests and render results.
"""
