"""
Core Business Logic
==================

Core modules for chart compilation and isolated PNG rendering.

Modules:
- rendering: Template compilation, render worker and worker process manager
- datasets: KPI row shaping and chart request presets
"""
