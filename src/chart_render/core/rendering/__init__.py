"""
Rendering Module
===============

Chart markup compilation and isolated PNG rendering.

Components:
- errors: Failure taxonomy shared by host and worker
- template_compiler: Convert data points into self-contained chart HTML
- worker: Playwright render worker executed as a child process
- process_manager: Spawn, feed, time-limit and reap render workers
"""
