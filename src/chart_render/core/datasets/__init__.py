"""
Datasets
========

Shaping of rows returned by the data-access layer into chart data points
and ready-made render requests.
"""
