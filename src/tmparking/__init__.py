"""
TM Parking - occupancy and billing engine for a single parking lot

Layers:
- domain: records, aggregates and billing/lateness strategies
- application: the parking service, DTOs and commands
- infrastructure: configuration, snapshot stores and event messaging
- presentation: receipt rendering
"""

__version__ = "1.0.0"
