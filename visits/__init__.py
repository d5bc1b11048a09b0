"""Automatic place visit detection.

The package is organized into:
- settings: detection thresholds
- models: candidate and visit event records
- repositories: MongoDB persistence for visit state
- events: visit-started/ended notifications over Redis
- services/: detection engine, ledger, candidate tracker, sweeper
"""
