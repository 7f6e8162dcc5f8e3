"""Adaptive document extraction pipeline.

Turns delivery notes, invoices and spreadsheets into field-level data with a
calibrated confidence score, then routes low-confidence or inconsistent results
through a human review workflow with SLA tracking.
"""

__version__ = "1.0.0"
