"""Pembinaan Engine - violation classification, escalation and counseling booking."""

__version__ = "1.0.0"
