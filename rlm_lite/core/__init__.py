"""
Core modules for RLM Lite.

This package contains query decomposition, retrieval caching, model routing,
telemetry and cost calculation.
"""
