"""
RLM Lite.

Answers questions over document context by recursive query decomposition,
with tiered model routing, cached retrieval and cost telemetry.
"""

__version__ = "0.1.0"
