"""Configuration loading for RLM Lite."""
