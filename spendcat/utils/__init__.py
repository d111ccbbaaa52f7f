"""Configuration and prompt reference helpers."""
