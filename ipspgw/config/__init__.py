"""Configuration helpers for the IPSP gateway."""
