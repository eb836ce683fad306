"""Lifecycle services of the IPSP gateway."""
