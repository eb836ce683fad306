"""Runtime state and status reporting for the IPSP gateway."""
