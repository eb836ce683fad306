"""Radio and network transports: BLE scanning and the UDP relay."""
