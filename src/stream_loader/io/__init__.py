"""I/O ring: database loader and staging transports."""
