"""Core proxy server implementation.

This package contains the core components of the SOCKS proxy server:
- Wire protocol constants and frame codecs (SOCKS5)
- Authentication, resolution, relay and UDP association
- Threaded server implementation
- Network interface lookup
- Statistics tracking and the live dashboard
- Exception handling

The core package provides all the fundamental functionality needed
to run a SOCKS proxy server, while keeping the implementation details
separate from the command-line interface.
"""
