"""Command line interface modules.

This package provides the command-line tools for:
- Starting the SOCKS5 proxy server
- Checking the DNS resolution policy against a name
- Listing the network interfaces the proxy can listen on

The command modules turn command-line values and environment variables
into a server configuration and hand it to the core proxy server.
"""
