"""
ipfs-update - self-update agent for a locally installed ipfs binary.

This package resolves the installed and target versions, downloads the
target binary through a chain of content fetchers, verifies it, swaps it
into place with a recoverable backup and runs a repo migration when the
new binary expects a different repo version.
"""

__version__ = "1.9.0"
