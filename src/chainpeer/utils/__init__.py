"""Peer and RPC transport utilities."""
