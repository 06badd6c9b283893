"""Contracts package.

This package defines the *public* contract between the generator and the registry:
channel names, consumer groups and the wire shape of both messages. The two services
may only share types via `src.core` and `src.contracts`.
"""
