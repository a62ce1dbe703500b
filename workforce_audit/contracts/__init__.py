"""Contracts package.

This package defines the *public* contract shared by the publisher and the audit
worker: the event taxonomy, broker topology names and the wire message format.
Both sides may only share types via `workforce_audit.core` and
`workforce_audit.contracts`.
"""
