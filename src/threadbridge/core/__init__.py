"""Core domain package for threadbridge.

Core contains identity rules, room resolution, event reconciliation and
command execution without any HTTP, Matrix-client or storage-specific code,
keeping the synchronization logic portable across transports.
"""
