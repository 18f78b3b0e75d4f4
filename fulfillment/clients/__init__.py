"""Outbound clients: print provider, email, analytics."""
