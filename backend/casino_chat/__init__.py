"""Realtime lobby chat for the casino app: client core and chat service."""
