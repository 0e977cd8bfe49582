"""Clients for the external metadata providers."""
