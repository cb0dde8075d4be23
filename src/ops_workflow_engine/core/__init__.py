"""Ambient concerns shared by the engine and the server: settings, errors, logging."""
