"""Fakes for exercising the engine without network access."""
