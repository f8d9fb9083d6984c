"""Presence and routing core: store, registry, routing engine, lifecycle."""
