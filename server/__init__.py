"""Pathfinder API server."""
