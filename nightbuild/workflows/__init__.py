"""Workflow packages for nightbuild services."""
