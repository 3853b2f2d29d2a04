"""Pydantic schemas shared by the API service and the build workers."""
