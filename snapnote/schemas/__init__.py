"""Pydantic schemas for the capture pipeline and its API."""
