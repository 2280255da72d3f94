"""Pydantic models for the sidecar message and bridge protocols."""
