"""Pydantic schemas for request/response validation and service results."""
