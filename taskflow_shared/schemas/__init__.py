"""Shared Pydantic schemas for the TaskFlow graph server and its clients."""
