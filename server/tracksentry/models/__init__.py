"""Pydantic models shared across the engine, pipeline and control surface."""
