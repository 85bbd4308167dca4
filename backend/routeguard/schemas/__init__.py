"""Pydantic request/response models shared by handlers and the pipeline."""
