"""Pydantic response models shared by the API routers."""
