"""Clinic services. Each service lives in ``apps/<domain>/app``."""
