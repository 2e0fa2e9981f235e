"""Detached worker processes and the job runner they execute."""
